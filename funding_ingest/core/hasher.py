"""
Announcement fingerprinting for deduplication.

Implements SHA-256 content hashing over normalized announcement fields
and a per-process index that maps hashes to the program they produced.
"""

import hashlib
import re
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import structlog

from .models import Job
from .normalizer import normalize_title, sanitize_text

logger = structlog.get_logger(__name__)

# Namespace for deterministic program ids derived from content hashes
PROGRAM_NAMESPACE = uuid.UUID("6f1c2f0e-5d4b-4c1a-9e7f-2b8d3a6c9e10")


def normalize_url(url: str) -> str:
    """Lowercase scheme/host, drop fragment and trailing slash."""
    if not url:
        return ""
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def _normalize_body(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", sanitize_text(text)).lower()


def generate_content_hash(
    agency: str,
    url: str,
    title: str,
    body: Optional[str] = None,
) -> str:
    """
    Generate SHA-256 hash for announcement deduplication.

    Hash is based on:
    - agency: Announcing agency (or ministry when agency is unknown)
    - url: Announcement URL (normalized)
    - title: Announcement title (normalized)
    - body: Detail-page description (optional, whitespace-insensitive)

    Args:
        agency: Agency name
        url: Announcement URL
        title: Announcement title
        body: Optional description text

    Returns:
        SHA-256 hex digest
    """
    normalized_title = normalize_title(title).lower()
    content = f"{(agency or '').strip()}|{normalize_url(url)}|{normalized_title}|{_normalize_body(body)}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def program_id_for_hash(content_hash: str) -> str:
    """Deterministic program id so re-processing upserts the same record."""
    return str(uuid.uuid5(PROGRAM_NAMESPACE, content_hash))


class ContentHasher:
    """
    Computes stable fingerprints for jobs.

    Only fields that identify the announcement are hashed; attachment
    text is excluded so that an improved extractor does not change the
    identity of an unchanged announcement.
    """

    def hash_job(self, job: Job) -> str:
        """
        Fingerprint a job's announcement content.

        Args:
            job: Job with detail page data

        Returns:
            SHA-256 hex digest
        """
        detail = job.detail_page_data
        return generate_content_hash(
            agency=detail.agency or detail.ministry or "",
            url=job.source_url,
            title=job.title or detail.title or "",
            body=detail.description,
        )


@dataclass
class DeduplicationResult:
    """Result of deduplication check."""
    is_duplicate: bool
    program_id: Optional[str] = None


class Deduplicator:
    """
    In-process hash index shared by the jobs of one worker.

    The repository remains the source of truth; this index only saves a
    round trip when one batch contains the same announcement twice.
    """

    def __init__(self):
        self._seen: dict[str, tuple[str, str]] = {}  # hash -> (program_id, job_id)

    def check(self, content_hash: str, job_id: str) -> DeduplicationResult:
        """
        Check if a hash was already produced by a different job.

        Args:
            content_hash: Hash of the job being processed
            job_id: Id of the job being processed

        Returns:
            DeduplicationResult
        """
        entry = self._seen.get(content_hash)
        if entry and entry[1] != job_id:
            return DeduplicationResult(is_duplicate=True, program_id=entry[0])
        return DeduplicationResult(is_duplicate=False)

    def add(self, content_hash: str, program_id: str, job_id: str) -> None:
        self._seen[content_hash] = (program_id, job_id)
        logger.debug("hash_indexed", hash=content_hash[:8], program_id=program_id, job_id=job_id)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        """Return number of indexed hashes."""
        return len(self._seen)
