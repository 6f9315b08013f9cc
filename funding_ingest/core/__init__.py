"""
Core layer - stable foundation for the ingestion pipeline.

Components:
- models: Job, DetailPageData, FundingProgram and field result dataclasses
- errors: Transient / permanent error taxonomy
- http_client: Rate-limited, retrying HTTP client
- normalizer: Korean date, amount and text normalization
- hasher: Content hashing and duplicate detection
"""

from .errors import IngestError, PermanentInputError, TransientError
from .hasher import ContentHasher, Deduplicator, generate_content_hash, program_id_for_hash
from .models import (
    Attachment,
    DetailPageData,
    FieldResult,
    FundingProgram,
    Job,
    ProcessingStatus,
    Provenance,
)
from .normalizer import (
    html_to_text,
    normalize_title,
    parse_korean_amount,
    parse_korean_date,
    sanitize_text,
)

__all__ = [
    "IngestError",
    "PermanentInputError",
    "TransientError",
    "ContentHasher",
    "Deduplicator",
    "generate_content_hash",
    "program_id_for_hash",
    "Attachment",
    "DetailPageData",
    "FieldResult",
    "FundingProgram",
    "Job",
    "ProcessingStatus",
    "Provenance",
    "html_to_text",
    "normalize_title",
    "parse_korean_amount",
    "parse_korean_date",
    "sanitize_text",
]
