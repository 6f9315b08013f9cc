"""
Data models for the funding-announcement ingestion pipeline.

Jobs carry the scraped payload through the state machine; FundingProgram
is the structured output written when a job completes.
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Generic, Optional, TypeVar
from urllib.parse import unquote, urlparse

T = TypeVar("T")


class ProcessingStatus(str, Enum):
    """Lifecycle state of an ingestion job."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED, ProcessingStatus.SKIPPED)


class Provenance(str, Enum):
    """How an extracted value was obtained."""
    EXACT = "exact"  # Stated literally in the text
    INFERRED = "inferred"  # Derived from indirect wording


class Confidence(str, Enum):
    """Coarse certainty rating for classification and eligibility."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BusinessStructure(str, Enum):
    CORPORATION = "CORPORATION"
    SOLE_PROPRIETOR = "SOLE_PROPRIETOR"


class TargetType(str, Enum):
    COMPANY = "COMPANY"
    RESEARCH_INSTITUTE = "RESEARCH_INSTITUTE"
    UNIVERSITY = "UNIVERSITY"
    PUBLIC_INSTITUTION = "PUBLIC_INSTITUTION"


class IndustryCategory(str, Enum):
    """Industry taxonomy used by downstream matching."""
    BIO_HEALTH = "BIO_HEALTH"
    ICT = "ICT"
    MANUFACTURING = "MANUFACTURING"
    ENERGY = "ENERGY"
    ENVIRONMENT = "ENVIRONMENT"
    CONSTRUCTION = "CONSTRUCTION"
    TRANSPORTATION = "TRANSPORTATION"
    DEFENSE = "DEFENSE"
    CULTURAL = "CULTURAL"
    AGRICULTURE = "AGRICULTURE"
    VETERINARY = "VETERINARY"
    FORESTRY = "FORESTRY"
    MARINE_FISHERIES = "MARINE_FISHERIES"
    MARINE_SECURITY = "MARINE_SECURITY"
    AEROSPACE = "AEROSPACE"
    GENERAL = "GENERAL"


class AnnouncementType(str, Enum):
    R_D_PROJECT = "R_D_PROJECT"
    SURVEY = "SURVEY"
    EVENT = "EVENT"
    NOTICE = "NOTICE"


class ProgramStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class FieldResult(Generic[T]):
    """
    Tagged result of a single field extractor.

    ``value is None`` means no rule matched. A matched zero (e.g. a
    budget of 0 won) is a found value with provenance set.
    """
    value: Optional[T] = None
    provenance: Optional[Provenance] = None
    matched_text: Optional[str] = None

    @classmethod
    def absent(cls) -> "FieldResult[T]":
        return cls()

    @classmethod
    def exact(cls, value: T, matched_text: Optional[str] = None) -> "FieldResult[T]":
        return cls(value=value, provenance=Provenance.EXACT, matched_text=matched_text)

    @classmethod
    def inferred(cls, value: T, matched_text: Optional[str] = None) -> "FieldResult[T]":
        return cls(value=value, provenance=Provenance.INFERRED, matched_text=matched_text)

    @property
    def found(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class TrlRange:
    """Technology readiness range, both ends inclusive (1-9)."""
    min_trl: int
    max_trl: int


@dataclass
class Attachment:
    """An attached document listed on the announcement detail page."""
    url: str
    filename: str
    text: Optional[str] = None  # Filled in by AttachmentTextExtractor
    local_path: Optional[str] = None

    @property
    def extension(self) -> str:
        """Lower-case extension without the dot, from the filename or else the URL."""
        for name in (self.filename, unquote(urlparse(self.url).path)):
            suffix = PurePosixPath((name or "").lower()).suffix
            if suffix:
                return suffix.lstrip(".")
        return ""

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "Attachment":
        return cls(
            url=data.get("url", ""),
            filename=data.get("filename", ""),
            text=data.get("text"),
            local_path=data.get("local_path"),
        )


@dataclass
class DetailPageData:
    """Raw payload fetched from the announcement detail page."""
    title: Optional[str] = None
    ministry: Optional[str] = None
    agency: Optional[str] = None
    description: Optional[str] = None
    raw_html: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            k: v for k, v in asdict(self).items() if v is not None and k != "attachments"
        }
        data["attachments"] = [a.to_dict() for a in self.attachments]
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DetailPageData":
        data = data or {}
        return cls(
            title=data.get("title"),
            ministry=data.get("ministry"),
            agency=data.get("agency"),
            description=data.get("description"),
            raw_html=data.get("raw_html"),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments", [])],
        )


@dataclass
class Job:
    """
    One unit of ingestion work.

    Mutated only through the state machine; the repository persists
    whatever transition it produces.
    """

    id: str
    source_url: str
    title: str = ""
    batch: Optional[str] = None  # Date-range tag of the discovery run

    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processing_worker: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_attempts: int = 0
    processing_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    detail_page_data: DetailPageData = field(default_factory=DetailPageData)
    content_hash: Optional[str] = None
    funding_program_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def evolve(self, **changes) -> "Job":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {}
        for k, v in asdict(self).items():
            if isinstance(v, datetime):
                data[k] = v.isoformat()
            elif isinstance(v, Enum):
                data[k] = v.value
            else:
                data[k] = v
        data["detail_page_data"] = self.detail_page_data.to_dict()
        return data


@dataclass
class ClassificationResult:
    """Outcome of the industry taxonomy pass."""
    category: IndustryCategory = IndustryCategory.GENERAL
    confidence: Confidence = Confidence.LOW
    matched_keywords: list[str] = field(default_factory=list)
    source: str = "fallback"  # domain, generic, ministry, agency, fallback
    manual_review_required: bool = False


@dataclass
class RegionalResult:
    """Outcome of the region-exclusivity pass."""
    requires_regional_filter: bool = False
    keywords: list[str] = field(default_factory=list)


@dataclass
class FundingProgram:
    """
    Structured funding program produced from a completed job.

    Optional fields are None only when no extraction rule matched.
    """

    id: str
    content_hash: str
    source_job_id: str
    source_url: str
    title: str
    ministry: Optional[str] = None
    agency: Optional[str] = None

    # Extracted fields
    budget_amount: Optional[int] = None
    min_trl: Optional[int] = None
    max_trl: Optional[int] = None
    trl_inferred: bool = False
    deadline: Optional[date] = None
    published_at: Optional[date] = None
    application_start: Optional[date] = None
    allowed_business_structures: Optional[list[BusinessStructure]] = None
    required_certifications: Optional[list[str]] = None
    target_types: Optional[list[TargetType]] = None
    submission_system: Optional[str] = None
    requires_research_institute: bool = False
    includes_research_institutes: bool = False

    # Classification
    category: IndustryCategory = IndustryCategory.GENERAL
    category_confidence: Confidence = Confidence.LOW
    matched_keywords: list[str] = field(default_factory=list)
    manual_review_required: bool = False
    requires_regional_filter: bool = False
    regional_keywords: list[str] = field(default_factory=list)

    eligibility_confidence: Confidence = Confidence.LOW
    status: ProgramStatus = ProgramStatus.ACTIVE

    # field name -> "exact" / "inferred"
    provenance: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {}
        for k, v in asdict(self).items():
            if isinstance(v, (date, datetime)):
                data[k] = v.isoformat()
            elif isinstance(v, Enum):
                data[k] = v.value
            elif isinstance(v, list):
                data[k] = [i.value if isinstance(i, Enum) else i for i in v]
            else:
                data[k] = v
        return data
