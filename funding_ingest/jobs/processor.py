"""
Per-job extraction pipeline.

Runs inside a claimed job: makes sure the detail payload is present,
recovers attachment text, gates out non-R&D announcements, links
duplicates, then runs the field extractors and the classifier and builds
the FundingProgram record.
"""

from dataclasses import replace
from datetime import date
from typing import Callable, Optional

import structlog

from ..classifier.engine import Classification, Classifier
from ..core.hasher import ContentHasher, Deduplicator, program_id_for_hash
from ..core.models import (
    AnnouncementType,
    DetailPageData,
    FundingProgram,
    Job,
    ProgramStatus,
    Provenance,
)
from ..core.normalizer import html_to_text, sanitize_text
from ..extractors.attachments import AttachmentTextExtractor
from ..extractors.fields import ExtractedFields, FieldExtractor
from ..parsers.detail_page import parse_detail_page
from .state_machine import ProcessingResult
from .transitions import Outcome

logger = structlog.get_logger(__name__)

SKIP_NO_CONTENT = "no_extractable_content"


def detail_text(detail: DetailPageData) -> str:
    """Body text of the detail page, falling back to the stored HTML."""
    if detail.description and detail.description.strip():
        return sanitize_text(detail.description)
    return sanitize_text(html_to_text(detail.raw_html))


def build_combined_text(body: str, attachment_texts: list[Optional[str]]) -> str:
    """Detail text followed by every recovered attachment text."""
    parts = [body] if body else []
    parts.extend(text for text in attachment_texts if text)
    return "\n\n".join(parts)


def program_status(deadline: Optional[date], today: date) -> ProgramStatus:
    if deadline is not None and deadline < today:
        return ProgramStatus.EXPIRED
    return ProgramStatus.ACTIVE


def build_program(
    job: Job,
    content_hash: str,
    classification: Classification,
    fields: ExtractedFields,
    today: date,
) -> FundingProgram:
    """
    Assemble the program record.

    Pure: identical inputs (including ``today``) give an identical record.
    """
    detail = job.detail_page_data
    industry = classification.industry
    regional = classification.regional
    trl = fields.trl.value

    return FundingProgram(
        id=program_id_for_hash(content_hash),
        content_hash=content_hash,
        source_job_id=job.id,
        source_url=job.source_url,
        title=job.title or detail.title or "",
        ministry=detail.ministry,
        agency=detail.agency,
        budget_amount=fields.budget.value,
        min_trl=trl.min_trl if trl else None,
        max_trl=trl.max_trl if trl else None,
        trl_inferred=fields.trl.provenance == Provenance.INFERRED,
        deadline=fields.deadline.value,
        published_at=fields.published_at.value,
        application_start=fields.application_start.value,
        allowed_business_structures=fields.business_structures.value,
        required_certifications=fields.certifications.value,
        target_types=fields.target_types.value,
        submission_system=fields.submission_system.value,
        requires_research_institute=bool(fields.requires_research_institute.value),
        includes_research_institutes=bool(fields.includes_research_institutes.value),
        category=industry.category,
        category_confidence=industry.confidence,
        matched_keywords=list(industry.matched_keywords),
        manual_review_required=industry.manual_review_required,
        requires_regional_filter=regional.requires_regional_filter,
        regional_keywords=list(regional.keywords),
        eligibility_confidence=fields.eligibility_confidence,
        status=program_status(fields.deadline.value, today),
        provenance=fields.provenance(),
    )


class JobProcessor:
    """
    Extraction pipeline for one claimed job.

    Args:
        http_client: HttpClient for detail pages (attachments go through the extractor)
        attachments: AttachmentTextExtractor
        fields: FieldExtractor
        classifier: Classifier
        repository: JobRepository, for duplicate lookups
        min_text_length: Detail text shorter than this is unusable on its own
        today: Returns the reference date for deadline status
    """

    def __init__(
        self,
        http_client,
        attachments: AttachmentTextExtractor,
        fields: FieldExtractor,
        classifier: Classifier,
        repository,
        min_text_length: int = 100,
        today: Callable[[], date] = date.today,
    ):
        self.http_client = http_client
        self.attachments = attachments
        self.fields = fields
        self.classifier = classifier
        self.repository = repository
        self.min_text_length = min_text_length
        self.today = today
        self.hasher = ContentHasher()
        self.deduplicator = Deduplicator()

    async def ensure_detail(self, job: Job) -> Job:
        """
        Fetch and parse the detail page when the stored payload has no text.

        Attachments already on the job are kept (they may carry local
        copies or text from an earlier run).

        Raises:
            SourceUnavailableError: Page could not be fetched
        """
        detail = job.detail_page_data
        if (detail.description and detail.description.strip()) or detail.raw_html:
            return job

        logger.info("detail_page_fetching", job_id=job.id, url=job.source_url)
        html = await self.http_client.get_text(job.source_url)
        parsed = parse_detail_page(html, job.source_url)

        merged = DetailPageData(
            title=detail.title or parsed.title,
            ministry=detail.ministry or parsed.ministry,
            agency=detail.agency or parsed.agency,
            description=parsed.description,
            raw_html=parsed.raw_html,
            attachments=detail.attachments or parsed.attachments,
        )
        return job.evolve(detail_page_data=merged, title=job.title or parsed.title or "")

    async def process(self, job: Job) -> ProcessingResult:
        """
        Run the pipeline.

        Returns:
            ProcessingResult (SUCCEEDED or SKIPPED)

        Raises:
            TransientError: Fetch or conversion failures, for the state machine to retry
        """
        log = logger.bind(job_id=job.id)

        job = await self.ensure_detail(job)
        detail = job.detail_page_data

        texts = await self.attachments.extract_all(detail.attachments)
        detail = replace(
            detail,
            attachments=[replace(a, text=text) for a, text in zip(detail.attachments, texts)],
        )
        job = job.evolve(detail_page_data=detail)
        attachment_texts = [text for text in texts if text]

        body = detail_text(detail)
        if not attachment_texts and len(body) < self.min_text_length:
            log.info("job_nothing_to_extract", attachments=len(detail.attachments), chars=len(body))
            return ProcessingResult(job=job, outcome=Outcome.SKIPPED, reason=SKIP_NO_CONTENT)

        combined = build_combined_text(body, attachment_texts)
        title = job.title or detail.title or ""

        announcement = self.classifier.announcement_type(title, combined)
        if announcement != AnnouncementType.R_D_PROJECT:
            log.info("job_not_rd", announcement_type=announcement.value)
            return ProcessingResult(
                job=job,
                outcome=Outcome.SKIPPED,
                reason=f"non_rd_announcement:{announcement.value}",
            )

        content_hash = self.hasher.hash_job(job)
        job = job.evolve(content_hash=content_hash)

        duplicate_id = await self._find_duplicate(content_hash, job.id)
        if duplicate_id:
            log.info("job_duplicate_linked", program_id=duplicate_id)
            return ProcessingResult(job=job, outcome=Outcome.SUCCEEDED, program_id=duplicate_id)

        classification = self.classifier.classify(
            title,
            description=body or combined,
            ministry=detail.ministry,
            agency=detail.agency,
        )
        today = self.today()
        fields = self.fields.extract(combined, today=today)
        program = build_program(job, content_hash, classification, fields, today)
        self.deduplicator.add(content_hash, program.id, job.id)

        log.info(
            "job_extracted",
            program_id=program.id,
            category=program.category.value,
            confidence=program.category_confidence.value,
            budget=program.budget_amount,
            deadline=program.deadline.isoformat() if program.deadline else None,
            regional=program.requires_regional_filter,
            fields=sorted(program.provenance),
        )
        return ProcessingResult(job=job, outcome=Outcome.SUCCEEDED, program=program)

    async def _find_duplicate(self, content_hash: str, job_id: str) -> Optional[str]:
        """Program id produced by a different job from the same content."""
        local = self.deduplicator.check(content_hash, job_id)
        if local.is_duplicate:
            return local.program_id

        existing = await self.repository.find_program_by_hash(content_hash)
        if existing and existing.source_job_id != job_id:
            return existing.id
        return None
