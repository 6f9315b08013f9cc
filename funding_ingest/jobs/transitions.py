"""
Pure job-state transitions.

Every function here maps (job, outcome, clock values) to a new job
without I/O, so retry and terminal policy can be tested directly.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from ..core.errors import InvalidTransitionError, PermanentInputError
from ..core.models import Job, ProcessingStatus

MAX_ERROR_LENGTH = 500


class Outcome(str, Enum):
    """Result of one processing run."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


def compute_backoff(attempts: int, base_seconds: int, max_seconds: int) -> int:
    """
    Exponential retry delay: base * 2^(attempts-1), capped.

    Args:
        attempts: Attempts made so far (counted at claim)
        base_seconds: Delay after the first attempt
        max_seconds: Upper bound

    Returns:
        Delay in seconds
    """
    if base_seconds <= 0:
        return 0
    delay = base_seconds * (2 ** max(0, attempts - 1))
    return min(delay, max_seconds)


def next_status(
    current: ProcessingStatus,
    outcome: Outcome,
    attempts: int,
    max_attempts: int,
) -> ProcessingStatus:
    """
    Target status for an outcome.

    Raises:
        InvalidTransitionError: If the job is not PROCESSING
    """
    if current != ProcessingStatus.PROCESSING:
        raise InvalidTransitionError(f"Cannot apply {outcome.value} to a {current.value} job")

    if outcome == Outcome.SUCCEEDED:
        return ProcessingStatus.COMPLETED
    if outcome in (Outcome.SKIPPED, Outcome.PERMANENT_FAILURE):
        return ProcessingStatus.SKIPPED
    if attempts >= max_attempts:
        return ProcessingStatus.FAILED
    return ProcessingStatus.PENDING


def classify_error(error: BaseException) -> Outcome:
    """Unknown errors are treated as transient and retried."""
    if isinstance(error, PermanentInputError):
        return Outcome.PERMANENT_FAILURE
    return Outcome.TRANSIENT_FAILURE


def format_error(error: BaseException) -> str:
    message = f"{type(error).__name__}: {error}"
    return message[:MAX_ERROR_LENGTH]


def is_claimable(job: Job, now: datetime, max_attempts: int) -> bool:
    """PENDING, under the attempt ceiling, and past any retry backoff."""
    if job.processing_status != ProcessingStatus.PENDING:
        return False
    if job.processing_attempts >= max_attempts:
        return False
    return job.next_attempt_at is None or job.next_attempt_at <= now


def is_stale(job: Job, now: datetime, stale_after_seconds: int) -> bool:
    """A PROCESSING claim older than the stale window."""
    if job.processing_status != ProcessingStatus.PROCESSING:
        return False
    if job.processing_started_at is None:
        return True
    return now - job.processing_started_at > timedelta(seconds=stale_after_seconds)


def claimed(job: Job, worker_id: str, now: datetime) -> Job:
    """The job as it looks right after a successful claim."""
    return job.evolve(
        processing_status=ProcessingStatus.PROCESSING,
        processing_worker=worker_id,
        processing_started_at=now,
        processing_attempts=job.processing_attempts + 1,
        next_attempt_at=None,
    )


def apply_outcome(
    job: Job,
    outcome: Outcome,
    now: datetime,
    max_attempts: int,
    retry_base_seconds: int,
    retry_max_seconds: int,
    error: Optional[str] = None,
    program_id: Optional[str] = None,
) -> Job:
    """
    Apply an outcome to a PROCESSING job.

    Returns:
        The job after the transition; ownership is always released

    Raises:
        InvalidTransitionError: Not PROCESSING, or success without a program id
    """
    status = next_status(job.processing_status, outcome, job.processing_attempts, max_attempts)
    released = dict(processing_status=status, processing_worker=None)

    if status == ProcessingStatus.COMPLETED:
        if not program_id:
            raise InvalidTransitionError(f"Job {job.id} cannot complete without a funding program")
        return job.evolve(
            **released,
            processing_error=None,
            next_attempt_at=None,
            funding_program_id=program_id,
            processed_at=now,
        )

    if status == ProcessingStatus.PENDING:
        delay = compute_backoff(job.processing_attempts, retry_base_seconds, retry_max_seconds)
        return job.evolve(
            **released,
            processing_started_at=None,
            processing_error=error,
            next_attempt_at=now + timedelta(seconds=delay),
        )

    return job.evolve(
        **released,
        processing_error=error,
        next_attempt_at=None,
        processed_at=now,
    )


def reset_job(job: Job) -> Job:
    """Return any job to PENDING with a clean retry record."""
    return job.evolve(
        processing_status=ProcessingStatus.PENDING,
        processing_worker=None,
        processing_started_at=None,
        processing_attempts=0,
        processing_error=None,
        next_attempt_at=None,
        processed_at=None,
    )


def reclaim(job: Job, now: datetime, max_attempts: int) -> Job:
    """
    Release a stale claim.

    The stale run already counted as an attempt; a job at the ceiling is
    FAILED rather than offered again.
    """
    if job.processing_status != ProcessingStatus.PROCESSING:
        raise InvalidTransitionError(f"Job {job.id} is {job.processing_status.value}, not PROCESSING")

    error = f"stale claim by {job.processing_worker or 'unknown worker'} reclaimed"
    if job.processing_attempts >= max_attempts:
        return job.evolve(
            processing_status=ProcessingStatus.FAILED,
            processing_worker=None,
            processing_error=error,
            processed_at=now,
        )
    return job.evolve(
        processing_status=ProcessingStatus.PENDING,
        processing_worker=None,
        processing_started_at=None,
        processing_error=error,
        next_attempt_at=now,
    )


