"""
Job state machine.

States: PENDING -> PROCESSING -> {COMPLETED, FAILED, SKIPPED}. A transient
failure returns the job to PENDING with a backoff until the attempt
ceiling is reached, after which it is FAILED. Permanent input problems
and empty inputs go to SKIPPED; they are not errors.

Transitions are the pure functions in transitions.py. JobStateMachine adds
the repository round trips: atomic claim, compare-and-set updates keyed
on the owning worker, administrative reset and stale-claim reaping.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

import structlog

from ..core.errors import OperatorError
from ..core.models import FundingProgram, Job, ProcessingStatus
from .repository import JobRepository, RepositoryConflictError, RepositoryError, RepositoryNotFoundError
from .transitions import (
    Outcome,
    apply_outcome,
    classify_error,
    format_error,
    is_stale,
    reclaim,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Ownership:
    """Proof that this worker holds the PROCESSING claim on a job."""
    job: Job
    worker_id: str


@dataclass(frozen=True)
class Busy:
    """Claim refused: the job is held by another worker or not claimable."""
    job_id: str
    status: Optional[ProcessingStatus] = None
    held_by: Optional[str] = None


ClaimResult = Union[Ownership, Busy]


@dataclass
class ProcessingResult:
    """
    What a processor produced for a claimed job.

    ``job`` carries the enriched job (detail data with attachment text,
    content hash). ``program`` is set when a new program record should be
    upserted; ``program_id`` alone links to an existing one.
    """
    job: Job
    outcome: Outcome
    program: Optional[FundingProgram] = None
    program_id: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# State machine
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStateMachine:
    """
    Drives jobs through their lifecycle against an injected repository.

    Args:
        repository: Persistence collaborator
        processor: Object with ``async process(job) -> ProcessingResult``
        worker_id: Identity recorded on claims
        max_attempts: Attempt ceiling; reaching it on a transient failure is FAILED
        retry_base_seconds: First retry delay
        retry_max_seconds: Retry delay cap
        stale_claim_seconds: Claims older than this are reclaimed
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        repository: JobRepository,
        processor,
        worker_id: str,
        max_attempts: int = 3,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 900,
        stale_claim_seconds: int = 1800,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.processor = processor
        self.worker_id = worker_id
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0, retry_base_seconds)
        self.retry_max_seconds = max(0, retry_max_seconds)
        self.stale_claim_seconds = stale_claim_seconds
        self.clock = clock

    async def claim(self, job: Job) -> ClaimResult:
        """
        Atomically take PROCESSING ownership of a job.

        Fails closed: anything other than a won compare-and-set is Busy.
        """
        now = self.clock()
        won = await self.repository.claim(job.id, self.worker_id, now, self.max_attempts)
        if won is None:
            current = await self.repository.get_job(job.id)
            logger.debug(
                "job_busy",
                job_id=job.id,
                status=current.processing_status.value if current else None,
                held_by=current.processing_worker if current else None,
            )
            return Busy(
                job_id=job.id,
                status=current.processing_status if current else None,
                held_by=current.processing_worker if current else None,
            )

        logger.info("job_claimed", job_id=job.id, worker=self.worker_id, attempt=won.processing_attempts)
        return Ownership(job=won, worker_id=self.worker_id)

    async def run(self, ownership: Ownership) -> Job:
        """
        Process a claimed job and persist the resulting transition.

        Processor errors never escape: they are classified, recorded on the
        job and routed to retry, FAILED or SKIPPED.

        Returns:
            The job after the transition, or as last seen when the claim was
            lost or the write failed
        """
        job = ownership.job
        log = logger.bind(job_id=job.id, worker=ownership.worker_id, attempt=job.processing_attempts)

        try:
            result = await self.processor.process(job)
        except Exception as e:
            outcome = classify_error(e)
            log.warning("job_run_failed", outcome=outcome.value, error=str(e), error_type=type(e).__name__)
            return await self._finish(ownership, job, outcome, error=format_error(e))

        if result.outcome == Outcome.SUCCEEDED:
            program_id = result.program.id if result.program is not None else result.program_id
            return await self._finish(
                ownership, result.job, Outcome.SUCCEEDED, program_id=program_id, program=result.program
            )

        return await self._finish(ownership, result.job, result.outcome, error=result.reason)

    async def skip(self, ownership: Ownership, reason: str) -> Job:
        """Terminate a claimed job as SKIPPED (nothing to extract)."""
        return await self._finish(ownership, ownership.job, Outcome.SKIPPED, error=reason)

    async def process(self, job: Job) -> Optional[Job]:
        """Claim and run; None when the claim was refused."""
        result = await self.claim(job)
        if isinstance(result, Busy):
            return None
        return await self.run(result)

    async def _finish(
        self,
        ownership: Ownership,
        job: Job,
        outcome: Outcome,
        error: Optional[str] = None,
        program_id: Optional[str] = None,
        program: Optional[FundingProgram] = None,
    ) -> Job:
        updated = apply_outcome(
            job,
            outcome,
            now=self.clock(),
            max_attempts=self.max_attempts,
            retry_base_seconds=self.retry_base_seconds,
            retry_max_seconds=self.retry_max_seconds,
            error=error,
            program_id=program_id,
        )

        try:
            updated = await self.repository.complete(updated, expected_worker=ownership.worker_id, program=program)
        except RepositoryConflictError as e:
            # Reset or reaped while we were running; the newer state stands
            logger.warning("job_claim_lost", job_id=job.id, worker=ownership.worker_id, error=str(e))
            try:
                current = await self.repository.get_job(job.id)
            except RepositoryError:
                current = None
            return current or job
        except RepositoryError as e:
            # Claim stays PROCESSING; the stale reaper releases it
            logger.error(
                "job_persist_failed",
                job_id=job.id,
                worker=ownership.worker_id,
                status=updated.processing_status.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return job

        log = logger.error if updated.processing_status == ProcessingStatus.FAILED else logger.info
        log(
            "job_transitioned",
            job_id=job.id,
            status=updated.processing_status.value,
            attempts=updated.processing_attempts,
            error=updated.processing_error,
            next_attempt_at=updated.next_attempt_at.isoformat() if updated.next_attempt_at else None,
        )
        return updated

    async def reset(self, job_id: str) -> Job:
        """
        Administrative re-queue, safe in any state.

        Overwrites an in-flight claim; the worker holding it loses its
        compare-and-set when it tries to finish.

        Raises:
            OperatorError: Blank or unknown job id (no state change)
        """
        if not job_id or not str(job_id).strip():
            raise OperatorError("reset requires a job id")

        try:
            job = await self.repository.reset(str(job_id).strip())
        except RepositoryNotFoundError as e:
            raise OperatorError(f"Unknown job: {job_id}") from e

        logger.info("job_reset", job_id=job.id)
        return job

    async def reset_many(self, job_ids: list[str]) -> list[Job]:
        """
        Reset several jobs, validating every id before touching any.

        Raises:
            OperatorError: A blank or unknown id (no job is reset)
        """
        ids = [str(job_id).strip() if job_id is not None else "" for job_id in job_ids]
        if not ids or not all(ids):
            raise OperatorError("reset requires a job id")

        unknown = [job_id for job_id in ids if await self.repository.get_job(job_id) is None]
        if unknown:
            raise OperatorError(f"Unknown job: {', '.join(unknown)}")

        return [await self.reset(job_id) for job_id in ids]

    async def reset_batch(self, batch: str) -> int:
        """Reset every job of a batch; returns how many were reset."""
        if not batch or not batch.strip():
            raise OperatorError("reset_batch requires a batch tag")
        count = await self.repository.reset_batch(batch.strip())
        logger.info("batch_reset", batch=batch, jobs=count)
        return count

    async def reap_stale(self, limit: int = 100) -> int:
        """
        Release PROCESSING claims older than the stale window.

        Returns:
            Number of jobs reclaimed
        """
        now = self.clock()
        stale = await self.repository.find_stale_jobs(now - timedelta(seconds=self.stale_claim_seconds), limit)

        reclaimed = 0
        for job in stale:
            if not is_stale(job, now, self.stale_claim_seconds):
                continue
            released = reclaim(job, now, self.max_attempts)
            try:
                await self.repository.update(released, expected_worker=job.processing_worker)
            except RepositoryConflictError:
                # Finished or reset since we looked
                continue
            reclaimed += 1
            logger.warning(
                "stale_claim_reclaimed",
                job_id=job.id,
                worker=job.processing_worker,
                status=released.processing_status.value,
            )

        return reclaimed
