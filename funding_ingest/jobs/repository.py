"""
Persistence collaborator for jobs and funding programs.

The state machine only talks to the JobRepository interface; the
in-memory implementation backs tests and dry runs, PostgresJobRepository
backs production.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import structlog

from ..core.models import FundingProgram, Job, ProcessingStatus
from .transitions import claimed, is_claimable, reset_job

logger = structlog.get_logger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a compare-and-set finds the job in another state or owner."""


class JobRepository(ABC):
    """Storage interface used by the job state machine."""

    @abstractmethod
    async def add_job(self, job: Job) -> Job:
        """Insert a new job (or return the existing one with the same id)."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def find_pending_jobs(
        self,
        batch: Optional[str],
        now: datetime,
        max_attempts: int,
        limit: int = 50,
    ) -> list[Job]:
        """
        Claimable jobs, oldest first.

        Args:
            batch: Restrict to one batch tag, or None for all
            now: Jobs whose retry backoff ends after this are excluded
            max_attempts: Jobs at the ceiling are excluded
            limit: Maximum number of jobs
        """
        pass

    @abstractmethod
    async def claim(self, job_id: str, worker_id: str, now: datetime, max_attempts: int) -> Optional[Job]:
        """
        Atomic PENDING -> PROCESSING compare-and-set.

        Increments the attempt counter. Returns the claimed job, or None
        when the job is missing or not claimable.
        """
        pass

    @abstractmethod
    async def update(self, job: Job, expected_worker: Optional[str]) -> Job:
        """
        Persist a transition out of PROCESSING.

        Succeeds only while the stored job is still PROCESSING and owned by
        ``expected_worker``.

        Raises:
            RepositoryNotFoundError: Unknown job
            RepositoryConflictError: Ownership lost
        """
        pass

    @abstractmethod
    async def complete(
        self,
        job: Job,
        expected_worker: Optional[str],
        program: Optional[FundingProgram] = None,
    ) -> Job:
        """
        Persist the final transition and its program record together.

        Same compare-and-set as update(). The program is written only when
        the job write wins, so a run whose claim was lost leaves no program
        behind.

        Raises:
            RepositoryNotFoundError: Unknown job
            RepositoryConflictError: Ownership lost
        """
        pass

    @abstractmethod
    async def reset(self, job_id: str) -> Job:
        """
        Unconditional return to PENDING with attempts and errors cleared.

        Raises:
            RepositoryNotFoundError: Unknown job
        """
        pass

    @abstractmethod
    async def reset_batch(self, batch: str) -> int:
        pass

    @abstractmethod
    async def find_stale_jobs(self, started_before: datetime, limit: int = 100) -> list[Job]:
        """PROCESSING jobs claimed before ``started_before``."""
        pass

    @abstractmethod
    async def upsert_funding_program(self, program: FundingProgram) -> FundingProgram:
        pass

    @abstractmethod
    async def find_program_by_hash(self, content_hash: str) -> Optional[FundingProgram]:
        pass

    async def close(self) -> None:
        pass


class InMemoryJobRepository(JobRepository):
    """
    Dict-backed repository.

    A single asyncio.Lock makes every method atomic with respect to the
    other coroutines of the process, which is what the claim CAS needs.
    """

    def __init__(self, jobs: Optional[list[Job]] = None):
        self._lock = asyncio.Lock()
        self.jobs: dict[str, Job] = {}
        self.programs: dict[str, FundingProgram] = {}
        for job in jobs or []:
            self.jobs[job.id] = job

    async def add_job(self, job: Job) -> Job:
        async with self._lock:
            return self.jobs.setdefault(job.id, job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            return self.jobs.get(job_id)

    async def find_pending_jobs(
        self,
        batch: Optional[str],
        now: datetime,
        max_attempts: int,
        limit: int = 50,
    ) -> list[Job]:
        async with self._lock:
            pending = [
                job for job in self.jobs.values()
                if (batch is None or job.batch == batch) and is_claimable(job, now, max_attempts)
            ]
        pending.sort(key=lambda job: job.created_at)
        return pending[:limit]

    async def claim(self, job_id: str, worker_id: str, now: datetime, max_attempts: int) -> Optional[Job]:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or not is_claimable(job, now, max_attempts):
                return None
            job = claimed(job, worker_id, now)
            self.jobs[job_id] = job
            return job

    async def update(self, job: Job, expected_worker: Optional[str]) -> Job:
        async with self._lock:
            return self._store_owned(job, expected_worker)

    async def complete(
        self,
        job: Job,
        expected_worker: Optional[str],
        program: Optional[FundingProgram] = None,
    ) -> Job:
        async with self._lock:
            job = self._store_owned(job, expected_worker)
            if program is not None:
                self.programs[program.id] = program
            return job

    def _store_owned(self, job: Job, expected_worker: Optional[str]) -> Job:
        """Compare-and-set body shared by update() and complete(); caller holds the lock."""
        current = self.jobs.get(job.id)
        if current is None:
            raise RepositoryNotFoundError(f"job not found: {job.id}")
        if (
            current.processing_status != ProcessingStatus.PROCESSING
            or current.processing_worker != expected_worker
        ):
            raise RepositoryConflictError(
                f"job {job.id} is {current.processing_status.value} "
                f"(worker={current.processing_worker}), expected PROCESSING by {expected_worker}"
            )
        # Attempts only increase, whatever the caller sends
        if job.processing_attempts < current.processing_attempts:
            job = job.evolve(processing_attempts=current.processing_attempts)
        self.jobs[job.id] = job
        return job

    async def reset(self, job_id: str) -> Job:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError(f"job not found: {job_id}")
            job = reset_job(job)
            self.jobs[job_id] = job
            return job

    async def reset_batch(self, batch: str) -> int:
        async with self._lock:
            matching = [job for job in self.jobs.values() if job.batch == batch]
            for job in matching:
                self.jobs[job.id] = reset_job(job)
            return len(matching)

    async def find_stale_jobs(self, started_before: datetime, limit: int = 100) -> list[Job]:
        async with self._lock:
            stale = [
                job for job in self.jobs.values()
                if job.processing_status == ProcessingStatus.PROCESSING
                and (job.processing_started_at is None or job.processing_started_at < started_before)
            ]
        return stale[:limit]

    async def upsert_funding_program(self, program: FundingProgram) -> FundingProgram:
        async with self._lock:
            self.programs[program.id] = program
            return program

    async def find_program_by_hash(self, content_hash: str) -> Optional[FundingProgram]:
        async with self._lock:
            for program in self.programs.values():
                if program.content_hash == content_hash:
                    return program
        return None
