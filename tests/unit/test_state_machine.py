"""Tests for the job state machine."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from funding_ingest.core.errors import (
    CorruptDocumentError,
    OperatorError,
    SourceUnavailableError,
)
from funding_ingest.core.models import FundingProgram, Job, ProcessingStatus
from funding_ingest.jobs.repository import InMemoryJobRepository, RepositoryUnavailableError
from funding_ingest.jobs.state_machine import Busy, JobStateMachine, Ownership, ProcessingResult
from funding_ingest.jobs.transitions import Outcome


class Clock:
    """Settable clock."""

    def __init__(self):
        self.now = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def program_for(job: Job) -> FundingProgram:
    return FundingProgram(
        id=f"program-{job.id}",
        content_hash=f"hash-{job.id}",
        source_job_id=job.id,
        source_url=job.source_url,
        title=job.title,
    )


def succeeding_processor():
    processor = AsyncMock()
    processor.process.side_effect = lambda job: ProcessingResult(
        job=job, outcome=Outcome.SUCCEEDED, program=program_for(job)
    )
    return processor


def failing_processor(error):
    processor = AsyncMock()
    processor.process.side_effect = error
    return processor


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def repository(job_factory):
    return InMemoryJobRepository([job_factory("job-1"), job_factory("job-2")])


def machine(repository, processor, clock, worker_id="w1", **kwargs):
    return JobStateMachine(
        repository=repository,
        processor=processor,
        worker_id=worker_id,
        max_attempts=3,
        retry_base_seconds=30,
        retry_max_seconds=900,
        stale_claim_seconds=1800,
        clock=clock,
        **kwargs,
    )


class TestClaim:
    """Tests for claim."""

    @pytest.mark.asyncio
    async def test_claim_pending(self, repository, clock):
        """Test a pending job is claimed and its attempt counted."""
        sm = machine(repository, None, clock)

        result = await sm.claim(await repository.get_job("job-1"))

        assert isinstance(result, Ownership)
        assert result.job.processing_status == ProcessingStatus.PROCESSING
        assert result.job.processing_worker == "w1"
        assert result.job.processing_attempts == 1

    @pytest.mark.asyncio
    async def test_second_claim_busy(self, repository, clock):
        """Test a held job is Busy for another worker."""
        job = await repository.get_job("job-1")
        await machine(repository, None, clock, "w1").claim(job)

        result = await machine(repository, None, clock, "w2").claim(job)

        assert isinstance(result, Busy)
        assert result.held_by == "w1"
        assert result.status == ProcessingStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, repository, clock):
        """Test exactly one of many racing workers wins."""
        job = await repository.get_job("job-1")
        machines = [machine(repository, None, clock, f"w{i}") for i in range(10)]

        results = await asyncio.gather(*(sm.claim(job) for sm in machines))

        assert sum(isinstance(r, Ownership) for r in results) == 1

    @pytest.mark.asyncio
    async def test_unknown_job_busy(self, repository, clock, job_factory):
        """Test claiming a missing job fails closed."""
        result = await machine(repository, None, clock).claim(job_factory("missing"))

        assert isinstance(result, Busy)
        assert result.status is None


class TestRun:
    """Tests for run."""

    @pytest.mark.asyncio
    async def test_success_completes_and_persists_program(self, repository, clock):
        """Test success upserts the program before completing."""
        sm = machine(repository, succeeding_processor(), clock)

        job = await sm.process(await repository.get_job("job-1"))

        assert job.processing_status == ProcessingStatus.COMPLETED
        assert job.funding_program_id == "program-job-1"
        assert "program-job-1" in repository.programs
        stored = await repository.get_job("job-1")
        assert stored.processing_worker is None

    @pytest.mark.asyncio
    async def test_linked_duplicate(self, repository, clock):
        """Test a program id without a program links to the existing record."""
        processor = AsyncMock()
        processor.process.side_effect = lambda job: ProcessingResult(
            job=job, outcome=Outcome.SUCCEEDED, program_id="program-existing"
        )

        job = await machine(repository, processor, clock).process(await repository.get_job("job-1"))

        assert job.funding_program_id == "program-existing"
        assert repository.programs == {}

    @pytest.mark.asyncio
    async def test_transient_retries_then_fails(self, repository, clock):
        """Test retries with backoff until the attempt ceiling."""
        sm = machine(repository, failing_processor(SourceUnavailableError("timeout")), clock)

        first = await sm.process(await repository.get_job("job-1"))
        assert first.processing_status == ProcessingStatus.PENDING
        assert first.next_attempt_at == clock.now + timedelta(seconds=30)
        assert "SourceUnavailableError" in first.processing_error

        # Still backing off
        assert await sm.process(first) is None

        clock.advance(30)
        second = await sm.process(first)
        assert second.processing_status == ProcessingStatus.PENDING
        assert second.next_attempt_at == clock.now + timedelta(seconds=60)

        clock.advance(60)
        third = await sm.process(second)
        assert third.processing_status == ProcessingStatus.FAILED
        assert third.processing_attempts == 3

    @pytest.mark.asyncio
    async def test_permanent_error_skips(self, repository, clock):
        """Test permanent input errors route to SKIPPED without retry."""
        sm = machine(repository, failing_processor(CorruptDocumentError("broken zip")), clock)

        job = await sm.process(await repository.get_job("job-1"))

        assert job.processing_status == ProcessingStatus.SKIPPED
        assert job.processing_attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_error_is_transient(self, repository, clock):
        """Test unexpected exceptions are retried."""
        sm = machine(repository, failing_processor(KeyError("field")), clock)

        job = await sm.process(await repository.get_job("job-1"))

        assert job.processing_status == ProcessingStatus.PENDING

    @pytest.mark.asyncio
    async def test_skip(self, repository, clock):
        """Test explicit skip is a terminal non-error state."""
        sm = machine(repository, None, clock)
        ownership = await sm.claim(await repository.get_job("job-1"))

        job = await sm.skip(ownership, "no_extractable_content")

        assert job.processing_status == ProcessingStatus.SKIPPED
        assert job.processing_error == "no_extractable_content"

    @pytest.mark.asyncio
    async def test_reset_during_run_discards_result(self, repository, clock):
        """Test a worker whose claim was reset loses its compare-and-set."""
        sm = machine(repository, None, clock)
        ownership = await sm.claim(await repository.get_job("job-1"))

        async def process(job):
            await sm.reset("job-1")
            return ProcessingResult(job=job, outcome=Outcome.SUCCEEDED, program=program_for(job))

        sm.processor = AsyncMock()
        sm.processor.process.side_effect = process

        job = await sm.run(ownership)

        assert job.processing_status == ProcessingStatus.PENDING
        assert job.processing_attempts == 0
        assert (await repository.get_job("job-1")).funding_program_id is None
        assert repository.programs == {}

    @pytest.mark.asyncio
    async def test_reaped_claim_stores_no_program(self, repository, clock):
        """Test a run finishing after its claim was reaped leaves no program behind."""
        sm = machine(repository, None, clock)
        ownership = await sm.claim(await repository.get_job("job-1"))

        async def process(job):
            clock.advance(3600)
            await sm.reap_stale()
            return ProcessingResult(job=job, outcome=Outcome.SUCCEEDED, program=program_for(job))

        sm.processor = AsyncMock()
        sm.processor.process.side_effect = process

        job = await sm.run(ownership)

        assert job.processing_status == ProcessingStatus.PENDING
        assert repository.programs == {}

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_claim(self, repository, clock):
        """Test a repository outage on the final write is logged, not raised."""
        sm = machine(repository, succeeding_processor(), clock)
        ownership = await sm.claim(await repository.get_job("job-1"))
        repository.complete = AsyncMock(side_effect=RepositoryUnavailableError("database unavailable"))

        job = await sm.run(ownership)

        assert job.processing_status == ProcessingStatus.PROCESSING
        stored = await repository.get_job("job-1")
        assert stored.processing_status == ProcessingStatus.PROCESSING
        assert stored.processing_worker == "w1"
        assert repository.programs == {}

    @pytest.mark.asyncio
    async def test_persist_failure_reaped_later(self, repository, clock):
        """Test a claim left behind by a failed write is released by the reaper."""
        sm = machine(repository, succeeding_processor(), clock)
        ownership = await sm.claim(await repository.get_job("job-1"))
        repository.complete = AsyncMock(side_effect=RepositoryUnavailableError("database unavailable"))
        await sm.run(ownership)

        clock.advance(3600)

        assert await sm.reap_stale() == 1
        assert (await repository.get_job("job-1")).processing_status == ProcessingStatus.PENDING


class TestReset:
    """Tests for reset."""

    @pytest.mark.asyncio
    async def test_reset_failed_job(self, repository, clock):
        """Test reset clears attempts and error."""
        sm = machine(repository, failing_processor(CorruptDocumentError("x")), clock)
        await sm.process(await repository.get_job("job-1"))

        job = await sm.reset("job-1")

        assert job.processing_status == ProcessingStatus.PENDING
        assert job.processing_attempts == 0
        assert job.processing_error is None
        assert job.processed_at is None

    @pytest.mark.asyncio
    async def test_reset_idempotent(self, repository, clock):
        """Test resetting twice gives the same state."""
        sm = machine(repository, None, clock)

        once = await sm.reset("job-1")
        twice = await sm.reset("job-1")

        assert once == twice

    @pytest.mark.asyncio
    @pytest.mark.parametrize("job_id", ["", "   ", None, "missing"])
    async def test_malformed_reset(self, repository, clock, job_id):
        """Test blank or unknown ids are rejected without state change."""
        sm = machine(repository, None, clock)
        before = dict(repository.jobs)

        with pytest.raises(OperatorError):
            await sm.reset(job_id)

        assert repository.jobs == before

    @pytest.mark.asyncio
    async def test_reset_batch(self, repository, clock):
        """Test every job of a batch is reset."""
        sm = machine(repository, failing_processor(CorruptDocumentError("x")), clock)
        for job_id in ("job-1", "job-2"):
            await sm.process(await repository.get_job(job_id))

        count = await sm.reset_batch("2025-03-01_2025-03-31")

        assert count == 2
        assert all(j.processing_status == ProcessingStatus.PENDING for j in repository.jobs.values())

    @pytest.mark.asyncio
    async def test_reset_many(self, repository, clock):
        """Test several known ids are all reset."""
        sm = machine(repository, failing_processor(CorruptDocumentError("x")), clock)
        for job_id in ("job-1", "job-2"):
            await sm.process(await repository.get_job(job_id))

        jobs = await sm.reset_many(["job-1", " job-2 "])

        assert [job.id for job in jobs] == ["job-1", "job-2"]
        assert all(job.processing_status == ProcessingStatus.PENDING for job in jobs)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("job_ids", [["job-1", "missing"], ["job-1", ""], []])
    async def test_reset_many_validates_first(self, repository, clock, job_ids):
        """Test one bad id rejects the whole list before any job changes."""
        sm = machine(repository, failing_processor(CorruptDocumentError("x")), clock)
        await sm.process(await repository.get_job("job-1"))
        before = dict(repository.jobs)

        with pytest.raises(OperatorError):
            await sm.reset_many(job_ids)

        assert repository.jobs == before
        assert repository.jobs["job-1"].processing_status == ProcessingStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_reset_batch_blank(self, repository, clock):
        """Test a blank batch tag is rejected."""
        with pytest.raises(OperatorError):
            await machine(repository, None, clock).reset_batch(" ")


class TestReapStale:
    """Tests for stale-claim reaping."""

    @pytest.mark.asyncio
    async def test_stale_claim_released(self, repository, clock):
        """Test an abandoned claim returns to PENDING after the window."""
        crashed = machine(repository, None, clock, "crashed")
        await crashed.claim(await repository.get_job("job-1"))

        reaper = machine(repository, None, clock, "reaper")
        assert await reaper.reap_stale() == 0

        clock.advance(1801)
        assert await reaper.reap_stale() == 1

        job = await repository.get_job("job-1")
        assert job.processing_status == ProcessingStatus.PENDING
        assert job.processing_attempts == 1

    @pytest.mark.asyncio
    async def test_stale_at_ceiling_fails(self, repository, clock):
        """Test a stale claim that used the last attempt is FAILED."""
        repository.jobs["job-1"] = repository.jobs["job-1"].evolve(processing_attempts=2)
        await machine(repository, None, clock, "crashed").claim(await repository.get_job("job-1"))

        clock.advance(1801)
        await machine(repository, None, clock, "reaper").reap_stale()

        assert (await repository.get_job("job-1")).processing_status == ProcessingStatus.FAILED
