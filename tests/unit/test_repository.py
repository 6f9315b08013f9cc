"""Tests for the in-memory job repository."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from funding_ingest.core.models import FundingProgram, ProcessingStatus
from funding_ingest.jobs.repository import (
    InMemoryJobRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def program_for(job_id: str) -> FundingProgram:
    return FundingProgram(
        id="p1",
        content_hash="abc",
        source_job_id=job_id,
        source_url=f"https://www.example.go.kr/notice/{job_id}",
        title="first",
    )


@pytest.fixture
def repository(job_factory):
    older = job_factory("job-old").evolve(created_at=NOW - timedelta(days=2))
    newer = job_factory("job-new").evolve(created_at=NOW - timedelta(days=1))
    other = job_factory("job-other").evolve(batch="2025-04-01_2025-04-30")
    return InMemoryJobRepository([newer, older, other])


class TestFindPending:
    """Tests for find_pending_jobs."""

    @pytest.mark.asyncio
    async def test_oldest_first(self, repository):
        """Test pending jobs come back in creation order."""
        jobs = await repository.find_pending_jobs("2025-03-01_2025-03-31", NOW, 3)
        assert [job.id for job in jobs] == ["job-old", "job-new"]

    @pytest.mark.asyncio
    async def test_all_batches(self, repository):
        """Test no batch filter returns every claimable job."""
        jobs = await repository.find_pending_jobs(None, NOW, 3)
        assert len(jobs) == 3

    @pytest.mark.asyncio
    async def test_limit(self, repository):
        """Test limit truncates the result."""
        jobs = await repository.find_pending_jobs(None, NOW, 3, limit=1)
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_excludes_backoff_and_ceiling(self, repository):
        """Test jobs in backoff or at the attempt ceiling are not offered."""
        repository.jobs["job-old"] = repository.jobs["job-old"].evolve(
            next_attempt_at=NOW + timedelta(seconds=60)
        )
        repository.jobs["job-new"] = repository.jobs["job-new"].evolve(processing_attempts=3)

        jobs = await repository.find_pending_jobs("2025-03-01_2025-03-31", NOW, 3)

        assert jobs == []


class TestClaim:
    """Tests for the claim compare-and-set."""

    @pytest.mark.asyncio
    async def test_claim_counts_attempt(self, repository):
        """Test a claim moves the job to PROCESSING and counts the attempt."""
        job = await repository.claim("job-old", "w1", NOW, 3)

        assert job.processing_status == ProcessingStatus.PROCESSING
        assert job.processing_worker == "w1"
        assert job.processing_started_at == NOW
        assert job.processing_attempts == 1

    @pytest.mark.asyncio
    async def test_claim_twice(self, repository):
        """Test a claimed job cannot be claimed again."""
        await repository.claim("job-old", "w1", NOW, 3)
        assert await repository.claim("job-old", "w2", NOW, 3) is None

    @pytest.mark.asyncio
    async def test_claim_missing(self, repository):
        """Test claiming an unknown job returns None."""
        assert await repository.claim("missing", "w1", NOW, 3) is None

    @pytest.mark.asyncio
    async def test_racing_claims(self, repository):
        """Test only one of many concurrent claims wins."""
        results = await asyncio.gather(
            *(repository.claim("job-old", f"w{i}", NOW, 3) for i in range(20))
        )
        winners = [job for job in results if job is not None]

        assert len(winners) == 1
        assert repository.jobs["job-old"].processing_worker == winners[0].processing_worker


class TestUpdate:
    """Tests for update."""

    @pytest.mark.asyncio
    async def test_update_by_owner(self, repository):
        """Test the owning worker can finish the job."""
        job = await repository.claim("job-old", "w1", NOW, 3)
        done = job.evolve(processing_status=ProcessingStatus.SKIPPED, processing_worker=None)

        await repository.update(done, expected_worker="w1")

        assert repository.jobs["job-old"].processing_status == ProcessingStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_update_wrong_worker(self, repository):
        """Test another worker's update is a conflict."""
        job = await repository.claim("job-old", "w1", NOW, 3)

        with pytest.raises(RepositoryConflictError):
            await repository.update(job.evolve(processing_worker=None), expected_worker="w2")

    @pytest.mark.asyncio
    async def test_update_not_processing(self, repository):
        """Test updating a job nobody holds is a conflict."""
        job = repository.jobs["job-old"]

        with pytest.raises(RepositoryConflictError):
            await repository.update(job, expected_worker=None)

    @pytest.mark.asyncio
    async def test_update_missing(self, repository, job_factory):
        """Test updating an unknown job raises not found."""
        with pytest.raises(RepositoryNotFoundError):
            await repository.update(job_factory("missing"), expected_worker="w1")

    @pytest.mark.asyncio
    async def test_attempts_never_decrease(self, repository):
        """Test a stale attempt count from the caller is ignored."""
        job = await repository.claim("job-old", "w1", NOW, 3)

        stored = await repository.update(
            job.evolve(processing_attempts=0, processing_status=ProcessingStatus.PENDING),
            expected_worker="w1",
        )

        assert stored.processing_attempts == 1


class TestResetAndStale:
    """Tests for reset and stale lookups."""

    @pytest.mark.asyncio
    async def test_reset_missing(self, repository):
        """Test resetting an unknown job raises not found."""
        with pytest.raises(RepositoryNotFoundError):
            await repository.reset("missing")

    @pytest.mark.asyncio
    async def test_reset_batch_counts(self, repository):
        """Test reset_batch touches only the given batch."""
        assert await repository.reset_batch("2025-03-01_2025-03-31") == 2
        assert await repository.reset_batch("1999-01-01_1999-01-31") == 0

    @pytest.mark.asyncio
    async def test_find_stale(self, repository):
        """Test only claims started before the cutoff are stale."""
        await repository.claim("job-old", "w1", NOW - timedelta(hours=2), 3)
        await repository.claim("job-new", "w2", NOW, 3)

        stale = await repository.find_stale_jobs(NOW - timedelta(minutes=30))

        assert [job.id for job in stale] == ["job-old"]


class TestPrograms:
    """Tests for program storage."""

    @pytest.mark.asyncio
    async def test_upsert_and_find_by_hash(self, repository):
        """Test programs are found by content hash and upserts replace."""
        program = FundingProgram(
            id="p1",
            content_hash="abc",
            source_job_id="job-old",
            source_url="https://www.example.go.kr/notice/job-old",
            title="first",
        )
        await repository.upsert_funding_program(program)
        await repository.upsert_funding_program(
            FundingProgram(
                id="p1",
                content_hash="abc",
                source_job_id="job-old",
                source_url=program.source_url,
                title="second",
            )
        )

        found = await repository.find_program_by_hash("abc")

        assert found.title == "second"
        assert len(repository.programs) == 1
        assert await repository.find_program_by_hash("other") is None


class TestAddJob:
    """Tests for add_job."""

    @pytest.mark.asyncio
    async def test_add_new_job(self, repository, job_factory):
        """Test a new job is stored PENDING and returned."""
        job = await repository.add_job(job_factory("job-added"))

        assert job.processing_status == ProcessingStatus.PENDING
        assert await repository.get_job("job-added") == job

    @pytest.mark.asyncio
    async def test_add_existing_job_keeps_stored(self, repository, job_factory):
        """Test re-adding a known id returns the stored job unchanged."""
        claimed = await repository.claim("job-old", "w1", NOW, 3)

        job = await repository.add_job(job_factory("job-old", title="rescraped"))

        assert job == claimed
        assert repository.jobs["job-old"].processing_worker == "w1"


class TestComplete:
    """Tests for complete."""

    @pytest.mark.asyncio
    async def test_complete_stores_job_and_program(self, repository):
        """Test the owner's completion persists the job and its program."""
        job = await repository.claim("job-old", "w1", NOW, 3)
        done = job.evolve(
            processing_status=ProcessingStatus.COMPLETED, processing_worker=None, funding_program_id="p1"
        )

        stored = await repository.complete(done, expected_worker="w1", program=program_for("job-old"))

        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert repository.jobs["job-old"].funding_program_id == "p1"
        assert list(repository.programs) == ["p1"]

    @pytest.mark.asyncio
    async def test_complete_after_reset_stores_nothing(self, repository):
        """Test a lost claim writes neither the job nor the program."""
        job = await repository.claim("job-old", "w1", NOW, 3)
        await repository.reset("job-old")
        done = job.evolve(processing_status=ProcessingStatus.COMPLETED, processing_worker=None)

        with pytest.raises(RepositoryConflictError):
            await repository.complete(done, expected_worker="w1", program=program_for("job-old"))

        assert repository.jobs["job-old"].processing_status == ProcessingStatus.PENDING
        assert repository.programs == {}

    @pytest.mark.asyncio
    async def test_complete_without_program(self, repository):
        """Test completion of a skipped job stores no program."""
        job = await repository.claim("job-old", "w1", NOW, 3)

        await repository.complete(
            job.evolve(processing_status=ProcessingStatus.SKIPPED, processing_worker=None), expected_worker="w1"
        )

        assert repository.jobs["job-old"].processing_status == ProcessingStatus.SKIPPED
        assert repository.programs == {}
