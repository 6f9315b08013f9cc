"""
PostgreSQL job repository using asyncpg.

Claims are a single ``update ... where status = 'PENDING' ... returning``
so two workers can never both win; transitions out of PROCESSING are
compare-and-set on (status, worker).
"""

import json
from datetime import date, datetime
from typing import Any, Optional

import asyncpg
import structlog
from asyncpg import exceptions as pg_exc

from ..core.models import (
    BusinessStructure,
    Confidence,
    DetailPageData,
    FundingProgram,
    IndustryCategory,
    Job,
    ProcessingStatus,
    ProgramStatus,
    TargetType,
)
from .repository import (
    JobRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

logger = structlog.get_logger(__name__)

SCHEMA = """
create table if not exists ingest_jobs (
  id text primary key,
  source_url text not null,
  title text not null default '',
  batch text,
  processing_status text not null default 'PENDING',
  processing_worker text,
  processing_started_at timestamptz,
  processing_attempts integer not null default 0,
  processing_error text,
  next_attempt_at timestamptz,
  detail_page_data jsonb not null default '{}'::jsonb,
  content_hash text,
  funding_program_id text,
  processed_at timestamptz,
  created_at timestamptz not null default now()
);

create index if not exists ingest_jobs_pending_idx
  on ingest_jobs (batch, created_at)
  where processing_status = 'PENDING';

create index if not exists ingest_jobs_processing_idx
  on ingest_jobs (processing_started_at)
  where processing_status = 'PROCESSING';

create table if not exists funding_programs (
  id text primary key,
  content_hash text not null unique,
  source_job_id text not null,
  source_url text not null,
  title text not null,
  ministry text,
  agency text,
  budget_amount bigint,
  min_trl smallint,
  max_trl smallint,
  trl_inferred boolean not null default false,
  deadline date,
  published_at date,
  application_start date,
  allowed_business_structures jsonb,
  required_certifications jsonb,
  target_types jsonb,
  submission_system text,
  requires_research_institute boolean not null default false,
  includes_research_institutes boolean not null default false,
  category text not null,
  category_confidence text not null,
  matched_keywords jsonb not null default '[]'::jsonb,
  manual_review_required boolean not null default false,
  requires_regional_filter boolean not null default false,
  regional_keywords jsonb not null default '[]'::jsonb,
  eligibility_confidence text not null,
  status text not null,
  provenance jsonb not null default '{}'::jsonb,
  updated_at timestamptz not null default now()
);
"""

_JOB_COLUMNS = """
  id, source_url, title, batch, processing_status, processing_worker,
  processing_started_at, processing_attempts, processing_error, next_attempt_at,
  detail_page_data, content_hash, funding_program_id, processed_at, created_at
"""

_PROGRAM_FIELDS = [
    "id", "content_hash", "source_job_id", "source_url", "title", "ministry", "agency",
    "budget_amount", "min_trl", "max_trl", "trl_inferred", "deadline", "published_at",
    "application_start", "allowed_business_structures", "required_certifications",
    "target_types", "submission_system", "requires_research_institute",
    "includes_research_institutes", "category", "category_confidence", "matched_keywords",
    "manual_review_required", "requires_regional_filter", "regional_keywords",
    "eligibility_confidence", "status", "provenance",
]
_PROGRAM_JSON_FIELDS = {
    "allowed_business_structures", "required_certifications", "target_types",
    "matched_keywords", "regional_keywords", "provenance",
}


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


class PostgresJobRepository(JobRepository):
    """
    asyncpg-backed JobRepository.

    Args:
        database_url: PostgreSQL DSN
        min_pool_size: Minimum pooled connections
        max_pool_size: Maximum pooled connections
    """

    def __init__(self, database_url: Optional[str], min_pool_size: int = 1, max_pool_size: int = 5):
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FUNDING_INGEST_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def ensure_schema(self) -> None:
        """Create tables and indexes if missing."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("schema_ensured")

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def add_job(self, job: Job) -> Job:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                insert into ingest_jobs (id, source_url, title, batch, detail_page_data, created_at)
                values ($1, $2, $3, $4, $5::jsonb, $6)
                on conflict (id) do update set id = excluded.id
                returning {_JOB_COLUMNS}
                """,
                job.id,
                job.source_url,
                job.title,
                job.batch,
                _json(job.detail_page_data.to_dict()),
                job.created_at,
            )
        return self._row_to_job(row)

    async def get_job(self, job_id: str) -> Optional[Job]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"select {_JOB_COLUMNS} from ingest_jobs where id = $1", job_id)
        return self._row_to_job(row) if row else None

    async def find_pending_jobs(
        self,
        batch: Optional[str],
        now: datetime,
        max_attempts: int,
        limit: int = 50,
    ) -> list[Job]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from ingest_jobs
                where processing_status = 'PENDING'
                  and processing_attempts < $3
                  and (next_attempt_at is null or next_attempt_at <= $2)
                  and ($1::text is null or batch = $1)
                order by created_at asc
                limit $4
                """,
                batch,
                now,
                max_attempts,
                bounded_limit,
            )
        return [self._row_to_job(row) for row in rows]

    async def claim(self, job_id: str, worker_id: str, now: datetime, max_attempts: int) -> Optional[Job]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                update ingest_jobs
                set
                  processing_status = 'PROCESSING',
                  processing_worker = $2,
                  processing_started_at = $3,
                  processing_attempts = processing_attempts + 1,
                  next_attempt_at = null
                where id = $1
                  and processing_status = 'PENDING'
                  and processing_attempts < $4
                  and (next_attempt_at is null or next_attempt_at <= $3)
                returning {_JOB_COLUMNS}
                """,
                job_id,
                worker_id,
                now,
                max_attempts,
            )
        return self._row_to_job(row) if row else None

    async def update(self, job: Job, expected_worker: Optional[str]) -> Job:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._update_owned(conn, job, expected_worker)
        return self._row_to_job(row)

    async def complete(
        self,
        job: Job,
        expected_worker: Optional[str],
        program: Optional[FundingProgram] = None,
    ) -> Job:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._update_owned(conn, job, expected_worker)
                if program is not None:
                    await self._upsert_program(conn, program)
        if program is not None:
            logger.debug("program_upserted", program_id=program.id, category=program.category.value)
        return self._row_to_job(row)

    async def _update_owned(self, conn, job: Job, expected_worker: Optional[str]):
        """Compare-and-set on (status, worker); run inside a transaction."""
        row = await conn.fetchrow(
            f"""
            update ingest_jobs
            set
              title = $3,
              processing_status = $4,
              processing_worker = $5,
              processing_started_at = $6,
              processing_attempts = greatest(processing_attempts, $7),
              processing_error = $8,
              next_attempt_at = $9,
              detail_page_data = $10::jsonb,
              content_hash = $11,
              funding_program_id = $12,
              processed_at = $13
            where id = $1
              and processing_status = 'PROCESSING'
              and processing_worker is not distinct from $2
            returning {_JOB_COLUMNS}
            """,
            job.id,
            expected_worker,
            job.title,
            job.processing_status.value,
            job.processing_worker,
            job.processing_started_at,
            job.processing_attempts,
            job.processing_error,
            job.next_attempt_at,
            _json(job.detail_page_data.to_dict()),
            job.content_hash,
            job.funding_program_id,
            job.processed_at,
        )
        if not row:
            exists = await conn.fetchval("select 1 from ingest_jobs where id = $1", job.id)
            if not exists:
                raise RepositoryNotFoundError(f"job not found: {job.id}")
            raise RepositoryConflictError(f"job {job.id} is no longer PROCESSING by {expected_worker}")
        return row

    async def reset(self, job_id: str) -> Job:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                update ingest_jobs
                set
                  processing_status = 'PENDING',
                  processing_worker = null,
                  processing_started_at = null,
                  processing_attempts = 0,
                  processing_error = null,
                  next_attempt_at = null,
                  processed_at = null
                where id = $1
                returning {_JOB_COLUMNS}
                """,
                job_id,
            )
        if not row:
            raise RepositoryNotFoundError(f"job not found: {job_id}")
        return self._row_to_job(row)

    async def reset_batch(self, batch: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                update ingest_jobs
                set
                  processing_status = 'PENDING',
                  processing_worker = null,
                  processing_started_at = null,
                  processing_attempts = 0,
                  processing_error = null,
                  next_attempt_at = null,
                  processed_at = null
                where batch = $1
                returning id
                """,
                batch,
            )
        return len(rows)

    async def find_stale_jobs(self, started_before: datetime, limit: int = 100) -> list[Job]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from ingest_jobs
                where processing_status = 'PROCESSING'
                  and (processing_started_at is null or processing_started_at < $1)
                order by processing_started_at asc nulls first
                limit $2
                """,
                started_before,
                bounded_limit,
            )
        return [self._row_to_job(row) for row in rows]

    # -------------------------------------------------------------------------
    # Funding programs
    # -------------------------------------------------------------------------

    async def upsert_funding_program(self, program: FundingProgram) -> FundingProgram:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._upsert_program(conn, program)
        logger.debug("program_upserted", program_id=program.id, category=program.category.value)
        return program

    async def _upsert_program(self, conn, program: FundingProgram) -> None:
        data = program.to_dict()
        values = []
        for name in _PROGRAM_FIELDS:
            value = data[name]
            if name in _PROGRAM_JSON_FIELDS:
                value = _json(value)
            elif isinstance(getattr(program, name), date):
                value = getattr(program, name)
            values.append(value)

        placeholders = ", ".join(
            f"${i}::jsonb" if name in _PROGRAM_JSON_FIELDS else f"${i}"
            for i, name in enumerate(_PROGRAM_FIELDS, 1)
        )
        updates = ", ".join(f"{name} = excluded.{name}" for name in _PROGRAM_FIELDS if name != "id")

        try:
            await conn.execute(
                f"""
                insert into funding_programs ({", ".join(_PROGRAM_FIELDS)})
                values ({placeholders})
                on conflict (id) do update set {updates}, updated_at = now()
                """,
                *values,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"content hash already owned by another program: {program.content_hash}") from exc

    async def find_program_by_hash(self, content_hash: str) -> Optional[FundingProgram]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"select {', '.join(_PROGRAM_FIELDS)} from funding_programs where content_hash = $1",
                content_hash,
            )
        return self._row_to_program(row) if row else None

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: asyncpg.Record) -> Job:
        return Job(
            id=row["id"],
            source_url=row["source_url"],
            title=row["title"],
            batch=row["batch"],
            processing_status=ProcessingStatus(row["processing_status"]),
            processing_worker=row["processing_worker"],
            processing_started_at=row["processing_started_at"],
            processing_attempts=row["processing_attempts"],
            processing_error=row["processing_error"],
            next_attempt_at=row["next_attempt_at"],
            detail_page_data=DetailPageData.from_dict(_load_json(row["detail_page_data"])),
            content_hash=row["content_hash"],
            funding_program_id=row["funding_program_id"],
            processed_at=row["processed_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_program(row: asyncpg.Record) -> FundingProgram:
        data = {name: row[name] for name in _PROGRAM_FIELDS}
        for name in _PROGRAM_JSON_FIELDS:
            data[name] = _load_json(data[name])

        if data["allowed_business_structures"] is not None:
            data["allowed_business_structures"] = [BusinessStructure(v) for v in data["allowed_business_structures"]]
        if data["target_types"] is not None:
            data["target_types"] = [TargetType(v) for v in data["target_types"]]
        data["matched_keywords"] = data["matched_keywords"] or []
        data["regional_keywords"] = data["regional_keywords"] or []
        data["provenance"] = data["provenance"] or {}
        data["category"] = IndustryCategory(data["category"])
        data["category_confidence"] = Confidence(data["category_confidence"])
        data["eligibility_confidence"] = Confidence(data["eligibility_confidence"])
        data["status"] = ProgramStatus(data["status"])
        return FundingProgram(**data)
