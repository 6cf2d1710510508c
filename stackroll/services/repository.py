from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

from stackroll.core.config import get_settings
from stackroll.services.schema import SCHEMA_DDL

MAX_CLAIM_BATCH = 100
MAX_MAINTENANCE_BATCH = 1000

_JOB_COLUMNS = """
  owner_id,
  last_submission_ts,
  report_ts,
  lease_id::text as lease_id,
  lease_ts,
  fail_counter
"""


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryValidationError(RepositoryError):
    """Raised when arguments fail validation before reaching the database."""


@dataclass(slots=True)
class JobRecord:
    owner_id: str
    last_submission_ts: datetime | None
    report_ts: datetime | None
    lease_id: str | None
    lease_ts: datetime | None
    fail_counter: int

    @property
    def eligible(self) -> bool:
        if self.lease_id is not None or self.last_submission_ts is None:
            return False
        return self.report_ts is None or self.report_ts < self.last_submission_ts


@dataclass(slots=True)
class CommitOwnershipRecord:
    owner_id: str
    project_id: str
    commit_hash: str
    commit_ts: int


class PostgresRepository:
    """Job store and commit ownership table.

    Every state transition is one SQL statement, so a worker that dies
    between calls never leaves a row half-updated. The claim is the only
    statement that locks rows; completion and give-up are guarded by the
    lease token instead.
    """

    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_DDL)

    async def register_submission(self, owner_id: str, ts: datetime | None = None) -> JobRecord:
        owner_id = self._require_owner_id(owner_id)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into dev_jobs (owner_id, last_submission_ts, fail_counter)
            values ($1, coalesce($2::timestamptz, now()), 0)
            on conflict (owner_id) do update
            set
              last_submission_ts = greatest(dev_jobs.last_submission_ts, excluded.last_submission_ts),
              fail_counter = 0,
              updated_at = now()
            returning {_JOB_COLUMNS}
            """,
            owner_id,
            _as_utc(ts),
        )
        return self._job_row_to_record(row)

    async def claim_jobs(self, lease_id: UUID | str, max_count: int) -> list[JobRecord]:
        lease = self._coerce_lease_id(lease_id)
        bounded_limit = max(1, min(max_count, MAX_CLAIM_BATCH))
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with eligible as (
              select owner_id
              from dev_jobs
              where lease_id is null
                and last_submission_ts is not null
                and (report_ts is null or report_ts < last_submission_ts)
              limit $2
              for update skip locked
            )
            update dev_jobs j
            set
              lease_id = $1::uuid,
              lease_ts = now(),
              fail_counter = j.fail_counter + 1,
              updated_at = now()
            from eligible e
            where j.owner_id = e.owner_id
            returning
              j.owner_id,
              j.last_submission_ts,
              j.report_ts,
              j.lease_id::text as lease_id,
              j.lease_ts,
              j.fail_counter
            """,
            lease,
            bounded_limit,
        )
        return [self._job_row_to_record(row) for row in rows]

    async def complete_job(self, owner_id: str, lease_id: UUID | str) -> bool:
        lease = self._coerce_lease_id(lease_id)
        pool = await self._get_pool()
        # the watermark is the claim time of the successful run, so a submission
        # that lands while the profile is being built keeps the job eligible
        updated = await pool.fetchval(
            """
            update dev_jobs
            set
              report_ts = greatest(report_ts, coalesce(lease_ts, now())),
              lease_id = null,
              lease_ts = null,
              fail_counter = 0,
              updated_at = now()
            where owner_id = $1 and lease_id = $2::uuid
            returning owner_id
            """,
            owner_id,
            lease,
        )
        return updated is not None

    async def give_up_job(self, owner_id: str, lease_id: UUID | str) -> bool:
        lease = self._coerce_lease_id(lease_id)
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update dev_jobs
            set
              last_submission_ts = null,
              lease_id = null,
              lease_ts = null,
              updated_at = now()
            where owner_id = $1 and lease_id = $2::uuid
            returning owner_id
            """,
            owner_id,
            lease,
        )
        return updated is not None

    async def release_stale_leases(self, stale_after_seconds: int, limit: int) -> list[str]:
        if stale_after_seconds < 1:
            raise RepositoryValidationError("stale_after_seconds must be positive")
        bounded_limit = max(1, min(limit, MAX_MAINTENANCE_BATCH))
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with stale as (
              select owner_id
              from dev_jobs
              where lease_id is not null
                and lease_ts <= now() - ($1::int * interval '1 second')
              order by lease_ts asc
              limit $2
              for update skip locked
            )
            update dev_jobs j
            set
              lease_id = null,
              lease_ts = null,
              updated_at = now()
            from stale s
            where j.owner_id = s.owner_id
            returning j.owner_id
            """,
            stale_after_seconds,
            bounded_limit,
        )
        return [row["owner_id"] for row in rows]

    async def get_job(self, owner_id: str) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_JOB_COLUMNS} from dev_jobs where owner_id = $1",
            owner_id,
        )
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def queue_stats(self, stale_after_seconds: int) -> dict[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) as total,
              count(*) filter (
                where lease_id is null
                  and last_submission_ts is not null
                  and (report_ts is null or report_ts < last_submission_ts)
              ) as eligible,
              count(*) filter (where lease_id is not null) as in_flight,
              count(*) filter (
                where lease_id is not null
                  and lease_ts <= now() - ($1::int * interval '1 second')
              ) as stale_leases,
              count(*) filter (where last_submission_ts is null) as given_up,
              count(*) filter (where fail_counter > 0) as failing
            from dev_jobs
            """,
            max(1, stale_after_seconds),
        )
        return {key: int(row[key] or 0) for key in ("total", "eligible", "in_flight", "stale_leases", "given_up", "failing")}

    async def add_commits(self, owner_id: str, project_id: str, commits: dict[str, int]) -> int:
        if not commits:
            return 0
        hashes = sorted(commits)
        timestamps = [commits[commit_hash] for commit_hash in hashes]
        pool = await self._get_pool()
        status = await pool.execute(
            """
            insert into commit_ownership (owner_id, project_id, commit_hash, commit_ts)
            select $1, $2, c.commit_hash, c.commit_ts
            from unnest($3::varchar[], $4::bigint[]) as c(commit_hash, commit_ts)
            on conflict do nothing
            """,
            owner_id,
            project_id,
            hashes,
            timestamps,
        )
        # asyncpg returns the command tag, e.g. "INSERT 0 3"
        return int(status.rsplit(" ", maxsplit=1)[-1])

    async def find_commit_owners(self, commit_hashes: list[str]) -> list[CommitOwnershipRecord]:
        if not commit_hashes:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select distinct owner_id, project_id, commit_hash, commit_ts
            from commit_ownership
            where commit_hash = any($1::varchar[])
            order by owner_id, project_id, commit_hash
            """,
            commit_hashes,
        )
        return [
            CommitOwnershipRecord(
                owner_id=row["owner_id"],
                project_id=row["project_id"],
                commit_hash=row["commit_hash"],
                commit_ts=int(row["commit_ts"]),
            )
            for row in rows
        ]

    async def latest_project_commit_ts(self, owner_id: str, project_id: str) -> int | None:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select max(commit_ts)
            from commit_ownership
            where owner_id = $1 and project_id = $2
            """,
            owner_id,
            project_id,
        )
        return int(value) if value is not None else None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("STACKROLL_DATABASE_URL is required")

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
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _require_owner_id(owner_id: str) -> str:
        normalized = owner_id.strip() if isinstance(owner_id, str) else ""
        if not normalized:
            raise RepositoryValidationError("owner_id must be a non-empty string")
        if len(normalized) > 200:
            raise RepositoryValidationError("owner_id must be at most 200 characters")
        return normalized

    @staticmethod
    def _coerce_lease_id(lease_id: UUID | str) -> str:
        if isinstance(lease_id, UUID):
            return str(lease_id)
        try:
            return str(UUID(str(lease_id)))
        except ValueError as exc:
            raise RepositoryValidationError(f"lease_id is not a UUID: {lease_id!r}") from exc

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record | dict[str, Any]) -> JobRecord:
        return JobRecord(
            owner_id=row["owner_id"],
            last_submission_ts=row["last_submission_ts"],
            report_ts=row["report_ts"],
            lease_id=row["lease_id"],
            lease_ts=row["lease_ts"],
            fail_counter=int(row["fail_counter"]),
        )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
