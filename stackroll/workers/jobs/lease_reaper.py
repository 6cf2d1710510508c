from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from stackroll.core.config import Settings
from stackroll.services.repository import JobRecord, PostgresRepository

logger = logging.getLogger(__name__)


def lease_is_stale(job: JobRecord, stale_after_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if job.lease_ts is None:
        return False

    lease_ts = job.lease_ts
    if lease_ts.tzinfo is None:
        lease_ts = lease_ts.replace(tzinfo=timezone.utc)

    return lease_ts <= now - timedelta(seconds=stale_after_seconds)


def should_release(job: JobRecord, stale_after_seconds: int, now: datetime | None = None) -> bool:
    return job.lease_id is not None and lease_is_stale(job, stale_after_seconds, now=now)


async def reap_stale_leases(
    repository: PostgresRepository,
    settings: Settings,
    *,
    limit: int | None = None,
) -> list[str]:
    """Clears leases older than the staleness threshold so the jobs can be claimed again."""
    released = await repository.release_stale_leases(
        stale_after_seconds=settings.lease_stale_after_seconds,
        limit=limit or settings.lease_reaper_batch_size,
    )
    if released:
        logger.info("released stale leases: %s", len(released))
    return released
