from __future__ import annotations

import asyncio
import logging
import random
import signal
import time
from collections import Counter
from uuid import uuid4

from opentelemetry import trace

from stackroll.core.config import Settings, get_settings
from stackroll.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_telemetry
from stackroll.services.report_store import S3ReportStore
from stackroll.services.repository import JobRecord, PostgresRepository
from stackroll.services.search_index import SearchIndexClient
from stackroll.workers.jobs.aggregator import (
    AggregationError,
    InvalidOwnerIdError,
    NoReportsFoundError,
    ReportAggregator,
)
from stackroll.workers.jobs.inbox_router import route_inbox_batch
from stackroll.workers.jobs.lease_reaper import reap_stale_leases

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_NO_REPORTS = "no_reports"
OUTCOME_GAVE_UP = "gave_up"
OUTCOME_RETRY_LATER = "retry_later"
OUTCOME_LEASE_LOST = "lease_lost"


class WorkerAbortedError(RuntimeError):
    """Raised when too many consecutive cycles failed."""


async def process_job(
    job: JobRecord,
    lease_id: str,
    repository: PostgresRepository,
    aggregator: ReportAggregator,
    settings: Settings,
) -> str:
    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attribute("job.owner_id", job.owner_id)
        job_span.set_attribute("job.attempt", job.fail_counter)
        try:
            result = await aggregator.aggregate(job.owner_id)
        except NoReportsFoundError:
            logger.info("no reports for owner_id=%s; nothing to publish", job.owner_id)
            outcome = OUTCOME_NO_REPORTS
        except InvalidOwnerIdError as exc:
            # the same owner id will never produce a storage key
            logger.error("giving up on owner_id=%s: %s", job.owner_id, exc)
            return await _give_up(job, lease_id, repository)
        except AggregationError as exc:
            return await _handle_failure(job, lease_id, repository, settings, exc)
        except Exception as exc:
            logger.exception("unexpected aggregation failure for owner_id=%s", job.owner_id)
            return await _handle_failure(job, lease_id, repository, settings, exc)
        else:
            if result.skipped_keys:
                logger.warning(
                    "published profile owner_id=%s with %s unreadable reports skipped",
                    job.owner_id,
                    len(result.skipped_keys),
                )
            outcome = OUTCOME_COMPLETED

        if not await repository.complete_job(job.owner_id, lease_id):
            logger.info("lease lost before completion owner_id=%s", job.owner_id)
            return OUTCOME_LEASE_LOST
        job_span.set_attribute("job.outcome", outcome)
        return outcome


async def _handle_failure(
    job: JobRecord,
    lease_id: str,
    repository: PostgresRepository,
    settings: Settings,
    exc: Exception,
) -> str:
    if job.fail_counter >= settings.give_up_after_attempts:
        logger.error(
            "giving up on owner_id=%s after %s attempts: %s",
            job.owner_id,
            job.fail_counter,
            exc,
        )
        return await _give_up(job, lease_id, repository)

    # the lease is left in place; the reaper releases it once it is stale
    logger.warning(
        "aggregation failed owner_id=%s attempt=%s; will retry: %s",
        job.owner_id,
        job.fail_counter,
        exc,
    )
    return OUTCOME_RETRY_LATER


async def _give_up(job: JobRecord, lease_id: str, repository: PostgresRepository) -> str:
    if not await repository.give_up_job(job.owner_id, lease_id):
        logger.info("lease lost before give-up owner_id=%s", job.owner_id)
        return OUTCOME_LEASE_LOST
    return OUTCOME_GAVE_UP


async def process_batch(
    jobs: list[JobRecord],
    lease_id: str,
    repository: PostgresRepository,
    aggregator: ReportAggregator,
    settings: Settings,
) -> Counter[str]:
    active = asyncio.Semaphore(max(1, settings.max_active_jobs))

    async def _run(job: JobRecord) -> str:
        async with active:
            return await process_job(job, lease_id, repository, aggregator, settings)

    # every job settles before a store error fails the cycle
    results = await asyncio.gather(*(_run(job) for job in jobs), return_exceptions=True)

    outcomes: Counter[str] = Counter()
    errors: list[BaseException] = []
    for job, result in zip(jobs, results):
        if isinstance(result, BaseException):
            logger.error("job failed owner_id=%s: %r", job.owner_id, result, exc_info=result)
            errors.append(result)
        else:
            outcomes[result] += 1
    if errors:
        raise errors[0]
    return outcomes


async def run_cycle(
    repository: PostgresRepository,
    aggregator: ReportAggregator,
    settings: Settings,
) -> int:
    """Claims one batch and processes it. Returns the number of claimed jobs."""
    lease_id = str(uuid4())
    jobs = await repository.claim_jobs(lease_id, settings.claim_batch_size)
    if not jobs:
        return 0

    outcomes = await process_batch(jobs, lease_id, repository, aggregator, settings)
    logger.info("processed batch lease_id=%s jobs=%s outcomes=%s", lease_id, len(jobs), dict(outcomes))
    return len(jobs)


async def _sleep(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix event loops
            logger.debug("signal handlers unavailable for %s", sig)


async def run_worker(
    stop_event: asyncio.Event | None = None,
    *,
    settings: Settings | None = None,
    repository: PostgresRepository | None = None,
    store: S3ReportStore | None = None,
    index: SearchIndexClient | None = None,
) -> None:
    settings = settings or get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    repository = repository or PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
    store = store or S3ReportStore(
        settings.s3_bucket_reports,
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
    )
    index = index or SearchIndexClient.from_settings(settings)
    aggregator = ReportAggregator(
        store,
        index,
        report_prefix=settings.s3_report_prefix,
        owner_id_pattern=settings.owner_id_pattern,
        read_concurrency=settings.report_read_concurrency,
    )

    backoff = settings.poll_interval_seconds
    consecutive_errors = 0
    last_reap_at = 0.0
    last_inbox_at = 0.0

    try:
        # an unreachable job store at startup is fatal
        await repository.ping()
        logger.info("worker started claim_batch_size=%s max_active_jobs=%s", settings.claim_batch_size, settings.max_active_jobs)

        while not stop_event.is_set():
            if consecutive_errors >= settings.max_consecutive_errors:
                raise WorkerAbortedError(f"{consecutive_errors} consecutive failed cycles")

            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        await reap_stale_leases(repository, settings)
                        last_reap_at = now

                    if settings.inbox_routing_enabled and now - last_inbox_at >= settings.inbox_poll_interval_seconds:
                        routed = await route_inbox_batch(store, repository, settings)
                        if routed:
                            logger.info("routed inbox reports: %s", len(routed))
                        last_inbox_at = now

                    claimed = await run_cycle(repository, aggregator, settings)

                consecutive_errors = 0
                backoff = settings.poll_interval_seconds
                # the claim query is the expensive one; a short batch means the queue is drained
                if claimed < settings.max_active_jobs:
                    await _sleep(stop_event, settings.poll_interval_seconds)
            except Exception as exc:
                consecutive_errors += 1
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception(
                    "worker cycle failed (%s/%s): %s; retry in %.1fs",
                    consecutive_errors,
                    settings.max_consecutive_errors,
                    exc,
                    sleep_for,
                )
                await _sleep(stop_event, sleep_for)
                backoff = sleep_for
        logger.info("worker stopped")
    finally:
        await index.close()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    try:
        asyncio.run(run_worker())
    except WorkerAbortedError as exc:
        logger.critical("worker aborted: %s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
