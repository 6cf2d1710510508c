from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone

import pytest

from conftest import gz_json, make_report
from stackroll.core.config import Settings
from stackroll.services.repository import JobRecord, RepositoryUnavailableError
from stackroll.workers.jobs.aggregator import (
    AggregationResult,
    InvalidOwnerIdError,
    ProfilePublishError,
    ReportAggregator,
)
from stackroll.workers.main import (
    OUTCOME_COMPLETED,
    OUTCOME_GAVE_UP,
    OUTCOME_LEASE_LOST,
    OUTCOME_NO_REPORTS,
    OUTCOME_RETRY_LATER,
    WorkerAbortedError,
    process_batch,
    process_job,
    run_cycle,
    run_worker,
)


class FlakyAggregator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def aggregate(self, owner_id: str) -> AggregationResult:
        self.calls.append(owner_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.001)
            if self.error is not None:
                raise self.error
            return AggregationResult(profile=None, payload=b"{}")  # type: ignore[arg-type]
        finally:
            self.active -= 1


def _real_aggregator(report_store, search_index, settings: Settings) -> ReportAggregator:
    return ReportAggregator(
        report_store,
        search_index,
        report_prefix=settings.s3_report_prefix,
        owner_id_pattern=settings.owner_id_pattern,
    )


def test_submission_is_aggregated_once_and_then_idle(
    settings: Settings,
    job_repository,
    report_store,
    s3_client,
    search_index,
    indexed_documents,
) -> None:
    s3_client.objects["reports/alice/p1/report.gz"] = gz_json(make_report("2024-01-01T00:00:00Z"))
    aggregator = _real_aggregator(report_store, search_index, settings)

    async def run() -> tuple[int, int]:
        await job_repository.register_submission("alice")
        first = await run_cycle(job_repository, aggregator, settings)
        second = await run_cycle(job_repository, aggregator, settings)
        return first, second

    first, second = asyncio.run(run())

    assert (first, second) == (1, 0)
    job = job_repository.jobs["alice"]
    assert job.lease_id is None
    assert job.fail_counter == 0
    assert job.report_ts >= job.last_submission_ts
    assert "alice" in indexed_documents
    assert "reports/alice/profile.gz" in s3_client.objects


def test_submission_during_aggregation_keeps_job_eligible(settings: Settings, job_repository) -> None:
    class ResubmittingAggregator(FlakyAggregator):
        async def aggregate(self, owner_id: str) -> AggregationResult:
            await job_repository.register_submission(owner_id)
            return await super().aggregate(owner_id)

    aggregator = ResubmittingAggregator()

    async def run() -> None:
        await job_repository.register_submission("bob")
        await run_cycle(job_repository, aggregator, settings)

    asyncio.run(run())

    assert job_repository.jobs["bob"].eligible


def test_no_reports_completes_the_job(settings: Settings, job_repository, report_store, search_index) -> None:
    aggregator = _real_aggregator(report_store, search_index, settings)

    async def run() -> Counter[str]:
        await job_repository.register_submission("carol")
        lease_id = "00000000-0000-0000-0000-000000000001"
        jobs = await job_repository.claim_jobs(lease_id, 10)
        return await process_batch(jobs, lease_id, job_repository, aggregator, settings)

    outcomes = asyncio.run(run())

    assert outcomes == Counter({OUTCOME_NO_REPORTS: 1})
    assert not job_repository.jobs["carol"].eligible
    assert job_repository.jobs["carol"].last_submission_ts is not None


def test_failures_retry_until_threshold_then_give_up(settings: Settings, job_repository) -> None:
    aggregator = FlakyAggregator(ProfilePublishError("search index down"))
    lease_ids = [f"00000000-0000-0000-0000-00000000000{idx}" for idx in range(1, 5)]

    async def run() -> list[str]:
        await job_repository.register_submission("dan")
        outcomes: list[str] = []
        for lease_id in lease_ids:
            jobs = await job_repository.claim_jobs(lease_id, 10)
            if not jobs:
                break
            outcomes.append(await process_job(jobs[0], lease_id, job_repository, aggregator, settings))
            job_repository.tick(settings.lease_stale_after_seconds + 1)
            await job_repository.release_stale_leases(settings.lease_stale_after_seconds, 100)
        return outcomes

    outcomes = asyncio.run(run())

    assert outcomes == [OUTCOME_RETRY_LATER, OUTCOME_RETRY_LATER, OUTCOME_GAVE_UP]
    job = job_repository.jobs["dan"]
    assert job.last_submission_ts is None
    assert not job.eligible

    asyncio.run(job_repository.register_submission("dan"))
    assert job_repository.jobs["dan"].eligible
    assert job_repository.jobs["dan"].fail_counter == 0


def test_invalid_owner_id_gives_up_immediately(settings: Settings, job_repository) -> None:
    aggregator = FlakyAggregator(InvalidOwnerIdError("invalid owner id"))

    async def run() -> str:
        await job_repository.register_submission("bad/owner")
        lease_id = "00000000-0000-0000-0000-000000000009"
        jobs = await job_repository.claim_jobs(lease_id, 10)
        return await process_job(jobs[0], lease_id, job_repository, aggregator, settings)

    assert asyncio.run(run()) == OUTCOME_GAVE_UP
    assert job_repository.jobs["bad/owner"].last_submission_ts is None


def test_lost_lease_is_not_an_error(settings: Settings, job_repository) -> None:
    aggregator = FlakyAggregator()
    stale = JobRecord("erin", datetime(2024, 1, 1, tzinfo=timezone.utc), None, "old", None, 1)

    async def run() -> str:
        await job_repository.register_submission("erin")
        await job_repository.claim_jobs("00000000-0000-0000-0000-0000000000aa", 10)
        return await process_job(stale, "00000000-0000-0000-0000-0000000000bb", job_repository, aggregator, settings)

    assert asyncio.run(run()) == OUTCOME_LEASE_LOST
    assert job_repository.jobs["erin"].lease_id == "00000000-0000-0000-0000-0000000000aa"


def test_batch_concurrency_is_bounded(settings: Settings, job_repository) -> None:
    aggregator = FlakyAggregator()

    async def run() -> Counter[str]:
        for idx in range(12):
            await job_repository.register_submission(f"owner{idx}")
        lease_id = "00000000-0000-0000-0000-0000000000cc"
        jobs = await job_repository.claim_jobs(lease_id, 100)
        return await process_batch(jobs, lease_id, job_repository, aggregator, settings)

    outcomes = asyncio.run(run())

    assert outcomes == Counter({OUTCOME_COMPLETED: 12})
    assert sorted(aggregator.calls) == sorted(f"owner{idx}" for idx in range(12))
    assert aggregator.max_active <= settings.max_active_jobs


def test_store_error_fails_cycle_only_after_every_job_settles(settings: Settings, job_repository) -> None:
    class SlowForBob(FlakyAggregator):
        async def aggregate(self, owner_id: str) -> AggregationResult:
            if owner_id == "bob":
                await asyncio.sleep(0.05)
            return await super().aggregate(owner_id)

    aggregator = SlowForBob()
    job_repository.complete_errors["alice"] = RepositoryUnavailableError("database unavailable")

    async def run() -> int:
        await job_repository.register_submission("alice")
        await job_repository.register_submission("bob")
        with pytest.raises(RepositoryUnavailableError):
            await run_cycle(job_repository, aggregator, settings)
        return len([task for task in asyncio.all_tasks() if task is not asyncio.current_task()])

    assert asyncio.run(run()) == 0
    bob = job_repository.jobs["bob"]
    assert bob.lease_id is None
    assert not bob.eligible
    assert job_repository.jobs["alice"].lease_id is not None


def test_worker_aborts_after_consecutive_failed_cycles(settings: Settings, job_repository, report_store, search_index) -> None:
    settings.max_consecutive_errors = 2
    job_repository.claim_error = RepositoryUnavailableError("database unavailable")

    with pytest.raises(WorkerAbortedError):
        asyncio.run(
            run_worker(
                asyncio.Event(),
                settings=settings,
                repository=job_repository,
                store=report_store,
                index=search_index,
            )
        )
    assert job_repository.closed


def test_worker_exits_when_job_store_is_unreachable_at_startup(
    settings: Settings,
    job_repository,
    report_store,
    search_index,
) -> None:
    job_repository.ping_error = RepositoryUnavailableError("database unavailable")

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(
            run_worker(
                asyncio.Event(),
                settings=settings,
                repository=job_repository,
                store=report_store,
                index=search_index,
            )
        )


def test_worker_stops_when_stop_event_is_set(settings: Settings, job_repository, report_store, search_index) -> None:
    async def run() -> None:
        stop_event = asyncio.Event()
        await job_repository.register_submission("frank")
        stop_event.set()
        await run_worker(
            stop_event,
            settings=settings,
            repository=job_repository,
            store=report_store,
            index=search_index,
        )

    asyncio.run(run())

    assert job_repository.closed
    assert job_repository.jobs["frank"].eligible


def test_malformed_reports_reach_give_up_threshold(
    settings: Settings,
    job_repository,
    report_store,
    s3_client,
    search_index,
) -> None:
    s3_client.objects["reports/o2/p1/report.gz"] = b"\x1f\x8bbroken"
    aggregator = _real_aggregator(report_store, search_index, settings)

    async def run() -> list[int]:
        await job_repository.register_submission("o2")
        claimed_counts: list[int] = []
        for _ in range(settings.give_up_after_attempts + 1):
            claimed_counts.append(await run_cycle(job_repository, aggregator, settings))
            job_repository.tick(settings.lease_stale_after_seconds + 1)
            await job_repository.release_stale_leases(settings.lease_stale_after_seconds, 100)
        return claimed_counts

    assert asyncio.run(run()) == [1, 1, 1, 0]
    assert job_repository.jobs["o2"].last_submission_ts is None

    asyncio.run(job_repository.register_submission("o2"))
    assert job_repository.jobs["o2"].eligible
    assert job_repository.jobs["o2"].fail_counter == 0
