from fastapi import APIRouter, Depends, HTTPException, Query, status

from stackroll.core.config import Settings, get_settings
from stackroll.core.security import require_operator
from stackroll.schemas.jobs import JobOut, JobsMaintenanceOut, QueueStatsOut
from stackroll.services.repository import (
    JobRecord,
    PostgresRepository,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from stackroll.workers.jobs.lease_reaper import reap_stale_leases, should_release

router = APIRouter(dependencies=[Depends(require_operator)])


def _job_out(job: JobRecord, stale_after_seconds: int) -> JobOut:
    return JobOut(
        owner_id=job.owner_id,
        last_submission_ts=job.last_submission_ts,
        report_ts=job.report_ts,
        lease_id=job.lease_id,
        lease_ts=job.lease_ts,
        fail_counter=job.fail_counter,
        eligible=job.eligible,
        lease_stale=should_release(job, stale_after_seconds),
    )


@router.get("/stats", response_model=QueueStatsOut)
async def get_queue_stats(
    repository: PostgresRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> QueueStatsOut:
    try:
        stats = await repository.queue_stats(settings.lease_stale_after_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueStatsOut(**stats)


@router.post("/reap-stale", response_model=JobsMaintenanceOut)
async def reap_stale_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    repository: PostgresRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> JobsMaintenanceOut:
    try:
        released = await reap_stale_leases(repository, settings, limit=limit)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobsMaintenanceOut(count=len(released), owner_ids=released)


@router.get("/{owner_id}", response_model=JobOut)
async def get_job(
    owner_id: str,
    repository: PostgresRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> JobOut:
    try:
        job = await repository.get_job(owner_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _job_out(job, settings.lease_stale_after_seconds)
