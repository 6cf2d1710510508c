from fastapi import APIRouter, Depends, HTTPException, status

from stackroll.services.repository import PostgresRepository, RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(repository: PostgresRepository = Depends(get_repository)) -> dict[str, str]:
    try:
        await repository.ping()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ready"}
