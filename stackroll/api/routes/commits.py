import re

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stackroll.core.security import require_operator
from stackroll.schemas.jobs import CommitOwnerOut
from stackroll.services.repository import PostgresRepository, RepositoryUnavailableError, get_repository

router = APIRouter(dependencies=[Depends(require_operator)])

_SHORT_HASH_RE = re.compile(r"^[0-9a-f]{8}$")
MAX_LOOKUP_HASHES = 100


@router.get("/owners", response_model=list[CommitOwnerOut])
async def get_commit_owners(
    hashes: list[str] = Query(alias="hash"),
    repository: PostgresRepository = Depends(get_repository),
) -> list[CommitOwnerOut]:
    normalized = sorted({value.strip().lower() for value in hashes})
    if len(normalized) > MAX_LOOKUP_HASHES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"at most {MAX_LOOKUP_HASHES} commit hashes per request",
        )
    invalid = [value for value in normalized if not _SHORT_HASH_RE.match(value)]
    if invalid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"commit hashes must be 8 hex characters: {', '.join(invalid)}",
        )

    try:
        records = await repository.find_commit_owners(normalized)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [
        CommitOwnerOut(
            owner_id=record.owner_id,
            project_id=record.project_id,
            commit_hash=record.commit_hash,
            commit_ts=record.commit_ts,
        )
        for record in records
    ]
