from datetime import datetime

from pydantic import BaseModel


class JobOut(BaseModel):
    owner_id: str
    last_submission_ts: datetime | None = None
    report_ts: datetime | None = None
    lease_id: str | None = None
    lease_ts: datetime | None = None
    fail_counter: int
    eligible: bool
    lease_stale: bool = False


class QueueStatsOut(BaseModel):
    total: int
    eligible: int
    in_flight: int
    stale_leases: int
    given_up: int
    failing: int


class JobsMaintenanceOut(BaseModel):
    count: int
    owner_ids: list[str]


class CommitOwnerOut(BaseModel):
    owner_id: str
    project_id: str
    commit_hash: str
    commit_ts: int
