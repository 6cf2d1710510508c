from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TechHistory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_seen: datetime | None = None
    last_seen: datetime | None = None
    # "YYYY-MM" -> lines touched in that month
    months: dict[str, int] = Field(default_factory=dict)


class TechStats(BaseModel):
    model_config = ConfigDict(extra="ignore")

    language: str = Field(min_length=1)
    files: int = Field(default=0, ge=0)
    total_lines: int = Field(default=0, ge=0)
    code_lines: int = Field(default=0, ge=0)
    comment_lines: int = Field(default=0, ge=0)
    blank_lines: int = Field(default=0, ge=0)
    refs: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    history: TechHistory | None = None


class ProjectOverview(BaseModel):
    model_config = ConfigDict(extra="ignore")

    commit_count: int = Field(default=0, ge=0)
    # "<8 hex chars>_<epoch>", e.g. "7474684a_1595904770"
    commits: list[str] | None = None
    date_init: datetime | None = None
    date_head: datetime | None = None


class RawReport(BaseModel):
    """One submitted stack analysis for one project of one owner."""

    model_config = ConfigDict(extra="ignore")

    timestamp: datetime
    public_name: str | None = None
    public_contact: str | None = None
    tech: list[TechStats] = Field(default_factory=list)
    projects_included: list[ProjectOverview] = Field(default_factory=list)
    last_contributor_commit_sha1: str | None = None
    last_contributor_commit_date_epoch: int | None = None
