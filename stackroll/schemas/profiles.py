from datetime import datetime

from pydantic import BaseModel, Field


class TechProfile(BaseModel):
    language: str
    files: int = 0
    total_lines: int = 0
    code_lines: int = 0
    comment_lines: int = 0
    blank_lines: int = 0
    refs: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    months: dict[str, int] = Field(default_factory=dict)


class ProjectProfile(BaseModel):
    project_id: str
    report_ts: datetime
    commit_count: int = 0
    first_commit_ts: datetime | None = None
    last_commit_ts: datetime | None = None
    languages: list[str] = Field(default_factory=list)


class DevProfile(BaseModel):
    owner_id: str
    public_name: str | None = None
    public_contact: str | None = None
    report_count: int
    last_report_ts: datetime
    tech: list[TechProfile] = Field(default_factory=list)
    projects: list[ProjectProfile] = Field(default_factory=list)
