from __future__ import annotations

import gzip
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

from stackroll.schemas.profiles import DevProfile, ProjectProfile, TechProfile
from stackroll.schemas.reports import RawReport, TechStats


@dataclass(slots=True)
class LoadedReport:
    key: str
    project_id: str
    report: RawReport


@dataclass(slots=True)
class TechRollup:
    language: str
    files: int = 0
    total_lines: int = 0
    code_lines: int = 0
    comment_lines: int = 0
    blank_lines: int = 0
    refs: set[str] = field(default_factory=set)
    keywords: set[str] = field(default_factory=set)
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    months: dict[str, int] = field(default_factory=dict)

    def add(self, stats: TechStats) -> None:
        self.files += stats.files
        self.total_lines += stats.total_lines
        self.code_lines += stats.code_lines
        self.comment_lines += stats.comment_lines
        self.blank_lines += stats.blank_lines
        self.refs.update(ref for ref in stats.refs if ref)
        self.keywords.update(keyword for keyword in stats.keywords if keyword)
        if stats.history is None:
            return
        self.first_seen = _earliest(self.first_seen, _utc(stats.history.first_seen))
        self.last_seen = _latest(self.last_seen, _utc(stats.history.last_seen))
        for month, count in stats.history.months.items():
            self.months[month] = self.months.get(month, 0) + count

    def to_profile(self) -> TechProfile:
        return TechProfile(
            language=self.language,
            files=self.files,
            total_lines=self.total_lines,
            code_lines=self.code_lines,
            comment_lines=self.comment_lines,
            blank_lines=self.blank_lines,
            refs=sorted(self.refs),
            keywords=sorted(self.keywords),
            first_seen=self.first_seen,
            last_seen=self.last_seen,
            months={month: self.months[month] for month in sorted(self.months)},
        )


def chronological(reports: list[LoadedReport]) -> list[LoadedReport]:
    """Oldest first; the object key breaks timestamp ties so the order never depends on listing order."""
    return sorted(reports, key=lambda row: (_utc(row.report.timestamp), row.key))


def merge_reports(owner_id: str, reports: list[LoadedReport]) -> DevProfile:
    """Combines all project reports of one owner into a single profile.

    Identity fields come from the chronologically last report as a whole.
    Technology stats are combined per language: counts are summed, package
    refs and keywords unioned, the observed date range widened and the
    monthly histogram summed.
    """
    if not reports:
        raise ValueError("merge_reports requires at least one report")

    ordered = chronological(reports)
    latest = ordered[-1].report

    rollups: dict[str, TechRollup] = {}
    for row in ordered:
        for stats in row.report.tech:
            rollup = rollups.get(stats.language)
            if rollup is None:
                rollup = rollups[stats.language] = TechRollup(language=stats.language)
            rollup.add(stats)

    projects = [_project_profile(row) for row in ordered]
    projects.sort(key=lambda project: (project.project_id, project.report_ts))

    return DevProfile(
        owner_id=owner_id,
        public_name=latest.public_name,
        public_contact=latest.public_contact,
        report_count=len(ordered),
        last_report_ts=_utc(latest.timestamp),
        tech=[rollups[language].to_profile() for language in sorted(rollups)],
        projects=projects,
    )


def serialize_profile(profile: DevProfile) -> bytes:
    """Canonical JSON: same profile, same bytes."""
    return json.dumps(
        profile.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compress_profile(payload: bytes) -> bytes:
    # mtime=0 keeps the gzip header free of wall-clock data
    return gzip.compress(payload, mtime=0)


def _project_profile(row: LoadedReport) -> ProjectProfile:
    overview = row.report.projects_included[0] if row.report.projects_included else None
    languages = sorted({stats.language for stats in row.report.tech})
    return ProjectProfile(
        project_id=row.project_id,
        report_ts=_utc(row.report.timestamp),
        commit_count=overview.commit_count if overview else 0,
        first_commit_ts=_utc(overview.date_init) if overview else None,
        last_commit_ts=_utc(overview.date_head) if overview else None,
        languages=languages,
    )


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _earliest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return min(current, candidate)


def _latest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(current, candidate)
