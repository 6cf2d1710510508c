"""Moves raw submissions from the inbox into the per-project report layout.

Each inbox object becomes the current `report.gz` of a project (or only an
archived copy when it is older than what is already known) and queues the
owner for aggregation through `register_submission`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from pydantic import ValidationError

from stackroll.core import owners
from stackroll.core.config import Settings
from stackroll.schemas.reports import RawReport
from stackroll.services.report_store import ReportDecodeError, S3ReportStore, decode_payload
from stackroll.services.repository import PostgresRepository

logger = logging.getLogger(__name__)

SHA1_RE = re.compile(r"^[0-9a-f]{40}$")
COMMIT_RE = re.compile(r"^([0-9a-f]{8})_(\d+)$")


class InboxReportRejected(Exception):
    """Raised when an inbox object can never be routed and is moved aside."""


@dataclass(slots=True)
class RoutedReport:
    owner_id: str
    project_id: str
    archive_key: str
    is_current: bool


def parse_commits(commits: list[str]) -> dict[str, int]:
    """Maps `<8 hex>_<epoch>` entries to `{hash: epoch}`."""
    parsed: dict[str, int] = {}
    for entry in commits:
        match = COMMIT_RE.match(entry)
        if match is None:
            raise InboxReportRejected(f"malformed commit entry: {entry!r}")
        parsed[match.group(1)] = int(match.group(2))
    return parsed


def validate_report(report: RawReport) -> tuple[str, int, dict[str, int]]:
    """Returns `(latest_sha1, latest_commit_ts, commits)` or raises `InboxReportRejected`."""
    if len(report.projects_included) != 1:
        raise InboxReportRejected(f"expected exactly one project, got {len(report.projects_included)}")

    sha1 = (report.last_contributor_commit_sha1 or "").lower()
    if not SHA1_RE.match(sha1):
        raise InboxReportRejected("missing or malformed last contributor commit sha1")

    commits = parse_commits(report.projects_included[0].commits or [])
    if not commits:
        raise InboxReportRejected("report lists no commits")

    commit_ts = report.last_contributor_commit_date_epoch
    if commit_ts is None:
        commit_ts = max(commits.values())
    return sha1, commit_ts, commits


async def resolve_project_id(repository: PostgresRepository, owner_id: str, commits: dict[str, int]) -> str:
    matches = await repository.find_commit_owners(list(commits))

    project_ids: set[str] = set()
    foreign_owners: set[str] = set()
    for record in matches:
        if commits.get(record.commit_hash) != record.commit_ts:
            continue
        if record.owner_id == owner_id:
            project_ids.add(record.project_id)
        else:
            foreign_owners.add(record.owner_id)

    if foreign_owners:
        logger.warning(
            "commits of owner_id=%s are also claimed by other owners: %s",
            owner_id,
            ", ".join(sorted(foreign_owners)),
        )

    if len(project_ids) > 1:
        raise InboxReportRejected(f"commits match {len(project_ids)} projects of {owner_id}")
    if project_ids:
        return project_ids.pop()
    return owners.new_project_id()


async def route_inbox_report(
    key: str,
    store: S3ReportStore,
    repository: PostgresRepository,
    settings: Settings,
) -> RoutedReport:
    try:
        _, owner_id = owners.parse_inbox_key(key)
    except ValueError as exc:
        raise InboxReportRejected(str(exc)) from exc
    if not owners.is_valid_owner_id(owner_id, settings.owner_id_pattern):
        raise InboxReportRejected(f"invalid owner id in inbox key: {key}")

    try:
        report = RawReport.model_validate_json(decode_payload(await store.get_bytes(key)))
    except (ReportDecodeError, ValidationError) as exc:
        raise InboxReportRejected(f"unreadable report {key}: {exc}") from exc

    sha1, commit_ts, commits = validate_report(report)
    project_id = await resolve_project_id(repository, owner_id, commits)

    # read before the insert so the new commits do not count as already known
    latest_known_ts = await repository.latest_project_commit_ts(owner_id, project_id)
    added = await repository.add_commits(owner_id, project_id, commits)

    archive_key = owners.archive_report_key(settings.s3_report_prefix, owner_id, project_id, commit_ts, sha1)
    await store.copy(key, archive_key)

    is_current = latest_known_ts is None or commit_ts >= latest_known_ts
    if is_current:
        await store.copy(key, owners.project_report_key(settings.s3_report_prefix, owner_id, project_id))
        # must be later than any claim that could have missed this report
        await repository.register_submission(owner_id)
    else:
        logger.info(
            "archived out-of-order report owner_id=%s project_id=%s commit_ts=%s latest_known_ts=%s",
            owner_id,
            project_id,
            commit_ts,
            latest_known_ts,
        )

    await store.delete(key)
    logger.info(
        "routed inbox report key=%s owner_id=%s project_id=%s new_commits=%s",
        key,
        owner_id,
        project_id,
        added,
    )
    return RoutedReport(owner_id=owner_id, project_id=project_id, archive_key=archive_key, is_current=is_current)


async def reject_inbox_report(key: str, store: S3ReportStore, settings: Settings) -> str:
    file_name = key.rsplit("/", maxsplit=1)[-1]
    rejected_key = f"{settings.s3_rejected_prefix.strip('/')}/{file_name}"
    await store.copy(key, rejected_key)
    await store.delete(key)
    return rejected_key


async def route_inbox_batch(
    store: S3ReportStore,
    repository: PostgresRepository,
    settings: Settings,
) -> list[RoutedReport]:
    """Routes up to `inbox_batch_size` submissions; storage and database errors propagate."""
    prefix = f"{settings.s3_inbox_prefix.strip('/')}/"
    listed = await store.list_objects(prefix)
    keys = sorted(obj.key for obj in listed if not obj.key.endswith("/"))[: max(1, settings.inbox_batch_size)]

    routed: list[RoutedReport] = []
    for key in keys:
        try:
            routed.append(await route_inbox_report(key, store, repository, settings))
        except InboxReportRejected as exc:
            rejected_key = await reject_inbox_report(key, store, settings)
            logger.warning("rejected inbox report key=%s moved_to=%s: %s", key, rejected_key, exc)
    return routed
