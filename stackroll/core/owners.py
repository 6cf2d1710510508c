"""Owner identity checks and the storage key layout shared by the router and the aggregator.

Layout inside the reports bucket::

    <inbox_prefix>/<submitted_epoch>_<owner_id>.gz               raw submissions
    <report_prefix>/<owner_id>/<project_id>/report.gz            current report per project
    <report_prefix>/<owner_id>/<project_id>/<ts>_<sha1>.gz       archived copies
    <report_prefix>/<owner_id>/profile.gz                        aggregated profile
"""

from __future__ import annotations

import re
from functools import lru_cache
from uuid import uuid4

REPORT_FILE_NAME = "report.gz"
PROFILE_FILE_NAME = "profile.gz"
REPORT_FILE_EXT = ".gz"


class InvalidOwnerIdError(ValueError):
    """Raised when an owner id cannot be used to build a storage key."""


@lru_cache(maxsize=8)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def is_valid_owner_id(owner_id: str, pattern: str) -> bool:
    if not owner_id or "/" in owner_id:
        return False
    return _compiled(pattern).fullmatch(owner_id) is not None


def owner_prefix(report_prefix: str, owner_id: str, pattern: str) -> str:
    # the trailing slash keeps `reports/abc/` from matching `reports/abcd/`
    if not is_valid_owner_id(owner_id, pattern):
        raise InvalidOwnerIdError(f"invalid owner id: {owner_id!r}")
    return f"{report_prefix.strip('/')}/{owner_id}/"


def project_report_key(report_prefix: str, owner_id: str, project_id: str) -> str:
    return f"{report_prefix.strip('/')}/{owner_id}/{project_id}/{REPORT_FILE_NAME}"


def archive_report_key(report_prefix: str, owner_id: str, project_id: str, commit_ts: int, commit_sha1: str) -> str:
    return f"{report_prefix.strip('/')}/{owner_id}/{project_id}/{commit_ts}_{commit_sha1}{REPORT_FILE_EXT}"


def profile_key(report_prefix: str, owner_id: str) -> str:
    return f"{report_prefix.strip('/')}/{owner_id}/{PROFILE_FILE_NAME}"


def is_project_report_key(key: str, report_prefix: str, owner_id: str) -> bool:
    """True only for `<prefix>/<owner_id>/<project_id>/report.gz`."""
    suffix = f"/{REPORT_FILE_NAME}"
    if not key.endswith(suffix):
        return False
    head = f"{report_prefix.strip('/')}/{owner_id}/"
    if not key.startswith(head):
        return False
    project_id = key[len(head) : -len(suffix)]
    return bool(project_id) and "/" not in project_id


def split_report_key(key: str) -> tuple[str, str]:
    """Returns `(owner_id, project_id)` from a full object key under the report prefix."""
    parts = key.split("/")
    if len(parts) < 4:
        raise ValueError(f"not a project report key: {key}")
    return parts[-3], parts[-2]


def parse_inbox_key(key: str) -> tuple[int, str]:
    """Splits `queue/1621680890_<owner_id>.gz` into the submission epoch and the owner id."""
    file_name = key.rsplit("/", maxsplit=1)[-1]
    stem = file_name.rsplit(".", maxsplit=1)[0]
    epoch, separator, owner_id = stem.partition("_")
    if not separator or not owner_id or not epoch.isdigit():
        raise ValueError(f"inbox key is not <epoch>_<owner_id>.<ext>: {key}")
    return int(epoch), owner_id


def new_project_id() -> str:
    return uuid4().hex
