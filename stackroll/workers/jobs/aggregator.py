"""Builds and publishes the combined profile of one owner.

A job only names the owner; everything else comes from the report objects
stored under `<report_prefix>/<owner_id>/`. Nothing here touches the job
store, so the same owner can be aggregated again at any time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from stackroll.core import owners
from stackroll.schemas.profiles import DevProfile
from stackroll.schemas.reports import RawReport
from stackroll.services.merge import LoadedReport, compress_profile, merge_reports, serialize_profile
from stackroll.services.report_store import (
    ReportDecodeError,
    ReportNotFoundError,
    ReportStoreError,
    S3ReportStore,
    decode_payload,
)
from stackroll.services.search_index import SearchIndexClient, SearchIndexError

logger = logging.getLogger(__name__)


class AggregationError(Exception):
    """Base error for a failed aggregation."""


class NoReportsFoundError(AggregationError):
    """Raised when the owner has no project reports at all."""


class NoReadableReportsError(AggregationError):
    """Raised when project reports exist but none of them can be parsed."""


class InvalidOwnerIdError(AggregationError):
    """Raised when the owner id cannot be turned into a storage prefix."""


class ReportLoadError(AggregationError):
    """Raised when storage fails while listing or reading reports."""


class ProfilePublishError(AggregationError):
    """Raised when the profile cannot be written to storage or the search index."""


@dataclass(slots=True)
class AggregationResult:
    profile: DevProfile
    payload: bytes
    skipped_keys: list[str] = field(default_factory=list)


class ReportAggregator:
    def __init__(
        self,
        store: S3ReportStore,
        index: SearchIndexClient,
        *,
        report_prefix: str,
        owner_id_pattern: str,
        read_concurrency: int = 8,
    ) -> None:
        self.store = store
        self.index = index
        self.report_prefix = report_prefix
        self.owner_id_pattern = owner_id_pattern
        self.read_concurrency = max(1, read_concurrency)

    async def aggregate(self, owner_id: str) -> AggregationResult:
        profile, skipped_keys = await self.build_profile(owner_id)
        payload = serialize_profile(profile)
        await self.publish(owner_id, payload)
        return AggregationResult(profile=profile, payload=payload, skipped_keys=skipped_keys)

    async def build_profile(self, owner_id: str) -> tuple[DevProfile, list[str]]:
        try:
            prefix = owners.owner_prefix(self.report_prefix, owner_id, self.owner_id_pattern)
        except owners.InvalidOwnerIdError as exc:
            raise InvalidOwnerIdError(str(exc)) from exc

        try:
            listed = await self.store.list_objects(prefix)
        except ReportStoreError as exc:
            raise ReportLoadError(f"cannot list reports for {owner_id}: {exc}") from exc

        keys = sorted(
            obj.key for obj in listed if owners.is_project_report_key(obj.key, self.report_prefix, owner_id)
        )
        if not keys:
            raise NoReportsFoundError(f"no project reports under {prefix}")

        read_limit = asyncio.Semaphore(self.read_concurrency)
        loaded = await asyncio.gather(*(self._load_report(key, read_limit) for key in keys))
        reports = [row for row in loaded if row is not None]
        skipped_keys = [key for key, row in zip(keys, loaded) if row is None]
        if not reports:
            raise NoReadableReportsError(f"none of {len(keys)} reports for {owner_id} could be read")

        logger.info(
            "merging reports owner_id=%s reports=%s skipped=%s",
            owner_id,
            len(reports),
            len(skipped_keys),
        )
        return merge_reports(owner_id, reports), skipped_keys

    async def publish(self, owner_id: str, payload: bytes) -> None:
        key = owners.profile_key(self.report_prefix, owner_id)
        try:
            await self.store.put_bytes(key, compress_profile(payload), content_type="application/gzip")
            await self.index.put_document(owner_id, payload)
        except (ReportStoreError, SearchIndexError) as exc:
            raise ProfilePublishError(f"cannot publish profile for {owner_id}: {exc}") from exc

    async def _load_report(self, key: str, read_limit: asyncio.Semaphore) -> LoadedReport | None:
        async with read_limit:
            try:
                raw = await self.store.get_bytes(key)
            except ReportNotFoundError:
                logger.warning("report disappeared before it could be read key=%s", key)
                return None
            except ReportStoreError as exc:
                raise ReportLoadError(f"cannot read {key}: {exc}") from exc

        try:
            report = RawReport.model_validate_json(decode_payload(raw))
        except (ReportDecodeError, ValidationError) as exc:
            logger.warning("skipping unreadable report key=%s: %s", key, exc)
            return None

        _, project_id = owners.split_report_key(key)
        return LoadedReport(key=key, project_id=project_id, report=report)
