from __future__ import annotations

import gzip
import json
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import httpx
import pytest
from botocore.exceptions import ClientError

from stackroll.core.config import Settings
from stackroll.services.report_store import S3ReportStore
from stackroll.services.repository import CommitOwnershipRecord, JobRecord, RepositoryNotFoundError
from stackroll.services.search_index import SearchIndexClient


class _Body:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _Paginator:
    def __init__(self, client: FakeS3Client, page_size: int) -> None:
        self._client = client
        self._page_size = page_size

    def paginate(self, *, Bucket: str, Prefix: str):
        keys = sorted(key for key in self._client.objects if key.startswith(Prefix))
        if not keys:
            yield {"KeyCount": 0}
            return
        for start in range(0, len(keys), self._page_size):
            yield {
                "Contents": [
                    {
                        "Key": key,
                        "Size": len(self._client.objects[key]),
                        "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
                    }
                    for key in keys[start : start + self._page_size]
                ]
            }


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client the store uses."""

    def __init__(self, page_size: int = 2) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.page_size = page_size
        self.fail_on: set[tuple[str, str]] = set()
        self.vanish_on_read: set[str] = set()

    def get_paginator(self, name: str) -> _Paginator:
        assert name == "list_objects_v2"
        if ("list", "*") in self.fail_on:
            raise _client_error("InternalError", "ListObjectsV2")
        return _Paginator(self, self.page_size)

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        if ("get", Key) in self.fail_on:
            raise _client_error("SlowDown", "GetObject")
        if Key in self.vanish_on_read:
            self.objects.pop(Key, None)
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": _Body(self.objects[Key])}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str) -> dict[str, Any]:
        if ("put", Key) in self.fail_on:
            raise _client_error("AccessDenied", "PutObject")
        self.objects[Key] = Body
        self.content_types[Key] = ContentType
        return {}

    def copy_object(self, *, Bucket: str, Key: str, CopySource: dict[str, str]) -> dict[str, Any]:
        source = CopySource["Key"]
        if source not in self.objects:
            raise _client_error("NoSuchKey", "CopyObject")
        self.objects[Key] = self.objects[source]
        return {}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self.objects.pop(Key, None)
        return {}


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeJobRepository:
    """In-memory job store with the same state transitions as the Postgres one."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobRecord] = {}
        self.commits: list[CommitOwnershipRecord] = []
        self.clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.closed = False
        self.ping_error: Exception | None = None
        self.claim_error: Exception | None = None
        self.complete_errors: dict[str, Exception] = {}
        self.pings = 0

    def tick(self, seconds: int = 1) -> datetime:
        self.clock += timedelta(seconds=seconds)
        return self.clock

    async def ping(self) -> None:
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error

    async def close(self) -> None:
        self.closed = True

    async def register_submission(self, owner_id: str, ts: datetime | None = None) -> JobRecord:
        ts = ts or self.tick()
        job = self.jobs.get(owner_id)
        if job is None:
            job = self.jobs[owner_id] = JobRecord(owner_id, ts, None, None, None, 0)
        else:
            if job.last_submission_ts is None or ts > job.last_submission_ts:
                job.last_submission_ts = ts
            job.fail_counter = 0
        return job

    async def claim_jobs(self, lease_id: UUID | str, max_count: int) -> list[JobRecord]:
        if self.claim_error is not None:
            raise self.claim_error
        claimed: list[JobRecord] = []
        now = self.tick()
        for job in self.jobs.values():
            if len(claimed) >= max(1, min(max_count, 100)):
                break
            if job.eligible:
                job.lease_id = str(lease_id)
                job.lease_ts = now
                job.fail_counter += 1
                claimed.append(JobRecord(**_fields(job)))
        return claimed

    async def complete_job(self, owner_id: str, lease_id: UUID | str) -> bool:
        if owner_id in self.complete_errors:
            raise self.complete_errors[owner_id]
        job = self.jobs.get(owner_id)
        if job is None or job.lease_id != str(lease_id):
            return False
        job.report_ts = max(filter(None, [job.report_ts, job.lease_ts]))
        job.lease_id = None
        job.lease_ts = None
        job.fail_counter = 0
        return True

    async def give_up_job(self, owner_id: str, lease_id: UUID | str) -> bool:
        job = self.jobs.get(owner_id)
        if job is None or job.lease_id != str(lease_id):
            return False
        job.last_submission_ts = None
        job.lease_id = None
        job.lease_ts = None
        return True

    async def release_stale_leases(self, stale_after_seconds: int, limit: int) -> list[str]:
        threshold = self.clock - timedelta(seconds=stale_after_seconds)
        released: list[str] = []
        for job in self.jobs.values():
            if len(released) >= limit:
                break
            if job.lease_id is not None and job.lease_ts is not None and job.lease_ts <= threshold:
                job.lease_id = None
                job.lease_ts = None
                released.append(job.owner_id)
        return released

    async def get_job(self, owner_id: str) -> JobRecord:
        if owner_id not in self.jobs:
            raise RepositoryNotFoundError("job not found")
        return self.jobs[owner_id]

    async def queue_stats(self, stale_after_seconds: int) -> dict[str, int]:
        threshold = self.clock - timedelta(seconds=stale_after_seconds)
        jobs = list(self.jobs.values())
        return {
            "total": len(jobs),
            "eligible": sum(1 for job in jobs if job.eligible),
            "in_flight": sum(1 for job in jobs if job.lease_id is not None),
            "stale_leases": sum(
                1 for job in jobs if job.lease_id is not None and job.lease_ts is not None and job.lease_ts <= threshold
            ),
            "given_up": sum(1 for job in jobs if job.last_submission_ts is None),
            "failing": sum(1 for job in jobs if job.fail_counter > 0),
        }

    async def add_commits(self, owner_id: str, project_id: str, commits: dict[str, int]) -> int:
        known = {(record.owner_id, record.commit_hash) for record in self.commits}
        added = 0
        for commit_hash in sorted(commits):
            if (owner_id, commit_hash) in known:
                continue
            self.commits.append(CommitOwnershipRecord(owner_id, project_id, commit_hash, commits[commit_hash]))
            added += 1
        return added

    async def find_commit_owners(self, commit_hashes: list[str]) -> list[CommitOwnershipRecord]:
        wanted = set(commit_hashes)
        return [record for record in self.commits if record.commit_hash in wanted]

    async def latest_project_commit_ts(self, owner_id: str, project_id: str) -> int | None:
        values = [
            record.commit_ts
            for record in self.commits
            if record.owner_id == owner_id and record.project_id == project_id
        ]
        return max(values) if values else None


def _fields(job: JobRecord) -> dict[str, Any]:
    return {
        "owner_id": job.owner_id,
        "last_submission_ts": job.last_submission_ts,
        "report_ts": job.report_ts,
        "lease_id": job.lease_id,
        "lease_ts": job.lease_ts,
        "fail_counter": job.fail_counter,
    }


def make_report(
    timestamp: str,
    *,
    name: str | None = "Alice",
    tech: list[dict[str, Any]] | None = None,
    commits: list[str] | None = None,
    sha1: str | None = None,
    commit_epoch: int | None = None,
) -> dict[str, Any]:
    return {
        "timestamp": timestamp,
        "public_name": name,
        "public_contact": None,
        "tech": tech if tech is not None else [{"language": "X", "code_lines": 100}],
        "projects_included": [{"commit_count": len(commits or []), "commits": commits}],
        "last_contributor_commit_sha1": sha1,
        "last_contributor_commit_date_epoch": commit_epoch,
    }


def gz_json(payload: dict[str, Any]) -> bytes:
    return gzip.compress(json.dumps(payload).encode("utf-8"))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=None,
        otel_enabled=False,
        poll_interval_seconds=0.01,
        max_backoff_seconds=0.02,
        give_up_after_attempts=3,
        max_active_jobs=4,
        lease_reaper_interval_seconds=3600.0,
    )


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def report_store(s3_client: FakeS3Client) -> S3ReportStore:
    return S3ReportStore("reports-bucket", client=s3_client)


@pytest.fixture
def job_repository() -> FakeJobRepository:
    return FakeJobRepository()


@pytest.fixture
def indexed_documents() -> dict[str, bytes]:
    return {}


@pytest.fixture
def search_index(indexed_documents: dict[str, bytes]) -> SearchIndexClient:
    async def handler(request: httpx.Request) -> httpx.Response:
        doc_id = request.url.path.rsplit("/", maxsplit=1)[-1]
        indexed_documents[doc_id] = request.content
        return httpx.Response(status_code=201, json={"result": "created"}, request=request)

    return SearchIndexClient(
        "http://search.test",
        "dev_profiles",
        transport=httpx.MockTransport(handler),
    )
