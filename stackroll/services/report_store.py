"""S3-backed storage for raw reports and aggregated profiles.

boto3 is synchronous; every call is pushed to a worker thread so the
asyncio loop keeps serving other jobs while S3 answers.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class ReportStoreError(Exception):
    """Raised when object storage cannot serve a request."""


class ReportNotFoundError(ReportStoreError):
    """Raised when the requested object does not exist."""


class ReportDecodeError(ValueError):
    """Raised when an object body is empty or not valid gzip."""


@dataclass(slots=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime | None


def decode_payload(data: bytes) -> bytes:
    """Returns the body unchanged, or gunzipped when it carries the gzip magic bytes."""
    if not data:
        raise ReportDecodeError("zero length object")
    if data[:2] != GZIP_MAGIC:
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise ReportDecodeError(f"cannot gunzip object: {exc}") from exc


class S3ReportStore:
    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.bucket = bucket
        if client is None:
            client_kwargs: dict[str, Any] = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4", tcp_keepalive=True, retries={"max_attempts": 3}),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client

    async def list_objects(self, prefix: str) -> list[StoredObject]:
        return await asyncio.to_thread(self._list_objects, prefix)

    async def get_bytes(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get_bytes, key)

    async def put_bytes(self, key: str, payload: bytes, *, content_type: str = "application/json") -> None:
        await asyncio.to_thread(self._put_bytes, key, payload, content_type)

    async def copy(self, source_key: str, dest_key: str) -> None:
        await asyncio.to_thread(self._copy, source_key, dest_key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    def _list_objects(self, prefix: str) -> list[StoredObject]:
        objects: list[StoredObject] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    key = obj.get("Key")
                    if not key:
                        logger.warning("skipping listed object without a key under prefix=%s", prefix)
                        continue
                    objects.append(
                        StoredObject(
                            key=key,
                            size=int(obj.get("Size") or 0),
                            last_modified=obj.get("LastModified"),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise ReportStoreError(f"cannot list s3://{self.bucket}/{prefix}: {exc}") from exc
        logger.debug("listed %s objects under prefix=%s", len(objects), prefix)
        return objects

    def _get_bytes(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise ReportNotFoundError(f"object not found: {key}") from exc
            raise ReportStoreError(f"cannot read s3://{self.bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ReportStoreError(f"cannot read s3://{self.bucket}/{key}: {exc}") from exc

    def _put_bytes(self, key: str, payload: bytes, content_type: str) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=payload, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise ReportStoreError(f"cannot write s3://{self.bucket}/{key}: {exc}") from exc
        logger.info("uploaded s3 object key=%s size=%s", key, len(payload))

    def _copy(self, source_key: str, dest_key: str) -> None:
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": source_key},
            )
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise ReportNotFoundError(f"object not found: {source_key}") from exc
            raise ReportStoreError(f"cannot copy {source_key} to {dest_key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ReportStoreError(f"cannot copy {source_key} to {dest_key}: {exc}") from exc

    def _delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise ReportStoreError(f"cannot delete s3://{self.bucket}/{key}: {exc}") from exc


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))

