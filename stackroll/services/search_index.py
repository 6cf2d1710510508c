from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from stackroll.core.config import Settings

logger = logging.getLogger(__name__)


class SearchIndexError(Exception):
    """Raised when the search index rejects or cannot receive a document."""


class SearchIndexClient:
    def __init__(
        self,
        base_url: str,
        index: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        client_kwargs: dict[str, Any] = {
            "base_url": base_url.rstrip("/"),
            "timeout": timeout_seconds,
            "headers": {"Content-Type": "application/json"},
        }
        if username:
            client_kwargs["auth"] = httpx.BasicAuth(username, password or "")
        if transport is not None:
            client_kwargs["transport"] = transport
        self.index = index
        self._client = httpx.AsyncClient(**client_kwargs)

    @classmethod
    def from_settings(cls, settings: Settings) -> SearchIndexClient:
        return cls(
            settings.search_url,
            settings.search_index,
            username=settings.search_username,
            password=settings.search_password,
            timeout_seconds=settings.search_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def put_document(self, doc_id: str, payload: bytes) -> None:
        """Indexes `payload` under `doc_id`, replacing any previous version."""
        path = f"/{quote(self.index, safe='')}/_doc/{quote(doc_id, safe='')}"
        try:
            response = await self._client.put(path, content=payload)
        except httpx.HTTPError as exc:
            raise SearchIndexError(f"search index unreachable: {exc}") from exc

        if response.status_code >= 300:
            raise SearchIndexError(
                f"search index returned {response.status_code} for {doc_id}: {response.text[:500]}"
            )
        logger.debug("indexed document id=%s index=%s status=%s", doc_id, self.index, response.status_code)
