"""
Archival of turn audio to Bunny.net storage.

Uploads and deletions never block a conversation: the gateway hands them to a
`BackgroundRunner`, which runs them as tasks and logs failures instead of
raising them.

Storage layout:
    /{zone}/{user_id}/{session_id}/{order}-{speaker}.{ext}
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Protocol, Set

import httpx
import structlog

from src.journal.config import get_config

logger = structlog.get_logger(__name__)

_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
}


def extension_for(content_type: Optional[str]) -> str:
    base = (content_type or "").split(";")[0].strip().lower()
    return _EXTENSIONS.get(base, "bin")


class ArchivalError(Exception):
    """Storage rejected a request. Only ever logged by callers."""


class ArchivalStore(Protocol):
    enabled: bool

    def is_archived(self, url: Optional[str]) -> bool:
        ...

    async def upload(
        self,
        *,
        user_id: str,
        session_id: str,
        order: int,
        speaker: str,
        data: bytes,
        content_type: str,
    ) -> str:
        ...

    async def delete_all(self, *, user_id: str, session_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


class NullArchivalStore:
    """Used when archival is disabled; nothing is stored."""

    enabled = False

    def is_archived(self, url: Optional[str]) -> bool:
        return False

    async def upload(self, **kwargs: Any) -> str:
        raise ArchivalError("Archival is disabled")

    async def delete_all(self, *, user_id: str, session_id: str) -> None:
        return None

    async def close(self) -> None:
        return None


class BunnyArchivalStore:
    """Bunny.net Edge Storage over its HTTP API."""

    enabled = True

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._zone = self.config.bunny_storage_zone
        self._base_url = f"https://{self.config.bunny_storage_host}"
        self._cdn_url = self.config.bunny_cdn_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=self.config.archival_timeout_seconds)
        self._owns_client = client is None

    def _headers(self, content_type: Optional[str] = None) -> dict:
        headers = {"AccessKey": self.config.bunny_api_key}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def is_archived(self, url: Optional[str]) -> bool:
        """True for URLs that already point at this storage zone's CDN."""
        return bool(url) and bool(self._cdn_url) and url.startswith(self._cdn_url + "/")

    @staticmethod
    def object_path(user_id: str, session_id: str, order: int, speaker: str, content_type: str) -> str:
        return f"{user_id}/{session_id}/{order}-{speaker}.{extension_for(content_type)}"

    async def upload(
        self,
        *,
        user_id: str,
        session_id: str,
        order: int,
        speaker: str,
        data: bytes,
        content_type: str,
    ) -> str:
        """Store one turn's audio and return its public CDN URL."""
        path = self.object_path(user_id, session_id, order, speaker, content_type)
        response = await self._client.put(
            f"{self._base_url}/{self._zone}/{path}",
            content=data,
            headers=self._headers("application/octet-stream"),
        )
        if response.status_code not in (200, 201):
            raise ArchivalError(f"Upload failed with status {response.status_code}: {response.text[:200]}")

        logger.debug("Audio archived", session_id=session_id, path=path, size=len(data))
        return f"{self._cdn_url}/{path}"

    async def delete_all(self, *, user_id: str, session_id: str) -> None:
        """Delete the session's folder. A missing folder is not an error."""
        response = await self._client.delete(
            f"{self._base_url}/{self._zone}/{user_id}/{session_id}/",
            headers=self._headers(),
        )
        if response.status_code == 404:
            return
        if response.status_code not in (200, 204):
            raise ArchivalError(f"Delete failed with status {response.status_code}: {response.text[:200]}")
        logger.info("Archived audio deleted", session_id=session_id)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_archival_store(config: Any) -> ArchivalStore:
    if config.archival_enabled:
        return BunnyArchivalStore(config)
    return NullArchivalStore()


class BackgroundRunner:
    """
    Fire-and-forget tasks.

    `submit` returns immediately. Failures are logged with the task name and
    never reach the caller. `drain` waits for everything outstanding (shutdown
    and tests).
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable[Any], *, name: str, **context: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                logger.debug("Background task cancelled", task=name, **context)
                return
            error = t.exception()
            if error is not None:
                self.failed += 1
                logger.error("Background task failed", task=name, error=str(error), **context)
            else:
                self.completed += 1

        task.add_done_callback(_done)
        logger.debug("Background task submitted", task=name, pending=len(self._tasks))
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        logger.info("Background runner stopped")
