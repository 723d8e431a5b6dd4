"""Object storage adapters used for input assets and generated artifacts."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote

import httpx

from photogen.config.settings import Settings
from photogen.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    """Boundary to the object store holding uploaded and generated images."""

    @abstractmethod
    async def download(self, ref: str) -> bytes:
        """Return the stored bytes for ``ref``."""

    @abstractmethod
    async def temporary_url(self, ref: str) -> str:
        """Return a short-lived URL from which ``ref`` can be fetched."""

    @abstractmethod
    async def upload(self, path: str, content: bytes) -> str:
        """Store ``content`` at ``path`` and return the file reference."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class LocalStorage(ObjectStorage):
    """Filesystem storage rooted at ``MEDIA_ROOT``; references are relative keys."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, ref: str) -> Path:
        path = (self._root / ref).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Reference escapes storage root: {ref}")
        return path

    async def download(self, ref: str) -> bytes:
        path = self._resolve(ref)
        if not path.exists():
            raise StorageError(f"File not found: {ref}")
        return await asyncio.to_thread(path.read_bytes)

    async def temporary_url(self, ref: str) -> str:
        raise StorageError("Local storage does not issue temporary URLs.")

    async def upload(self, path: str, content: bytes) -> str:
        target = self._resolve(path)
        await asyncio.to_thread(self._write_file, target, content)
        return path

    @staticmethod
    def _write_file(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


class HttpStorage(ObjectStorage):
    """Client for the HTTP storage gateway."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def download(self, ref: str) -> bytes:
        response = await self._request("GET", f"/files/{quote(ref, safe='')}")
        return response.content

    async def temporary_url(self, ref: str) -> str:
        response = await self._request("POST", "/files/temporary-urls", json={"file_list": [ref]})
        entries = self._json(response).get("file_list") or []
        if not entries or entries[0].get("status", 0) != 0 or not entries[0].get("temp_file_url"):
            raise StorageError(f"No temporary URL issued for {ref}")
        return entries[0]["temp_file_url"]

    async def upload(self, path: str, content: bytes) -> str:
        response = await self._request(
            "PUT",
            f"/files/{quote(path, safe='')}",
            content=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        file_id = self._json(response).get("file_id")
        if not file_id:
            raise StorageError("Storage returned an empty file id.")
        return file_id

    async def ping(self) -> bool:
        response = await self._client.get("/health")
        return response.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"Storage returned {exc.response.status_code} for {method} {url}",
            ) from exc
        except httpx.HTTPError as exc:
            raise StorageError(f"Storage request {method} {url} failed: {exc}") from exc
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise StorageError(f"Storage returned a non-JSON body for {response.request.url}") from exc
        if not isinstance(payload, dict):
            raise StorageError(f"Storage returned an unexpected payload for {response.request.url}")
        return payload


def build_storage(settings: Settings) -> ObjectStorage:
    if settings.storage_backend == "http":
        if not settings.storage_base_url:
            raise RuntimeError("STORAGE_BASE_URL is not configured.")
        return HttpStorage(settings.storage_base_url, api_key=settings.storage_api_key)
    return LocalStorage(Path(settings.media_root))
