"""Resolution of input asset references into inline base64 content."""

from __future__ import annotations

import base64
import logging
import re
from io import BytesIO
from typing import Sequence

import httpx
from PIL import Image, UnidentifiedImageError

from photogen.errors import StorageError
from photogen.imggen.artifacts import MaterializedImage
from photogen.storage.backend import ObjectStorage

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:(image/[^;]+);base64,(.+)$", re.DOTALL)

_RESOLUTION_ERRORS = (StorageError, httpx.HTTPError, OSError, ValueError)


class ImageMaterializer:
    """Turns storage references into inline images usable by a model call.

    The primary strategy downloads the object directly; if that fails, a
    temporary URL is requested and the file is streamed over HTTP. Failures
    are reported per reference and never raised.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        download_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._download_timeout = download_timeout
        self._transport = transport

    async def materialize(self, refs: Sequence[str]) -> list[MaterializedImage]:
        results = [await self._materialize_one(ref) for ref in refs]
        converted = sum(1 for item in results if item.converted)
        logger.info(
            "Materialized images: total=%s converted=%s failed=%s",
            len(results),
            converted,
            len(results) - converted,
        )
        return results

    async def _materialize_one(self, ref: str) -> MaterializedImage:
        try:
            return await self._resolve_direct(ref)
        except _RESOLUTION_ERRORS as exc:
            logger.warning("Direct download of %s failed, trying temporary URL: %s", ref, exc)

        try:
            return await self._resolve_via_url(ref)
        except _RESOLUTION_ERRORS as exc:
            logger.error("Could not materialize %s: %s", ref, exc)
            return MaterializedImage(ref=ref, status="failed", error=str(exc))

    async def _resolve_direct(self, ref: str) -> MaterializedImage:
        content = await self._storage.download(ref)
        return self._encode(ref, content)

    async def _resolve_via_url(self, ref: str) -> MaterializedImage:
        url = await self._storage.temporary_url(ref)
        buffer = bytearray()
        async with httpx.AsyncClient(timeout=self._download_timeout, transport=self._transport) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                content_type = response.headers.get("content-type", "").split(";")[0].strip()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
        mime_type = content_type if content_type.startswith("image/") else None
        return self._encode(ref, bytes(buffer), mime_type=mime_type)

    def _encode(self, ref: str, content: bytes, *, mime_type: str | None = None) -> MaterializedImage:
        if not content:
            raise ValueError(f"{ref} is empty")

        # Some uploads are stored already encoded as data URLs.
        if content.startswith(b"data:image/"):
            match = DATA_URL_PATTERN.match(content.decode("utf-8", errors="ignore").strip())
            if not match:
                raise ValueError(f"{ref} holds a malformed data URL")
            return MaterializedImage(
                ref=ref,
                status="converted",
                encoded_content=match.group(2),
                mime_type=match.group(1),
            )

        return MaterializedImage(
            ref=ref,
            status="converted",
            encoded_content=base64.b64encode(content).decode("ascii"),
            mime_type=mime_type or self._sniff_mime_type(ref, content),
        )

    @staticmethod
    def _sniff_mime_type(ref: str, content: bytes) -> str:
        try:
            with Image.open(BytesIO(content)) as img:
                image_format = img.format
        except UnidentifiedImageError as exc:
            raise ValueError(f"{ref} is not a supported image") from exc
        return Image.MIME.get(image_format or "", "image/jpeg")
