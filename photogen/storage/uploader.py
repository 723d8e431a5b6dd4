"""Bounded-concurrency upload of generated artifacts."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import httpx

from photogen.errors import StorageError
from photogen.imggen.artifacts import GeneratedImage, UploadResult
from photogen.metrics.prometheus_exporter import upload_attempts_total, uploads_in_flight
from photogen.storage.backend import ObjectStorage

logger = logging.getLogger(__name__)

_RETRYABLE = (StorageError, httpx.HTTPError, OSError)


class ResultUploader:
    """Uploads artifacts with at most ``concurrency`` transfers in flight.

    Each artifact is retried up to ``retries`` times with a linearly growing
    delay. A failed artifact is reported in the results and never stops its
    siblings.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        concurrency: int = 5,
        retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._storage = storage
        self._concurrency = concurrency
        self._retries = max(1, retries)
        self._retry_delay = retry_delay

    async def upload_all(
        self,
        images: Sequence[GeneratedImage],
        *,
        task_id: str,
        task_type: str = "photography",
    ) -> list[UploadResult]:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _upload(index: int, image: GeneratedImage) -> UploadResult:
            async with semaphore:
                uploads_in_flight.inc()
                try:
                    return await self._upload_single(image, task_id, task_type, index)
                except _RETRYABLE as exc:
                    logger.error("Upload %s for task %s failed: %s", index, task_id, exc)
                    return UploadResult(index=index, success=False, error=str(exc))
                except Exception as exc:
                    logger.exception("Upload %s for task %s raised unexpectedly", index, task_id)
                    return UploadResult(index=index, success=False, error=str(exc))
                finally:
                    uploads_in_flight.dec()

        results = await asyncio.gather(
            *(_upload(index, image) for index, image in enumerate(images, start=1)),
        )
        succeeded = sum(1 for result in results if result.success)
        logger.info(
            "Uploaded %s/%s artifacts for task %s",
            succeeded,
            len(results),
            task_id,
        )
        return list(results)

    async def _upload_single(
        self,
        image: GeneratedImage,
        task_id: str,
        task_type: str,
        index: int,
    ) -> UploadResult:
        timestamp = int(time.time() * 1000)
        path = f"{task_type}/{task_id}/{task_type}_{task_id}_{index}_{timestamp}.{image.format}"
        file_id = await self._upload_with_retry(path, image.content)
        return UploadResult(
            index=index,
            success=True,
            file_id=file_id,
            path=path,
            width=image.width,
            height=image.height,
            size=len(image.content),
        )

    async def _upload_with_retry(self, path: str, content: bytes) -> str:
        last_error: Exception | None = None
        for attempt in range(1, self._retries + 1):
            try:
                file_id = await self._storage.upload(path, content)
            except _RETRYABLE as exc:
                last_error = exc
                upload_attempts_total.labels("error").inc()
                logger.warning(
                    "Upload attempt %s/%s for %s failed: %s",
                    attempt,
                    self._retries,
                    path,
                    exc,
                )
                if attempt < self._retries:
                    await asyncio.sleep(self._retry_delay * attempt)
                continue
            upload_attempts_total.labels("success").inc()
            return file_id

        raise StorageError(f"Upload failed after {self._retries} attempts: {last_error}")
