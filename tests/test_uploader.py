"""Tests for bounded-concurrency artifact uploads."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from photogen.errors import StorageError
from photogen.imggen.artifacts import GeneratedImage
from photogen.storage.backend import HttpStorage, ObjectStorage
from photogen.storage.uploader import ResultUploader


class InstrumentedStorage(ObjectStorage):
    def __init__(self, *, failures: dict[int, int] | None = None, delay: float = 0.01) -> None:
        self.active = 0
        self.max_active = 0
        self.attempts: dict[str, int] = {}
        self.failures = failures or {}
        self.delay = delay

    async def download(self, ref: str) -> bytes:
        raise StorageError("not used")

    async def temporary_url(self, ref: str) -> str:
        raise StorageError("not used")

    async def upload(self, path: str, content: bytes) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.attempts[path] = self.attempts.get(path, 0) + 1
            index = int(path.rsplit("_", 2)[-2])
            if self.attempts[path] <= self.failures.get(index, 0):
                raise StorageError(f"upload {index} rejected")
            return f"file://{path}"
        finally:
            self.active -= 1


def _images(count: int) -> list[GeneratedImage]:
    return [GeneratedImage(content=f"image-{index}".encode()) for index in range(count)]


@pytest.mark.asyncio
async def test_never_more_than_five_uploads_in_flight() -> None:
    storage = InstrumentedStorage()
    uploader = ResultUploader(storage, concurrency=5, retry_delay=0)

    results = await uploader.upload_all(_images(12), task_id="task-1")

    assert storage.max_active == 5
    assert len(results) == 12
    assert all(result.success for result in results)
    assert [result.index for result in results] == list(range(1, 13))


@pytest.mark.asyncio
async def test_failed_upload_is_retried_with_backoff(mocker) -> None:
    storage = InstrumentedStorage(failures={1: 2}, delay=0)
    sleep = mocker.patch("photogen.storage.uploader.asyncio.sleep", new=mocker.AsyncMock())
    uploader = ResultUploader(storage, retries=3, retry_delay=1.0)

    [result] = await uploader.upload_all(_images(1), task_id="task-1")

    assert result.success
    assert result.path.startswith("photography/task-1/photography_task-1_1_")
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_one_failing_item_does_not_block_siblings() -> None:
    storage = InstrumentedStorage(failures={2: 10})
    uploader = ResultUploader(storage, retries=3, retry_delay=0)

    results = await uploader.upload_all(_images(3), task_id="task-1", task_type="fitting")

    assert [result.success for result in results] == [True, False, True]
    assert "after 3 attempts" in results[1].error
    assert results[0].as_work_image()["metadata"]["cloud_path"].startswith("fitting/task-1/")


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ResultUploader(InstrumentedStorage(), concurrency=0)


@pytest.mark.asyncio
async def test_malformed_gateway_body_fails_only_that_item() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "_task-1_2_" in request.url.path:
            return httpx.Response(200, text="<html>ok</html>")
        return httpx.Response(200, json={"file_id": f"cloud://{request.url.path}"})

    storage = HttpStorage("https://storage.test", transport=httpx.MockTransport(handler))
    uploader = ResultUploader(storage, retries=2, retry_delay=0)

    results = await uploader.upload_all(_images(3), task_id="task-1")
    await storage.close()

    assert [result.success for result in results] == [True, False, True]
    assert "non-JSON" in results[1].error


@pytest.mark.asyncio
async def test_unexpected_storage_exception_is_recorded(mocker) -> None:
    storage = InstrumentedStorage(delay=0)
    original = storage.upload

    async def _upload(path: str, content: bytes) -> str:
        if "_task-1_1_" in path:
            raise KeyError("file_id")
        return await original(path, content)

    mocker.patch.object(storage, "upload", side_effect=_upload)

    results = await ResultUploader(storage, retry_delay=0).upload_all(_images(2), task_id="task-1")

    assert [result.success for result in results] == [False, True]
