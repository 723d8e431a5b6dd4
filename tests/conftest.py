"""Shared fixtures: a file-backed SQLite database per test and in-memory collaborators."""

from __future__ import annotations

import asyncio
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.pool import NullPool

from photogen.config.settings import Settings
from photogen.db import models
from photogen.db.session import build_engine, build_session_factory, init_db
from photogen.errors import StorageError
from photogen.imggen.artifacts import GeneratedImage, GenerationOutput
from photogen.storage.backend import ObjectStorage

GARMENT_REF = "uploads/user-1/dress.png"


def make_png(color: tuple[int, int, int] = (200, 30, 30), size: tuple[int, int] = (8, 8)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class MemoryStorage(ObjectStorage):
    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files = dict(files or {})
        self.temp_urls: dict[str, str] = {}
        self.uploaded: dict[str, bytes] = {}

    async def download(self, ref: str) -> bytes:
        if ref not in self.files:
            raise StorageError(f"File not found: {ref}")
        return self.files[ref]

    async def temporary_url(self, ref: str) -> str:
        if ref not in self.temp_urls:
            raise StorageError(f"No temporary URL for {ref}")
        return self.temp_urls[ref]

    async def upload(self, path: str, content: bytes) -> str:
        self.uploaded[path] = content
        return f"mem://{path}"


class StubGenerator:
    """Stands in for the model backend; returns ``images`` PNGs per call."""

    def __init__(self, images: int = 1, *, error: Exception | None = None, delay: float = 0.0) -> None:
        self.images = images
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def generate(self, model, prompt, images=(), *, count=1) -> GenerationOutput:
        self.calls.append({"model": model, "prompt": prompt, "images": list(images), "count": count})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationOutput(
            images=[GeneratedImage(content=make_png((10, 20, 30 + index))) for index in range(self.images)],
            text_response="A model in a red dress.",
            model_name=model.model_name,
        )


class RecordingDispatcher:
    def __init__(self, error: BaseException | None = None, delay: float = 0.0) -> None:
        self.error = error
        self.delay = delay
        self.dispatched: list[str] = []

    async def dispatch(self, task_id: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.dispatched.append(task_id)
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        return None


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'photogen.db'}",
        media_root=str(tmp_path / "media"),
        internal_token="internal-secret",
        dispatch_grace=0.2,
        upload_retry_delay=0.0,
    )


@pytest.fixture
def engine(settings: Settings):
    return build_engine(settings.database_url, poolclass=NullPool)


@pytest_asyncio.fixture
async def session_factory(engine):
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def memory_storage(png_bytes: bytes) -> MemoryStorage:
    return MemoryStorage({GARMENT_REF: png_bytes})


@pytest.fixture
def stub_generator_cls() -> type[StubGenerator]:
    return StubGenerator


@pytest.fixture
def dispatcher_cls() -> type[RecordingDispatcher]:
    return RecordingDispatcher


@pytest.fixture
def garment_ref() -> str:
    return GARMENT_REF


async def _add_user(session_factory, user_id: str = "user-1", credits: int = 10) -> str:
    async with session_factory() as session:
        session.add(models.User(id=user_id, credits=credits))
        await session.commit()
    return user_id


async def _add_model(session_factory, **overrides: Any) -> models.AIModel:
    values: dict[str, Any] = {
        "name": "gateway-image",
        "model_name": "image-preview",
        "api_url": "https://models.test/v1/chat/completions",
        "api_key": "key",
        "priority": 10,
        "weight": 1,
    }
    values.update(overrides)
    row = models.AIModel(**values)
    async with session_factory() as session:
        session.add(row)
        await session.commit()
    return row


@pytest.fixture
def add_user():
    return _add_user


@pytest.fixture
def add_model():
    return _add_model
