"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _load_env_file(path: str = ".env") -> None:
    """Populate os.environ from the provided .env file if it exists."""

    env_path = Path(path)
    if not env_path.exists():
        return

    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


@dataclass(frozen=True, slots=True)
class Settings:
    """Centralised project settings based on OS environment variables."""

    environment: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./data/photogen.db"
    redis_url: str = "redis://localhost:6379/0"
    media_root: str = "data/media"
    internal_token: str = ""

    storage_backend: str = "local"
    storage_base_url: str = ""
    storage_api_key: str = ""

    prompt_service_url: str = ""
    prompt_service_timeout: float = 10.0

    dispatch_backend: str = "celery"
    worker_invoke_url: str = ""
    dispatch_timeout: float = 3.0
    dispatch_grace: float = 0.5

    # The host kills the worker at host_time_limit; the watchdog writes first.
    host_time_limit: float = 60.0
    watchdog_margin: float = 5.0
    model_call_timeout: float = 45.0

    upload_concurrency: int = 5
    upload_retries: int = 3
    upload_retry_delay: float = 1.0
    materialize_download_timeout: float = 30.0

    max_images_per_request: int = 3
    credits_per_image: int = 1
    stale_task_after: float = 600.0

    @property
    def watchdog_timeout(self) -> float:
        """Seconds after worker start at which the watchdog fails the task."""

        return self.host_time_limit - self.watchdog_margin

    def validate(self) -> "Settings":
        """Reject timing configurations that would let the host kill the worker first."""

        if self.watchdog_margin <= 0 or self.watchdog_timeout <= 0:
            raise ValueError(
                "WATCHDOG_MARGIN must be positive and smaller than HOST_TIME_LIMIT.",
            )
        if self.model_call_timeout >= self.watchdog_timeout:
            raise ValueError(
                "MODEL_CALL_TIMEOUT must be shorter than the watchdog timeout "
                f"({self.watchdog_timeout:.1f}s).",
            )
        if self.upload_concurrency < 1:
            raise ValueError("UPLOAD_CONCURRENCY must be at least 1.")
        return self


def _build_settings() -> Settings:
    _load_env_file()

    return Settings(
        environment=os.getenv("ENVIRONMENT", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/photogen.db"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        media_root=os.getenv("MEDIA_ROOT", "data/media"),
        internal_token=os.getenv("INTERNAL_TOKEN", ""),
        storage_backend=os.getenv("STORAGE_BACKEND", "local"),
        storage_base_url=os.getenv("STORAGE_BASE_URL", ""),
        storage_api_key=os.getenv("STORAGE_API_KEY", ""),
        prompt_service_url=os.getenv("PROMPT_SERVICE_URL", ""),
        prompt_service_timeout=float(os.getenv("PROMPT_SERVICE_TIMEOUT", "10")),
        dispatch_backend=os.getenv("DISPATCH_BACKEND", "celery"),
        worker_invoke_url=os.getenv("WORKER_INVOKE_URL", ""),
        dispatch_timeout=float(os.getenv("DISPATCH_TIMEOUT", "3")),
        dispatch_grace=float(os.getenv("DISPATCH_GRACE", "0.5")),
        host_time_limit=float(os.getenv("HOST_TIME_LIMIT", "60")),
        watchdog_margin=float(os.getenv("WATCHDOG_MARGIN", "5")),
        model_call_timeout=float(os.getenv("MODEL_CALL_TIMEOUT", "45")),
        upload_concurrency=int(os.getenv("UPLOAD_CONCURRENCY", "5")),
        upload_retries=int(os.getenv("UPLOAD_RETRIES", "3")),
        upload_retry_delay=float(os.getenv("UPLOAD_RETRY_DELAY", "1.0")),
        materialize_download_timeout=float(os.getenv("MATERIALIZE_DOWNLOAD_TIMEOUT", "30")),
        max_images_per_request=int(os.getenv("MAX_IMAGES_PER_REQUEST", "3")),
        credits_per_image=int(os.getenv("CREDITS_PER_IMAGE", "1")),
        stale_task_after=float(os.getenv("STALE_TASK_AFTER", "600")),
    ).validate()


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance to avoid re-reading configuration."""

    return _build_settings()
