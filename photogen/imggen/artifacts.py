"""Value objects passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(slots=True)
class MaterializedImage:
    """An input asset reference resolved (or not) into inline base64 content."""

    ref: str
    status: Literal["converted", "failed"]
    encoded_content: str | None = None
    mime_type: str | None = None
    error: str | None = None

    @property
    def converted(self) -> bool:
        return self.status == "converted"

    @property
    def data_url(self) -> str | None:
        if not self.converted:
            return None
        return f"data:{self.mime_type};base64,{self.encoded_content}"


@dataclass(slots=True)
class GeneratedImage:
    """Raw artifact returned by the model backend."""

    content: bytes
    format: str = "png"
    width: int = 1024
    height: int = 1024
    source: str = "inline"


@dataclass(slots=True)
class GenerationOutput:
    images: list[GeneratedImage]
    text_response: str | None = None
    model_name: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UploadResult:
    index: int
    success: bool
    file_id: str | None = None
    path: str | None = None
    width: int = 1024
    height: int = 1024
    size: int = 0
    error: str | None = None

    def as_work_image(self) -> dict[str, Any]:
        return {
            "url": self.file_id,
            "width": self.width,
            "height": self.height,
            "metadata": {"cloud_path": self.path, "file_size": self.size, "index": self.index},
        }
