"""Prompt construction for the image generation step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx
from pydantic import BaseModel, ValidationError

from photogen.imggen.artifacts import MaterializedImage
from photogen.services.stages import GenerationMode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PromptContext:
    """Structured information used to build the visual prompt."""

    parameters: dict[str, Any]
    scene_info: dict[str, Any] = field(default_factory=dict)
    task_type: str = "photography"
    mode: GenerationMode = GenerationMode.NORMAL
    pose_description: str | None = None
    images: Sequence[MaterializedImage] = ()

    def service_payload(self) -> dict[str, Any]:
        converted = sum(1 for image in self.images if image.converted)
        return {
            "action": "generatePrompt",
            "type": self.task_type,
            "parameters": {
                **self.parameters,
                "image_count": converted,
                "has_images": converted > 0,
            },
            "sceneInfo": self.scene_info,
            "mode": self.mode.value,
            "pose_description": self.pose_description,
        }


class _PromptData(BaseModel):
    prompt: str
    template_id: str | None = None


class PromptServiceResponse(BaseModel):
    """Response envelope of the prompt-generation service."""

    success: bool
    data: _PromptData | None = None
    message: str | None = None


class PromptServiceError(RuntimeError):
    """Raised when the prompt service fails or answers with an unusable body."""


class PromptServiceClient:
    """Thin async client for the external prompt templating service."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def generate(self, payload: dict[str, Any]) -> str:
        try:
            response = await self._client.post("/prompts/generate", json=payload)
            response.raise_for_status()
            parsed = PromptServiceResponse.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            raise PromptServiceError(f"Prompt service request failed: {exc}") from exc

        if not parsed.success or parsed.data is None or not parsed.data.prompt.strip():
            raise PromptServiceError(parsed.message or "Prompt service returned no prompt.")
        return parsed.data.prompt.strip()

    async def ping(self) -> bool:
        response = await self._client.get("/health")
        return response.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()


def build_default_prompt(parameters: dict[str, Any], scene_info: dict[str, Any]) -> str:
    """Deterministic fashion photography prompt built only from the inputs."""

    gender = parameters.get("gender") or "female"
    age = parameters.get("age") or 25
    nationality = parameters.get("nationality") or "asian"
    skin_tone = parameters.get("skin_tone") or "medium"
    clothing = parameters.get("clothing_description") or "the provided outfit"
    pose = parameters.get("pose_type") or "dynamic"
    lighting = parameters.get("lighting_style") or "professional studio lighting"

    prompt = (
        f"A professional fashion photography of a {gender} model, age {age}, "
        f"{nationality} ethnicity, {skin_tone} skin tone, wearing {clothing}"
    )
    scene_name = scene_info.get("name")
    if scene_name:
        prompt += f", in {scene_name} setting"
    scene_hint = scene_info.get("prompt_hint") or scene_info.get("description")
    if scene_hint:
        prompt += f" ({scene_hint})"
    prompt += (
        f", {pose} pose, {lighting}, high fashion, editorial style, "
        "8K resolution, sharp focus"
    )
    return prompt


def build_pose_variation_prompt(
    pose_description: str,
    parameters: dict[str, Any],
    scene_info: dict[str, Any],
) -> str:
    scene_name = scene_info.get("name") or "the original"
    return (
        "The first image shows a model wearing an outfit; the following images show the "
        "original garments. Keep the same model, face, outfit and "
        f"{scene_name} scene, and change only the pose: {pose_description}. "
        f"{parameters.get('lighting_style') or 'Keep the original lighting'}, "
        "high fashion, editorial style, sharp focus"
    )


def describe_images(images: Sequence[MaterializedImage]) -> str:
    if not images:
        return ""
    lines = [
        f"Image {index}: {'attached as inline reference' if image.converted else 'unavailable'}"
        for index, image in enumerate(images, start=1)
    ]
    return "\n\n### Reference images:\n" + "\n".join(lines)


class PromptComposer:
    """Builds the generation instruction; always returns a non-empty prompt."""

    def __init__(self, client: PromptServiceClient | None = None) -> None:
        self._client = client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def compose(self, context: PromptContext) -> str:
        prompt = await self._from_service(context) or self._fallback(context)
        return prompt + describe_images(context.images)

    async def _from_service(self, context: PromptContext) -> str | None:
        if self._client is None:
            return None
        try:
            return await self._client.generate(context.service_payload())
        except PromptServiceError as exc:
            logger.warning("Prompt service unavailable, using local template: %s", exc)
            return None
        except Exception:
            logger.exception("Prompt service call raised unexpectedly, using local template")
            return None

    @staticmethod
    def _fallback(context: PromptContext) -> str:
        if context.mode is GenerationMode.POSE_VARIATION and context.pose_description:
            return build_pose_variation_prompt(
                context.pose_description,
                context.parameters,
                context.scene_info,
            )
        return build_default_prompt(context.parameters, context.scene_info)
