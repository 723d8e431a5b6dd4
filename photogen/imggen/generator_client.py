"""Async invocation of OpenAI-compatible image generation backends."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import re
from io import BytesIO
from typing import Any, Callable, Sequence

import httpx
from openai import AsyncOpenAI, OpenAIError
from PIL import Image, UnidentifiedImageError

from photogen.errors import ModelInvocationError
from photogen.imggen.artifacts import GeneratedImage, GenerationOutput, MaterializedImage
from photogen.imggen.model_registry import ModelSpec
from photogen.services.stages import PipelineStage

logger = logging.getLogger(__name__)

MARKDOWN_DATA_IMAGE = re.compile(r"!\[[^\]]*\]\((data:image/([a-zA-Z0-9.+-]+);base64,([A-Za-z0-9+/=\s]+))\)")
MARKDOWN_HTTP_IMAGE = re.compile(r"!\[[^\]]*\]\((https?://[^)\s]+)\)")
_ENV_REFERENCE = re.compile(r"^\$\{?([A-Z0-9_]+)\}?$")
_STAGE = PipelineStage.GENERATING.value

ClientFactory = Callable[..., AsyncOpenAI]


def resolve_api_key(raw: str) -> str:
    """Expand ``${NAME}`` references stored in the registry into the env value."""

    match = _ENV_REFERENCE.match(raw.strip())
    if not match:
        return raw
    value = os.getenv(match.group(1), "")
    if not value:
        raise ModelInvocationError(f"Environment variable {match.group(1)} is not set", stage=_STAGE)
    return value


def _chat_base_url(api_url: str) -> str:
    base = api_url.rstrip("/")
    if base.endswith("/chat/completions"):
        base = base[: -len("/chat/completions")]
    return base


def _measure(content: bytes) -> tuple[int, int]:
    try:
        with Image.open(BytesIO(content)) as img:
            return img.size
    except UnidentifiedImageError:
        return 1024, 1024


def _decode_data_url(subtype: str, payload: str) -> GeneratedImage | None:
    try:
        content = base64.b64decode(re.sub(r"\s+", "", payload), validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Skipping malformed inline image in model response.")
        return None
    width, height = _measure(content)
    image_format = "jpg" if subtype.lower() == "jpeg" else subtype.lower()
    return GeneratedImage(content=content, format=image_format, width=width, height=height)


class ImageGeneratorClient:
    """Sends the prompt and reference images to the selected backend.

    The call is bounded by ``timeout`` so a slow backend surfaces as a
    ``ModelInvocationError`` well before the execution watchdog fires.
    The SDK retries are disabled: each task makes exactly one model call.
    """

    def __init__(
        self,
        *,
        timeout: float = 45.0,
        client_factory: ClientFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._client_factory = client_factory or AsyncOpenAI
        self._transport = transport

    async def generate(
        self,
        model: ModelSpec,
        prompt: str,
        images: Sequence[MaterializedImage] = (),
        *,
        count: int = 1,
    ) -> GenerationOutput:
        if model.api_format != "openai_compatible":
            raise ModelInvocationError(f"Unsupported api format {model.api_format!r}", stage=_STAGE)

        client = self._client_factory(
            api_key=resolve_api_key(model.api_key),
            base_url=_chat_base_url(model.api_url),
            max_retries=0,
        )
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend(
            {"type": "image_url", "image_url": {"url": image.data_url}}
            for image in images
            if image.converted
        )

        logger.info(
            "Calling model %s with %s reference image(s), n=%s",
            model.model_name,
            len(content) - 1,
            count,
        )
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=model.model_name,
                    messages=[{"role": "user", "content": content}],
                    n=count,
                    max_tokens=4096,
                    temperature=0.7,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ModelInvocationError(
                f"Model call timed out after {self._timeout:.0f}s",
                stage=_STAGE,
            ) from exc
        except OpenAIError as exc:
            raise ModelInvocationError(f"Model call failed: {exc}", stage=_STAGE) from exc
        finally:
            await client.close()

        generated, text_response = await self._extract_images(response)
        if not generated:
            raise ModelInvocationError("Model response contained no images", stage=_STAGE)

        usage = getattr(response, "usage", None)
        return GenerationOutput(
            images=generated,
            text_response=text_response,
            model_name=model.model_name,
            usage=usage.model_dump() if hasattr(usage, "model_dump") else {},
        )

    async def _extract_images(self, response: Any) -> tuple[list[GeneratedImage], str | None]:
        generated: list[GeneratedImage] = []
        texts: list[str] = []
        links: list[str] = []

        for choice in getattr(response, "choices", None) or []:
            message = getattr(choice, "message", None)
            if message is None:
                continue

            # Some gateways return images next to the text instead of inside it.
            for item in getattr(message, "images", None) or []:
                url = self._image_item_url(item)
                if not url:
                    continue
                match = re.match(r"^data:image/([a-zA-Z0-9.+-]+);base64,(.+)$", url, re.DOTALL)
                if match:
                    image = _decode_data_url(match.group(1), match.group(2))
                    if image is not None:
                        generated.append(image)
                elif url.startswith(("http://", "https://")):
                    links.append(url)

            text = getattr(message, "content", None)
            if not isinstance(text, str) or not text:
                continue
            for match in MARKDOWN_DATA_IMAGE.finditer(text):
                image = _decode_data_url(match.group(2), match.group(3))
                if image is not None:
                    generated.append(image)
            links.extend(MARKDOWN_HTTP_IMAGE.findall(text))
            stripped = MARKDOWN_HTTP_IMAGE.sub("", MARKDOWN_DATA_IMAGE.sub("", text)).strip()
            if stripped:
                texts.append(stripped)

        if links:
            generated.extend(await self._download_links(links))
        return generated, "\n\n".join(texts) or None

    @staticmethod
    def _image_item_url(item: Any) -> str | None:
        if isinstance(item, dict):
            image_url = item.get("image_url") or {}
            return image_url.get("url") if isinstance(image_url, dict) else item.get("url")
        image_url = getattr(item, "image_url", None)
        return getattr(image_url, "url", None) or getattr(item, "url", None)

    async def _download_links(self, links: Sequence[str]) -> list[GeneratedImage]:
        downloaded: list[GeneratedImage] = []
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for url in links:
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    logger.warning("Could not download generated image %s: %s", url, exc)
                    continue
                content_type = response.headers.get("content-type", "image/png").split(";")[0]
                subtype = content_type.split("/")[-1] if content_type.startswith("image/") else "png"
                width, height = _measure(response.content)
                downloaded.append(
                    GeneratedImage(
                        content=response.content,
                        format="jpg" if subtype == "jpeg" else subtype,
                        width=width,
                        height=height,
                        source="url",
                    ),
                )
        return downloaded
