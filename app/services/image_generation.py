"""2-D image generation behind ``/api/generate-image``.

Three engines are offered: ``openai`` and ``flux`` both call the OpenAI images
API (with different quality and prompt styling), ``merse`` runs a hosted
Replicate model.  An optional reference image guides any of them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi.concurrency import run_in_threadpool
from openai import OpenAIError

from app.config import MERSE_MODEL, OpenAIConfig, ReplicateConfig, ReplicateModelConfig
from app.services.object_providers.base import HTTP_TIMEOUT
from app.services.object_providers.errors import (
    InvalidInput,
    ProviderConfigMissing,
    ProviderHttpFailure,
    ProviderJobFailure,
    ReferenceDecodeFailure,
)
from app.services.openai_image import GeneratedImage, publish_image, request_image_edits, request_images
from app.services.payload_scanner import is_http_url, is_image_data_uri
from app.services.references import Storage, decode_data_image, extension_for_mime, resolve_reference
from app.services.replicate_predictions import ModelVersionCache, ReplicatePredictions

logger = logging.getLogger(__name__)

PROVIDER_KEY = "openai"
IMAGE_PROVIDERS = ("openai", "flux", "merse")
MAX_IMAGES = 4

ASPECT_SIZES = {
    "16:9": "1536x1024",
    "3:2": "1536x1024",
    "5:4": "1536x1024",
    "9:16": "1024x1536",
    "2:3": "1024x1536",
    "4:5": "1024x1536",
    "1:1": "1024x1024",
}

PROMPT_SUFFIX = " | Premium style, crisp micro-detail and volumetric light."
FLUX_PROMPT_SUFFIX = " | Experimental Flux style, organic textures blended with soft theatrical light."
MERSE_PROMPT_SUFFIX = " | Merse AI 1.0 identity, cosmic glow and orbiting particles."

_OPENAI_QUALITY = {"openai": "high", "flux": "medium"}

MERSE_POLL_INTERVAL = 2.0
MERSE_MAX_POLLS = 30


@dataclass
class ImageGenerationResult:
    image_url: str
    images: list[str]
    seeds: list[Any]
    provider: str = PROVIDER_KEY


def normalize_image_provider(value: Any) -> str:
    """Unknown or missing engine names fall back to ``openai``."""

    key = value.strip().lower() if isinstance(value, str) else ""
    return key if key in IMAGE_PROVIDERS else PROVIDER_KEY


def compose_image_prompt(prompt: str, stylization: float | None, suffix: str = PROMPT_SUFFIX) -> str:
    text = f"{prompt.strip()}{suffix}"
    if stylization is not None:
        level = round(max(0.0, min(float(stylization), 100.0)))
        text += f" | Creative intensity: {level}%."
    return text


def merse_guidance(stylization: float | None) -> float:
    if stylization is None:
        return 1.5
    return max(1.0, min(15.0, float(stylization) / 10 + 1))


def replicate_image_urls(output: Any) -> list[str]:
    """http(s) strings in a prediction output, following image/url/output fields."""

    if isinstance(output, str):
        return [output] if is_http_url(output) else []
    if isinstance(output, list):
        return [url for entry in output for url in replicate_image_urls(entry)]
    if isinstance(output, dict):
        urls: list[str] = []
        for key in ("images", "image", "url", "output"):
            urls.extend(replicate_image_urls(output.get(key)))
        return urls
    return []


class ImageGenerationService:
    def __init__(
        self,
        config: OpenAIConfig,
        storage: Storage,
        *,
        replicate: ReplicateConfig | None = None,
        merse: ReplicateModelConfig | None = None,
        versions: ModelVersionCache | None = None,
        poll_interval: float = MERSE_POLL_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.replicate = replicate or ReplicateConfig()
        self.merse = merse or ReplicateModelConfig(MERSE_MODEL)
        self._transport = transport
        self.predictions = ReplicatePredictions(
            self.replicate,
            provider="merse",
            versions=versions,
            poll_interval=poll_interval,
            max_polls=MERSE_MAX_POLLS,
            transport=transport,
        )

    async def generate(
        self,
        prompt: str,
        *,
        count: int = 1,
        aspect_ratio: str | None = None,
        stylization: float | None = None,
        provider: str | None = None,
        reference_image: str | None = None,
    ) -> ImageGenerationResult:
        text = " ".join((prompt or "").split())
        if not text:
            raise InvalidInput("Provide a prompt to generate the image.")

        engine = normalize_image_provider(provider)
        reference = (reference_image or "").strip() or None
        if reference and not (is_http_url(reference) or is_image_data_uri(reference)):
            raise InvalidInput("referenceImage must be an http(s) URL or a base64 image data URI.")

        capped = max(1, min(int(count or 1), MAX_IMAGES))
        if engine == "merse":
            result = await self._generate_merse(text, capped, aspect_ratio, stylization, reference)
        else:
            result = await self._generate_openai(engine, text, capped, aspect_ratio, stylization, reference)
        logger.info("Image generation ok provider=%s count=%s", engine, len(result.images))
        return result

    async def _reference_file(self, reference: str) -> tuple[str, bytes, str]:
        if is_image_data_uri(reference):
            try:
                data, mime = decode_data_image(reference)
            except ReferenceDecodeFailure as exc:
                raise InvalidInput(f"referenceImage could not be decoded: {exc}") from exc
            return f"reference.{extension_for_mime(mime)}", data, mime

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
            try:
                response = await client.get(reference)
            except httpx.HTTPError as exc:
                raise InvalidInput(f"referenceImage could not be downloaded: {exc}") from exc
        if response.status_code >= 400 or not response.content:
            raise InvalidInput(f"referenceImage could not be downloaded (HTTP {response.status_code}).")
        mime = response.headers.get("content-type", "image/png").split(";", 1)[0].strip() or "image/png"
        return f"reference.{extension_for_mime(mime)}", response.content, mime

    async def _generate_openai(
        self,
        engine: str,
        text: str,
        count: int,
        aspect_ratio: str | None,
        stylization: float | None,
        reference: str | None,
    ) -> ImageGenerationResult:
        if not self.config.is_configured:
            raise ProviderConfigMissing(engine, "OPENAI_API_KEY is not configured")

        size = ASPECT_SIZES.get((aspect_ratio or "").strip(), "1024x1024")
        suffix = FLUX_PROMPT_SUFFIX if engine == "flux" else PROMPT_SUFFIX
        full_prompt = compose_image_prompt(text, stylization, suffix)
        quality = _OPENAI_QUALITY[engine]

        try:
            if reference:
                reference_file = await self._reference_file(reference)
                images = await run_in_threadpool(
                    request_image_edits,
                    self.config,
                    full_prompt,
                    reference_file,
                    size=size,
                    n=count,
                    quality=quality,
                )
            else:
                images = await run_in_threadpool(
                    request_images,
                    self.config,
                    full_prompt,
                    size=size,
                    n=count,
                    quality=quality,
                )
        except OpenAIError as exc:
            logger.exception("OpenAI image generation failed: %s", exc)
            raise ProviderHttpFailure(engine, str(exc), status_code=getattr(exc, "status_code", None)) from exc

        urls, seeds = await self._publish(engine, images)
        return ImageGenerationResult(image_url=urls[0], images=urls, seeds=seeds, provider=engine)

    async def _publish(self, engine: str, images: list[GeneratedImage]) -> tuple[list[str], list[Any]]:
        urls: list[str] = []
        seeds: list[Any] = []
        for image in images:
            try:
                url = await run_in_threadpool(publish_image, image, self.storage, folder="generated/images")
            except Exception as exc:  # noqa: BLE001 - storage backends raise their own error types
                raise ProviderJobFailure(engine, f"Publishing the generated image failed: {exc}") from exc
            if url:
                urls.append(url)
                seeds.append(image.seed)

        if not urls:
            raise ProviderJobFailure(engine, "The image provider returned no images.")
        return urls, seeds

    async def _generate_merse(
        self,
        text: str,
        count: int,
        aspect_ratio: str | None,
        stylization: float | None,
        reference: str | None,
    ) -> ImageGenerationResult:
        if not self.replicate.api_token:
            raise ProviderConfigMissing("merse", "REPLICATE_API_TOKEN is not configured")

        model_input: dict[str, Any] = {
            "prompt": f"{text}{MERSE_PROMPT_SUFFIX}",
            "num_outputs": count,
            "aspect_ratio": (aspect_ratio or "").strip() or "1:1",
            "guidance": merse_guidance(stylization),
        }
        if reference:
            asset = await resolve_reference(reference, "references/image", self.storage)
            if asset.usable:
                model_input["image"] = asset.usable

        try:
            async with self.predictions.session() as client:
                version = await self.predictions.resolve_version(
                    client, self.merse.model, pinned=self.merse.version
                )
                prediction = await self.predictions.predict(client, version, model_input)
        except httpx.HTTPError as exc:
            raise ProviderHttpFailure("merse", f"network error: {exc}") from exc

        output = prediction.get("output") if isinstance(prediction, dict) else None
        urls = list(dict.fromkeys(replicate_image_urls(output)))
        if not urls:
            raise ProviderJobFailure("merse", "Replicate returned no generated images.")
        return ImageGenerationResult(
            image_url=urls[0],
            images=urls,
            seeds=[index + 1 for index in range(len(urls))],
            provider="merse",
        )


__all__ = [
    "IMAGE_PROVIDERS",
    "ImageGenerationResult",
    "ImageGenerationService",
    "compose_image_prompt",
    "merse_guidance",
    "normalize_image_provider",
    "replicate_image_urls",
]
