"""Immediate 2-D fallback: renders only, never a downloadable asset."""
from __future__ import annotations

import logging

from fastapi.concurrency import run_in_threadpool
from openai import OpenAIError

from app.config import OpenAIConfig
from app.services.object_request import GenerationRequest
from app.services.openai_image import publish_image, request_images
from app.services.references import ResolvedReferences, Storage

from .base import ProviderOutcome, RenderItem
from .errors import ProviderConfigMissing, ProviderHttpFailure, ProviderJobFailure

logger = logging.getLogger(__name__)

IMAGE_COUNT = 2
_ANGLES = ("front", "three-quarter")


class OpenAIImageFallbackProvider:
    """providerD: guarantees some visual output when every 3-D provider fails."""

    produces_downloads = False

    def __init__(self, config: OpenAIConfig, storage: Storage, *, key: str = "providerD") -> None:
        self.config = config
        self.storage = storage
        self.key = key

    def build_prompt(self, request: GenerationRequest) -> str:
        return (
            f"{request.composed_prompt} Product render of the object, "
            "isolated on a seamless backdrop, showcase angle."
        )

    async def attempt(self, request: GenerationRequest, references: ResolvedReferences) -> ProviderOutcome:
        if not self.config.is_configured:
            raise ProviderConfigMissing(self.key, "OPENAI_API_KEY is not configured")

        try:
            images = await run_in_threadpool(
                request_images,
                self.config,
                self.build_prompt(request),
                n=IMAGE_COUNT,
            )
        except OpenAIError as exc:
            status_code = getattr(exc, "status_code", None)
            raise ProviderHttpFailure(self.key, str(exc), status_code=status_code) from exc

        renders: list[RenderItem] = []
        for index, image in enumerate(images):
            try:
                url = await run_in_threadpool(publish_image, image, self.storage, folder="renders/fallback")
            except Exception as exc:  # noqa: BLE001 - storage backends raise their own error types
                logger.warning("Publishing fallback render failed: %s", exc)
                raise ProviderJobFailure(self.key, f"Publishing the fallback render failed: {exc}") from exc
            if url:
                angle = _ANGLES[index] if index < len(_ANGLES) else None
                renders.append(RenderItem(url=url, provider=self.key, format="png", angle=angle))

        if not renders:
            raise ProviderJobFailure(self.key, "Image fallback returned no images.")

        logger.info("2-D fallback produced %s renders", len(renders))
        return ProviderOutcome(
            provider_name=self.key,
            renders=renders,
            notes=["Preview renders only: the image fallback does not produce 3D files."],
        )
