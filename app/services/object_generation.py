"""Ordered multi-provider orchestration for 3-D object generation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import httpx

from app.config import Settings
from app.services.aggregator import AggregatedResult
from app.services.object_providers.base import DownloadItem, ObjectProvider, ProviderOutcome, RenderItem
from app.services.object_providers.errors import GenerationFailed, ProviderError
from app.services.object_providers.external import ExternalObjectProvider
from app.services.object_providers.meshy import MeshyProvider
from app.services.object_providers.openai_fallback import OpenAIImageFallbackProvider
from app.services.object_providers.replicate import ReplicateProvider
from app.services.object_request import GenerationRequest
from app.services.references import ResolvedReferences, Storage, resolve_references

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 300
MAX_ERROR_DETAILS = 5
NO_ASSET_NOTE = "No 3D asset was produced; only preview renders are available."


@dataclass
class AttemptResult:
    provider_key: str
    outcome: ProviderOutcome | None = None
    error: str | None = None


@dataclass
class ObjectGenerationResult:
    provider: str
    providers_tried: list[str]
    renders: list[RenderItem]
    downloads: list[DownloadItem] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return not self.downloads


def _bounded(provider_key: str, message: str) -> str:
    text = " ".join(str(message).split()) or "unknown error"
    if len(text) > MAX_ERROR_CHARS:
        text = text[: MAX_ERROR_CHARS - 1] + "…"
    return f"{provider_key}: {text}"


class ObjectGenerationService:
    """Try providers in priority order until a downloadable asset exists."""

    def __init__(self, providers: Sequence[ObjectProvider], storage: Storage) -> None:
        self.providers = list(providers)
        self.storage = storage

    async def generate(self, request: GenerationRequest) -> ObjectGenerationResult:
        references = await resolve_references(
            request.product_reference,
            request.brand_reference,
            self.storage,
        )
        return await self.run(request, references)

    async def _attempt(
        self,
        provider: ObjectProvider,
        request: GenerationRequest,
        references: ResolvedReferences,
    ) -> AttemptResult:
        try:
            outcome = await provider.attempt(request, references)
        except ProviderError as exc:
            return AttemptResult(provider.key, error=_bounded(provider.key, exc.message))
        except httpx.HTTPError as exc:
            return AttemptResult(provider.key, error=_bounded(provider.key, f"network error: {exc}"))
        except Exception as exc:  # noqa: BLE001 - one broken adapter must not abort the chain
            logger.exception("Object provider %s raised unexpectedly", provider.key)
            return AttemptResult(provider.key, error=_bounded(provider.key, f"unexpected error: {exc}"))
        return AttemptResult(provider.key, outcome=outcome)

    async def run(self, request: GenerationRequest, references: ResolvedReferences) -> ObjectGenerationResult:
        aggregate = AggregatedResult()
        tried: list[str] = []
        errors: list[str] = []
        notes: list[str] = list(references.notes)

        for provider in self.providers:
            if not provider.produces_downloads and aggregate.has_renders and not aggregate.has_downloads:
                logger.info("Skipping %s: preview renders already captured", provider.key)
                continue

            tried.append(provider.key)
            logger.info("Trying object provider %s", provider.key)
            result = await self._attempt(provider, request, references)

            if result.outcome is None:
                logger.warning("Object provider failed: %s", result.error)
                errors.append(result.error or _bounded(provider.key, "unknown error"))
                continue

            outcome = result.outcome
            added = aggregate.merge_downloads(outcome.downloads)
            aggregate.offer_renders(outcome.renders, provider.key)
            notes.extend(outcome.notes)
            logger.info(
                "Object provider %s returned renders=%s downloads=%s (new=%s)",
                provider.key,
                len(outcome.renders),
                len(outcome.downloads),
                added,
            )

            if aggregate.has_downloads:
                return ObjectGenerationResult(
                    provider=provider.key,
                    providers_tried=tried,
                    renders=outcome.renders or aggregate.fallback_renders,
                    downloads=list(aggregate.downloads),
                    notes=notes,
                )

        if aggregate.has_renders:
            logger.warning("No provider produced a 3D asset; returning renders from %s", aggregate.render_provider)
            return ObjectGenerationResult(
                provider=aggregate.render_provider or tried[-1],
                providers_tried=tried,
                renders=aggregate.fallback_renders,
                notes=notes + [NO_ASSET_NOTE],
            )

        raise GenerationFailed(
            "Unable to generate the object with any provider.",
            details=errors[:MAX_ERROR_DETAILS],
        )


def build_object_service(settings: Settings, storage: Storage) -> ObjectGenerationService:
    """Providers in priority order: Meshy, external endpoint, Replicate, image fallback."""

    interval = settings.poll_interval
    providers: list[ObjectProvider] = [
        MeshyProvider(settings.meshy, poll_interval=interval),
        ExternalObjectProvider(settings.external_object, poll_interval=interval),
        ReplicateProvider(settings.replicate, poll_interval=interval),
        OpenAIImageFallbackProvider(settings.openai, storage),
    ]
    return ObjectGenerationService(providers, storage)


__all__ = [
    "AttemptResult",
    "NO_ASSET_NOTE",
    "ObjectGenerationResult",
    "ObjectGenerationService",
    "build_object_service",
]
