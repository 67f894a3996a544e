"""Replicate predictions adapter.

The exact input schema of a hosted 3-D model is not knowable in advance, so
several request shapes are tried in order until one yields artifacts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from app.config import ReplicateConfig
from app.services.object_request import GenerationRequest
from app.services.payload_scanner import (
    MODEL_EXTENSIONS,
    classify_download_type,
    collect_download_items,
    collect_image_urls,
    is_http_url,
    url_extension,
)
from app.services.references import ResolvedReferences
from app.services.replicate_predictions import ModelVersionCache, ReplicatePredictions

from .base import DownloadItem, ProviderOutcome, RenderItem
from .errors import ProviderConfigMissing, ProviderError, ProviderJobFailure

logger = logging.getLogger(__name__)

MAX_POLLS = 45


InputBuilder = Callable[[GenerationRequest, ResolvedReferences], Optional[dict[str, Any]]]


def _images_input(request: GenerationRequest, references: ResolvedReferences) -> dict[str, Any] | None:
    images = references.usable
    if not images:
        return None
    return {"prompt": request.composed_prompt, "images": images}


def _image_input(request: GenerationRequest, references: ResolvedReferences) -> dict[str, Any] | None:
    images = references.usable
    if not images:
        return None
    return {"prompt": request.composed_prompt, "image": images[0]}


def _legacy_image_input(request: GenerationRequest, references: ResolvedReferences) -> dict[str, Any] | None:
    images = references.usable
    if not images:
        return None
    return {"prompt": request.composed_prompt, "input_image": images[0]}


def _text_only_input(request: GenerationRequest, references: ResolvedReferences) -> dict[str, Any] | None:
    return {"prompt": request.composed_prompt}


INPUT_SCHEMAS: tuple[tuple[str, InputBuilder], ...] = (
    ("images", _images_input),
    ("image", _image_input),
    ("input_image", _legacy_image_input),
    ("text_only", _text_only_input),
)


@dataclass
class SchemaAttempt:
    """Result of submitting one input shape: an outcome or an error."""

    schema: str
    outcome: ProviderOutcome | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not None and self.outcome.has_artifacts


def decode_replicate_output(prediction: Any, provider: str) -> ProviderOutcome:
    output = prediction.get("output") if isinstance(prediction, dict) else None

    strings: list[str] = []
    if isinstance(output, str):
        strings = [output]
    elif isinstance(output, list) and all(isinstance(item, str) for item in output):
        strings = list(output)

    renders: list[RenderItem] = []
    downloads: dict[str, DownloadItem] = {}
    for url in strings:
        if not is_http_url(url):
            continue
        ext = url_extension(url)
        if ext in MODEL_EXTENSIONS:
            downloads.setdefault(url, DownloadItem(url=url, type=classify_download_type(url), provider=provider))
        else:
            renders.append(RenderItem(url=url, provider=provider, format=ext))

    if not strings and output is not None:
        renders = [
            RenderItem(url=url, provider=provider, format=url_extension(url))
            for url in collect_image_urls(output)
        ]
        downloads = {item.url: item for item in collect_download_items(output, provider)}

    return ProviderOutcome(provider_name=provider, renders=renders, downloads=list(downloads.values()))


class ReplicateProvider:
    """providerC: hosted model on Replicate, version resolved once per model."""

    produces_downloads = True

    def __init__(
        self,
        config: ReplicateConfig,
        *,
        key: str = "providerC",
        versions: ModelVersionCache | None = None,
        schemas: tuple[tuple[str, InputBuilder], ...] = INPUT_SCHEMAS,
        poll_interval: float = 2.5,
        max_polls: int = MAX_POLLS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.key = key
        self.schemas = schemas
        self.predictions = ReplicatePredictions(
            config,
            provider=key,
            versions=versions,
            poll_interval=poll_interval,
            max_polls=max_polls,
            transport=transport,
        )

    @property
    def versions(self) -> ModelVersionCache:
        return self.predictions.versions

    async def _run_schema(
        self,
        client: httpx.AsyncClient,
        version: str,
        schema: str,
        model_input: dict[str, Any],
    ) -> SchemaAttempt:
        try:
            prediction = await self.predictions.predict(client, version, model_input)
        except (ProviderError, httpx.HTTPError) as exc:
            return SchemaAttempt(schema=schema, error=str(exc) or exc.__class__.__name__)

        outcome = decode_replicate_output(prediction, self.key)
        if not outcome.has_artifacts:
            return SchemaAttempt(schema=schema, outcome=outcome, error="prediction returned no artifacts")
        return SchemaAttempt(schema=schema, outcome=outcome)

    async def attempt(self, request: GenerationRequest, references: ResolvedReferences) -> ProviderOutcome:
        if not self.config.is_configured:
            raise ProviderConfigMissing(self.key, "REPLICATE_API_TOKEN is not configured")

        async with self.predictions.session() as client:
            version = await self.predictions.resolve_version(client, self.config.model, pinned=self.config.version)

            failures: list[str] = []
            for schema, build_input in self.schemas:
                model_input = build_input(request, references)
                if model_input is None:
                    continue
                result = await self._run_schema(client, version, schema, model_input)
                if result.ok and result.outcome is not None:
                    logger.info("Replicate schema=%s produced artifacts", schema)
                    result.outcome.notes.append(f"Replicate input schema: {schema}.")
                    return result.outcome
                logger.info("Replicate schema=%s failed: %s", schema, result.error)
                failures.append(f"{schema}: {result.error}")

        raise ProviderJobFailure(self.key, "No input schema produced artifacts (" + "; ".join(failures) + ")")
