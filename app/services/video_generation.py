"""Short video clips from a text prompt via hosted Replicate models."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import httpx

from app.config import VIDEO_MODEL_DEFAULTS, ReplicateConfig, ReplicateModelConfig
from app.services.object_providers.errors import (
    InvalidInput,
    ProviderConfigMissing,
    ProviderHttpFailure,
    ProviderJobFailure,
)
from app.services.payload_scanner import collect_video_media, is_http_url, is_image_data_uri
from app.services.references import Storage, resolve_reference
from app.services.replicate_predictions import ModelVersionCache, ReplicatePredictions

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_PROVIDER = "veo"

_RATIO_RX = re.compile(r"^\d+:\d+$")


@dataclass(frozen=True)
class DurationRange:
    minimum: int
    maximum: int
    step: int
    fallback: int


InputBuilder = Callable[[str, str, int], dict[str, Any]]


def _clip_input(prompt: str, aspect: str, duration: int) -> dict[str, Any]:
    return {"prompt": prompt, "aspect_ratio": aspect, "duration": duration}


def _veo_input(prompt: str, aspect: str, duration: int) -> dict[str, Any]:
    model_input = _clip_input(prompt, aspect, duration)
    model_input["video_length"] = duration
    model_input["resolution"] = "720x1280" if aspect == "9:16" else "1080p"
    return model_input


@dataclass(frozen=True)
class VideoPreset:
    """Polling budget, accepted inputs and prompt styling of one video engine."""

    poll_interval: float
    max_polls: int
    durations: DurationRange
    prompt_suffix: str
    build_input: InputBuilder = _clip_input
    allowed_durations: tuple[int, ...] = ()
    default_aspect: str = "16:9"
    aspect_whitelist: tuple[str, ...] = ("16:9", "9:16")


VIDEO_PRESETS: dict[str, VideoPreset] = {
    "veo": VideoPreset(
        poll_interval=2.5,
        max_polls=40,
        durations=DurationRange(minimum=4, maximum=8, step=2, fallback=6),
        allowed_durations=(4, 6, 8),
        prompt_suffix=" | Realistic cinematics, organic grain and the Merse look.",
        build_input=_veo_input,
    ),
    "sora": VideoPreset(
        poll_interval=3.0,
        max_polls=45,
        durations=DurationRange(minimum=6, maximum=20, step=2, fallback=12),
        prompt_suffix=" | Coherent physics, cinematic Merse lighting.",
    ),
    "merse": VideoPreset(
        poll_interval=2.5,
        max_polls=35,
        durations=DurationRange(minimum=4, maximum=20, step=2, fallback=12),
        prompt_suffix=" | Official Merse identity, cosmic particles and neon glow.",
    ),
}


@dataclass
class VideoGenerationResult:
    video_url: str
    provider: str
    cover: str | None = None
    duration: float | None = None


def normalize_video_provider(value: Any) -> str:
    key = value.strip().lower() if isinstance(value, str) else ""
    return key if key in VIDEO_PRESETS else DEFAULT_VIDEO_PROVIDER


def normalize_aspect(value: Any, preset: VideoPreset) -> str:
    """Whitelisted or well-formed ``W:H`` ratios pass; anything else gets the default."""

    if isinstance(value, str):
        text = value.strip()
        if text in preset.aspect_whitelist or _RATIO_RX.match(text):
            return text
    return preset.default_aspect


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def clamp_duration(value: Any, durations: DurationRange, allowed: Sequence[int] = ()) -> int:
    """Snap *value* to the nearest allowed length, or clamp it onto the step grid."""

    number = _as_number(value)
    base = number if number is not None else float(durations.fallback)

    if allowed:
        choices = sorted(set(allowed))
        closest = choices[0]
        for candidate in choices[1:]:
            if abs(candidate - base) < abs(closest - base):
                closest = candidate
        return closest

    clamped = min(max(base, durations.minimum), durations.maximum)
    # half-way values round up
    steps = math.floor((clamped - durations.minimum) / durations.step + 0.5)
    return durations.minimum + steps * durations.step


class VideoGenerationService:
    def __init__(
        self,
        replicate: ReplicateConfig,
        storage: Storage,
        *,
        models: Mapping[str, ReplicateModelConfig] | None = None,
        versions: ModelVersionCache | None = None,
        poll_interval: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.replicate = replicate
        self.storage = storage
        self.models = dict(models or {})
        self.versions = versions or ModelVersionCache()
        self._poll_interval = poll_interval
        self._transport = transport

    def model_for(self, provider: str) -> ReplicateModelConfig:
        return self.models.get(provider) or ReplicateModelConfig(VIDEO_MODEL_DEFAULTS[provider])

    async def generate(
        self,
        prompt: str,
        *,
        provider: str | None = None,
        aspect_ratio: Any = None,
        duration: Any = None,
        reference_image: str | None = None,
    ) -> VideoGenerationResult:
        text = (prompt or "").strip()
        if not text:
            raise InvalidInput("Provide a prompt to generate the video.")

        engine = normalize_video_provider(provider)
        reference = (reference_image or "").strip() or None
        if reference and not (is_http_url(reference) or is_image_data_uri(reference)):
            raise InvalidInput("referenceImage must be an http(s) URL or a base64 image data URI.")
        if not self.replicate.api_token:
            raise ProviderConfigMissing(engine, "REPLICATE_API_TOKEN is not configured")

        preset = VIDEO_PRESETS[engine]
        aspect = normalize_aspect(aspect_ratio, preset)
        seconds = clamp_duration(duration, preset.durations, preset.allowed_durations)

        model_input = preset.build_input(f"{text}{preset.prompt_suffix}", aspect, seconds)
        if reference:
            asset = await resolve_reference(reference, "references/video", self.storage)
            if asset.usable:
                model_input["image"] = asset.usable

        model = self.model_for(engine)
        predictions = ReplicatePredictions(
            self.replicate,
            provider=engine,
            versions=self.versions,
            poll_interval=preset.poll_interval if self._poll_interval is None else self._poll_interval,
            max_polls=preset.max_polls,
            transport=self._transport,
        )
        logger.info("Video generation provider=%s model=%s aspect=%s duration=%s", engine, model.model, aspect, seconds)

        try:
            async with predictions.session() as client:
                version = await predictions.resolve_version(client, model.model, pinned=model.version)
                prediction = await predictions.predict(client, version, model_input)
        except httpx.HTTPError as exc:
            raise ProviderHttpFailure(engine, f"network error: {exc}") from exc

        output = prediction.get("output") if isinstance(prediction, dict) else None
        media = collect_video_media(output)
        if not media.videos:
            raise ProviderJobFailure(engine, "Replicate returned no video URL.")

        return VideoGenerationResult(
            video_url=media.videos[0],
            provider=engine,
            cover=media.covers[0] if media.covers else None,
            duration=media.duration if media.duration is not None else seconds,
        )


__all__ = [
    "DEFAULT_VIDEO_PROVIDER",
    "DurationRange",
    "VIDEO_PRESETS",
    "VideoGenerationResult",
    "VideoGenerationService",
    "VideoPreset",
    "clamp_duration",
    "normalize_aspect",
    "normalize_video_provider",
]
