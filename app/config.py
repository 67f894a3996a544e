from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List
from urllib.parse import urlparse


def _env(*names: str) -> str | None:
    """Return the first non-empty environment value among *names*."""

    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        text = value.strip()
        if text:
            return text
    return None


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return default


def _parse_allowed_origins(raw: str | None) -> List[str]:
    """Normalise comma-separated origins into values accepted by CORSMiddleware."""

    if not raw:
        return ["*"]

    cleaned: List[str] = []
    for origin in raw.split(","):
        value = origin.strip()
        if not value:
            continue
        if value == "*":
            return ["*"]

        parsed = urlparse(value)
        if parsed.scheme and parsed.netloc:
            normalised = f"{parsed.scheme}://{parsed.netloc}"
        else:
            normalised = value.rstrip("/")

        if normalised not in cleaned:
            cleaned.append(normalised)

    return cleaned or ["*"]


@dataclass
class GuardConfig:
    max_body_bytes: int

    @classmethod
    def from_env(cls) -> "GuardConfig":
        # reference images arrive inline as base64, so the default is generous
        raw_max = os.getenv("MAX_BODY_BYTES", str(12 * 1024 * 1024))
        try:
            max_bytes = max(int(raw_max), 0)
        except (TypeError, ValueError):
            max_bytes = 12 * 1024 * 1024
        return cls(max_body_bytes=max_bytes)


@dataclass
class MeshyConfig:
    api_key: str | None = None
    api_base: str = "https://api.meshy.ai"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "MeshyConfig":
        return cls(
            api_key=_env("MESHY_API_KEY"),
            api_base=(_env("MESHY_API_BASE") or "https://api.meshy.ai").rstrip("/"),
        )


@dataclass
class ExternalObjectConfig:
    endpoint: str | None = None
    token: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.token)

    @classmethod
    def from_env(cls) -> "ExternalObjectConfig":
        endpoint = _env("OBJECT_PROVIDER_ENDPOINT", "OBJECT_API_URL")
        return cls(
            endpoint=endpoint.rstrip("/") if endpoint else None,
            token=_env("OBJECT_PROVIDER_TOKEN", "OBJECT_API_KEY"),
        )


@dataclass
class ReplicateConfig:
    api_token: str | None = None
    model: str = "firtoz/trellis"
    version: str | None = None
    api_base: str = "https://api.replicate.com/v1"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token and self.model)

    @classmethod
    def from_env(cls) -> "ReplicateConfig":
        return cls(
            api_token=_env("REPLICATE_API_TOKEN"),
            model=_env("REPLICATE_OBJECT_MODEL") or "firtoz/trellis",
            version=_env("REPLICATE_OBJECT_MODEL_VERSION"),
            api_base=(_env("REPLICATE_API_BASE") or "https://api.replicate.com/v1").rstrip("/"),
        )


@dataclass
class ReplicateModelConfig:
    """One hosted Replicate model; an empty ``version`` means look it up."""

    model: str
    version: str | None = None

    @classmethod
    def from_env(
        cls,
        default_model: str,
        model_vars: tuple[str, ...],
        version_vars: tuple[str, ...] = (),
    ) -> "ReplicateModelConfig":
        return cls(
            model=_env(*model_vars) or default_model,
            version=_env(*version_vars) if version_vars else None,
        )


MERSE_MODEL = "mersee/merse-ai-1-0"


def _merse_image_model() -> ReplicateModelConfig:
    return ReplicateModelConfig.from_env(
        MERSE_MODEL,
        ("REPLICATE_MERSE_MODEL",),
        ("REPLICATE_MERSE_MODEL_VERSION",),
    )


VIDEO_MODEL_DEFAULTS = {
    "veo": "google/veo-3",
    "sora": "openai/sora",
    "merse": MERSE_MODEL,
}


def _video_models() -> Dict[str, ReplicateModelConfig]:
    return {
        "veo": ReplicateModelConfig.from_env(
            VIDEO_MODEL_DEFAULTS["veo"],
            ("REPLICATE_VEO_MODEL",),
            ("REPLICATE_VEO_MODEL_VERSION",),
        ),
        "sora": ReplicateModelConfig.from_env(
            VIDEO_MODEL_DEFAULTS["sora"],
            ("REPLICATE_SORA_MODEL",),
            ("REPLICATE_SORA_MODEL_VERSION",),
        ),
        "merse": ReplicateModelConfig.from_env(
            VIDEO_MODEL_DEFAULTS["merse"],
            ("REPLICATE_MERSE_VIDEO_MODEL", "REPLICATE_MERSE_MODEL"),
            ("REPLICATE_MERSE_VIDEO_MODEL_VERSION", "REPLICATE_MERSE_MODEL_VERSION"),
        ),
    }


@dataclass
class OpenAIConfig:
    api_key: str | None = None
    base_url: str | None = None
    proxy: str | None = None
    image_model: str = "gpt-image-1"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        return cls(
            api_key=_env("OPENAI_API_KEY"),
            base_url=_env("OPENAI_BASE_URL"),
            proxy=_env("OPENAI_PROXY"),
            image_model=_env("OPENAI_IMAGE_MODEL") or "gpt-image-1",
        )


@dataclass
class Settings:
    environment: str
    allowed_origins: List[str]
    guard: GuardConfig
    meshy: MeshyConfig
    external_object: ExternalObjectConfig
    replicate: ReplicateConfig
    openai: OpenAIConfig
    poll_interval: float
    merse_image: ReplicateModelConfig = field(default_factory=lambda: ReplicateModelConfig(MERSE_MODEL))
    video_models: Dict[str, ReplicateModelConfig] = field(default_factory=dict)


@lru_cache()
def get_settings() -> Settings:
    return Settings(
        environment=_env("ENVIRONMENT") or "development",
        allowed_origins=_parse_allowed_origins(_env("ALLOWED_ORIGINS", "CORS_ALLOW_ORIGINS")),
        guard=GuardConfig.from_env(),
        meshy=MeshyConfig.from_env(),
        external_object=ExternalObjectConfig.from_env(),
        replicate=ReplicateConfig.from_env(),
        openai=OpenAIConfig.from_env(),
        poll_interval=_as_float(_env("OBJECT_POLL_INTERVAL_SECONDS"), 2.5),
        merse_image=_merse_image_model(),
        video_models=_video_models(),
    )
