from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:  # pragma: no cover
    from app.services.object_request import GenerationRequest
    from app.services.references import ResolvedReferences

DOWNLOAD_TYPES = ("glb", "gltf", "obj", "usdz", "fbx", "stl", "zip", "model")

HTTP_TIMEOUT = httpx.Timeout(60.0, connect=10.0, read=60.0)


@dataclass
class RenderItem:
    """A 2-D preview image; not guaranteed to be a downloadable 3-D asset."""

    url: str
    provider: str
    format: str | None = None
    angle: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DownloadItem:
    url: str
    type: str
    provider: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProviderOutcome:
    provider_name: str
    renders: list[RenderItem] = field(default_factory=list)
    downloads: list[DownloadItem] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def has_artifacts(self) -> bool:
        return bool(self.renders or self.downloads)


class ObjectProvider(Protocol):
    key: str
    produces_downloads: bool

    async def attempt(
        self,
        request: "GenerationRequest",
        references: "ResolvedReferences",
    ) -> ProviderOutcome:
        ...


def read_json(response: httpx.Response) -> Any:
    """Decode a provider body, treating unparsable content as an empty object."""

    try:
        return response.json()
    except ValueError:
        return {}


def error_message(body: Any, default: str) -> str:
    """Pull a human readable message out of a provider error body."""

    if isinstance(body, dict):
        for key in ("message", "detail", "error", "task_error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, dict):
                nested = value.get("message") or value.get("detail")
                if isinstance(nested, str) and nested.strip():
                    return nested.strip()
    return default


def first_string(body: Any, *keys: str) -> str | None:
    if not isinstance(body, dict):
        return None
    for key in keys:
        value = body.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None
