# app/services/openai_image.py
"""
Thin OpenAI image-generation helper shared by the image endpoint and the
2-D fallback provider.
- Uses a safe OpenAI client factory (httpx proxy injected via http_client).
- Returns URLs unchanged; base64 payloads are published to storage when
  available, otherwise inlined as data URIs.
"""

from __future__ import annotations

import base64
import binascii
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from openai import OpenAI

from app.config import OpenAIConfig

logger = logging.getLogger(__name__)

# only these keywords may reach the OpenAI SDK constructor
_ALLOWED_OPENAI_KWARGS = {"api_key", "base_url", "timeout", "max_retries", "http_client"}


class _Storage(Protocol):
    @property
    def enabled(self) -> bool:
        ...

    def upload(self, data: bytes, *, folder: str, ext: str, content_type: str) -> str | None:
        ...


@dataclass
class GeneratedImage:
    url: str | None = None
    b64_json: str | None = None
    seed: Any = None


def _sanitize_openai_kwargs(kw: dict[str, Any]) -> dict[str, Any]:
    cleaned = {k: v for k, v in kw.items() if k in _ALLOWED_OPENAI_KWARGS}
    for k in set(kw) - _ALLOWED_OPENAI_KWARGS:
        logger.debug("Removed unsupported OpenAI kwarg '%s' from client kwargs", k)
    return cleaned


def build_openai_client(
    api_key: str,
    *,
    base_url: Optional[str] = None,
    proxy: Optional[str] = None,
) -> tuple[OpenAI, Optional[httpx.Client]]:
    """Return ``(client, http_client)``; the caller closes ``http_client``."""

    if not api_key:
        raise ValueError("OPENAI_API_KEY is not configured.")

    kw: dict[str, Any] = {"api_key": api_key}
    if base_url:
        kw["base_url"] = base_url

    http_client: httpx.Client | None = None
    if proxy:
        timeout = httpx.Timeout(60.0, connect=10.0, read=60.0)
        http_client = httpx.Client(proxy=proxy, timeout=timeout)
        kw["http_client"] = http_client

    return OpenAI(**_sanitize_openai_kwargs(kw)), http_client


def _generated(response: Any) -> list[GeneratedImage]:
    images: list[GeneratedImage] = []
    for index, item in enumerate(response.data or []):
        url = getattr(item, "url", None)
        b64 = getattr(item, "b64_json", None)
        if not (url or b64):
            continue
        images.append(GeneratedImage(url=url, b64_json=b64, seed=getattr(item, "seed", None) or index + 1))
    return images


def _call_images_api(config: OpenAIConfig, method: str, params: dict[str, Any]) -> Any:
    with ExitStack() as stack:
        client, http_client = build_openai_client(
            config.api_key or "", base_url=config.base_url, proxy=config.proxy
        )
        if http_client is not None:
            stack.callback(http_client.close)
        return getattr(client.images, method)(**params)


def request_images(
    config: OpenAIConfig,
    prompt: str,
    *,
    size: str = "1024x1024",
    n: int = 1,
    quality: str | None = None,
) -> list[GeneratedImage]:
    """Blocking call to ``images.generate``; run it in a worker thread."""

    params: dict[str, Any] = {
        "model": config.image_model,
        "prompt": prompt,
        "size": size,
        "n": n,
    }
    if quality:
        params["quality"] = quality
    return _generated(_call_images_api(config, "generate", params))


def request_image_edits(
    config: OpenAIConfig,
    prompt: str,
    reference: tuple[str, bytes, str],
    *,
    size: str = "1024x1024",
    n: int = 1,
    quality: str | None = None,
) -> list[GeneratedImage]:
    """Blocking ``images.edit`` call guided by *reference* ``(filename, bytes, mime)``."""

    params: dict[str, Any] = {
        "model": config.image_model,
        "image": reference,
        "prompt": prompt,
        "size": size,
        "n": n,
    }
    if quality:
        params["quality"] = quality
    return _generated(_call_images_api(config, "edit", params))


def publish_image(image: GeneratedImage, storage: _Storage, *, folder: str) -> str | None:
    """Public URL for *image*, falling back to a data URI when storage is off."""

    if image.url:
        return image.url
    if not image.b64_json:
        return None

    if storage.enabled:
        try:
            data = base64.b64decode(image.b64_json)
        except (binascii.Error, ValueError) as exc:
            logger.warning("OpenAI returned invalid base64 payload: %s", exc)
            return None
        url = storage.upload(data, folder=folder, ext="png", content_type="image/png")
        if url:
            return url
        logger.warning("Falling back to inline data URI after failed upload")

    return f"data:image/png;base64,{image.b64_json}"


__all__ = [
    "GeneratedImage",
    "build_openai_client",
    "publish_image",
    "request_image_edits",
    "request_images",
]
