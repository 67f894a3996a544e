"""Heuristic extraction of image, video and 3-D file URLs from provider JSON.

Providers return results in arbitrary shapes.  The helpers here walk any
JSON-like value (dicts, lists, tuples, scalars) and classify string leaves
using their field name and file extension.  Containers are tracked by
identity so self-referencing payloads still terminate.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable
from urllib.parse import urlparse

from app.services.object_providers.base import DownloadItem

IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "webp", "gif", "bmp", "avif", "tif", "tiff"})
MODEL_EXTENSIONS = frozenset({"glb", "gltf", "obj", "usdz", "fbx", "stl", "zip"})
# companion files published next to a model; never a model on their own
SIDECAR_EXTENSIONS = frozenset({"mtl", "bin", "json", "txt"})
VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "webm", "gif"})

_IMAGE_KEY_RX = re.compile(r"image|preview|thumb|render|cover|poster", re.IGNORECASE)
_MODEL_KEY_RX = re.compile(r"model|mesh|geometry|glb|gltf|obj|usdz|fbx|stl", re.IGNORECASE)
_DATA_IMAGE_RX = re.compile(r"^data:image/[a-z0-9.+-]+;base64,", re.IGNORECASE)
_COVER_KEY_RX = re.compile(r"cover|thumb|poster")
_DURATION_KEYS = frozenset({"duration", "video_duration", "length", "seconds"})

# ordered so that "gltf" is tested before "glb" and "obj" last
_KEY_TYPE_HINTS = ("gltf", "glb", "usdz", "fbx", "stl", "zip", "obj")

_FLAT_DOWNLOAD_KEYS = (
    "glb",
    "gltf",
    "obj",
    "usdz",
    "fbx",
    "stl",
    "zip",
    "mesh_url",
    "model_url",
    "modelUrl",
    "model_file",
)
_MAPPING_DOWNLOAD_KEYS = ("model_urls", "modelUrls")
_LIST_DOWNLOAD_KEYS = ("downloads", "files")


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value[:8].lower().startswith(("http://", "https://"))


def is_image_data_uri(value: Any) -> bool:
    return isinstance(value, str) and bool(_DATA_IMAGE_RX.match(value))


def url_extension(url: str) -> str | None:
    """Lower-cased file extension of an http(s) URL path, if any."""

    if not is_http_url(url):
        return None
    name = urlparse(url).path.rsplit("/", 1)[-1]
    if "." not in name:
        return None
    return name.rsplit(".", 1)[-1].lower() or None


def model_download_type(url: str, key_hint: Any = None) -> str | None:
    """Model type for *url*, or ``None`` when neither extension nor key names one."""

    ext = url_extension(url)
    if ext in MODEL_EXTENSIONS:
        return ext
    if ext in IMAGE_EXTENSIONS or ext in SIDECAR_EXTENSIONS:
        return None
    hint = key_hint.lower() if isinstance(key_hint, str) else ""
    for candidate in _KEY_TYPE_HINTS:
        if candidate in hint:
            return candidate
    return None


def classify_download_type(url: str, key_hint: Any = None) -> str:
    return model_download_type(url, key_hint) or "model"


def _walk(payload: Any, visit: Callable[[str, Any], None], *, numbers: bool = False) -> None:
    seen: set[int] = set()
    stack: list[tuple[str, Any]] = [("", payload)]
    while stack:
        key, value = stack.pop()
        if isinstance(value, dict):
            if id(value) in seen:
                continue
            seen.add(id(value))
            # reversed so siblings are visited in document order
            stack.extend(reversed([(str(k), v) for k, v in value.items()]))
        elif isinstance(value, (list, tuple)):
            if id(value) in seen:
                continue
            seen.add(id(value))
            # list members inherit the field name of the list itself
            stack.extend(reversed([(key, item) for item in value]))
        elif isinstance(value, str):
            visit(key, value.strip())
        elif numbers and isinstance(value, (int, float)) and not isinstance(value, bool):
            visit(key, value)


def _qualifies_as_image(key: str, value: str) -> bool:
    if is_image_data_uri(value):
        return True
    if not is_http_url(value):
        return False
    ext = url_extension(value)
    if ext in MODEL_EXTENSIONS:
        return False
    return bool(_IMAGE_KEY_RX.search(key)) or ext in IMAGE_EXTENSIONS


def _qualifies_as_download(key: str, value: str) -> bool:
    if not is_http_url(value):
        return False
    ext = url_extension(value)
    if ext in MODEL_EXTENSIONS:
        return True
    if ext in IMAGE_EXTENSIONS or ext in SIDECAR_EXTENSIONS:
        return False
    # "model_preview_image" names a picture of the model, not the model
    if _IMAGE_KEY_RX.search(key):
        return False
    return bool(_MODEL_KEY_RX.search(key))


def collect_image_urls(payload: Any) -> list[str]:
    """Every image-like URL or inline image anywhere inside *payload*."""

    found: dict[str, None] = {}

    def visit(key: str, value: str) -> None:
        if _qualifies_as_image(key, value):
            found.setdefault(value, None)

    _walk(payload, visit)
    return list(found)


def _well_known_downloads(payload: Any) -> Iterable[tuple[str, str]]:
    """Yield ``(key_hint, url)`` from fields providers use for the primary asset."""

    if not isinstance(payload, dict):
        return

    for field_name in _MAPPING_DOWNLOAD_KEYS:
        mapping = payload.get(field_name)
        if isinstance(mapping, dict):
            for fmt, url in mapping.items():
                if is_http_url(url) and model_download_type(url.strip(), str(fmt)):
                    yield str(fmt), url.strip()

    for field_name in _LIST_DOWNLOAD_KEYS:
        entries = payload.get(field_name)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if is_http_url(entry):
                yield field_name, entry.strip()
            elif isinstance(entry, dict):
                url = entry.get("url") or entry.get("href") or entry.get("download_url")
                if is_http_url(url):
                    hint = entry.get("type") or entry.get("format") or entry.get("name") or field_name
                    yield str(hint), url.strip()

    for field_name in _FLAT_DOWNLOAD_KEYS:
        url = payload.get(field_name)
        if is_http_url(url):
            yield field_name, url.strip()


def collect_download_items(payload: Any, provider: str) -> list[DownloadItem]:
    """Downloadable 3-D files referenced by *payload*, unique by URL."""

    items: dict[str, DownloadItem] = {}

    def add(key: str, url: str) -> None:
        if url not in items:
            items[url] = DownloadItem(url=url, type=classify_download_type(url, key), provider=provider)

    for key, url in _well_known_downloads(payload):
        add(key, url)

    def visit(key: str, value: str) -> None:
        if _qualifies_as_download(key, value):
            add(key, value)

    _walk(payload, visit)
    return list(items.values())


@dataclass
class VideoMedia:
    videos: list[str] = field(default_factory=list)
    covers: list[str] = field(default_factory=list)
    duration: float | None = None


def collect_video_media(payload: Any) -> VideoMedia:
    """Video URLs, cover images and the first reported duration in *payload*."""

    media = VideoMedia()

    def visit(key: str, value: Any) -> None:
        lowered = key.lower()
        if isinstance(value, str):
            if is_http_url(value):
                if url_extension(value) in VIDEO_EXTENSIONS or "video" in lowered:
                    media.videos.append(value)
                elif _COVER_KEY_RX.search(lowered):
                    media.covers.append(value)
            elif value.startswith("data:video/"):
                media.videos.append(value)
        elif lowered in _DURATION_KEYS and media.duration is None and math.isfinite(value):
            media.duration = float(value)

    _walk(payload, visit, numbers=True)
    return media


__all__ = [
    "IMAGE_EXTENSIONS",
    "MODEL_EXTENSIONS",
    "SIDECAR_EXTENSIONS",
    "VIDEO_EXTENSIONS",
    "VideoMedia",
    "classify_download_type",
    "collect_download_items",
    "collect_image_urls",
    "collect_video_media",
    "is_http_url",
    "is_image_data_uri",
    "model_download_type",
    "url_extension",
]
