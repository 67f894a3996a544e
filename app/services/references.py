"""Turn user supplied reference images into publicly fetchable URLs."""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from fastapi.concurrency import run_in_threadpool

from app.services.object_providers.errors import ReferenceDecodeFailure
from app.services.payload_scanner import is_http_url

logger = logging.getLogger(__name__)

_DATA_IMAGE_RX = re.compile(r"^data:(image/([a-z0-9.+-]+));base64,(.*)$", re.IGNORECASE | re.DOTALL)
_MIME_EXTENSIONS = {"jpeg": "jpg", "pjpeg": "jpg", "svg+xml": "svg", "x-icon": "ico"}


class Storage(Protocol):
    @property
    def enabled(self) -> bool:
        ...

    def upload(self, data: bytes, *, folder: str, ext: str, content_type: str) -> str | None:
        ...


@dataclass
class ReferenceAsset:
    raw: str | None = None
    resolved: str | None = None
    note: str | None = None

    @property
    def is_inline(self) -> bool:
        return bool(self.raw and _DATA_IMAGE_RX.match(self.raw))

    @property
    def usable(self) -> str | None:
        """Public URL when available, otherwise the inline payload."""

        if self.resolved:
            return self.resolved
        if self.is_inline:
            return self.raw
        return None


@dataclass
class ResolvedReferences:
    product: ReferenceAsset = field(default_factory=ReferenceAsset)
    brand: ReferenceAsset = field(default_factory=ReferenceAsset)

    @property
    def public_urls(self) -> list[str]:
        return [asset.resolved for asset in (self.product, self.brand) if asset.resolved]

    @property
    def usable(self) -> list[str]:
        return [value for value in (self.product.usable, self.brand.usable) if value]

    @property
    def notes(self) -> list[str]:
        return [asset.note for asset in (self.product, self.brand) if asset.note]


def extension_for_mime(mime: str) -> str:
    subtype = mime.split("/", 1)[-1].lower()
    ext = _MIME_EXTENSIONS.get(subtype, subtype)
    return re.sub(r"[^0-9a-z]", "", ext) or "png"


def decode_data_image(value: str) -> tuple[bytes, str]:
    """Return ``(bytes, mime)`` for an inline base64 image."""

    match = _DATA_IMAGE_RX.match(value)
    if not match:
        raise ReferenceDecodeFailure("not a base64 image data URI")
    mime = match.group(1).lower()
    encoded = re.sub(r"\s+", "", match.group(3))
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ReferenceDecodeFailure(f"invalid base64 payload: {exc}") from exc
    if not data:
        raise ReferenceDecodeFailure("empty image payload")
    return data, mime


async def resolve_reference(value: str | None, key_prefix: str, storage: Storage) -> ReferenceAsset:
    label = key_prefix.rstrip("/").rsplit("/", 1)[-1] or "reference"

    if not value:
        return ReferenceAsset()

    if is_http_url(value):
        return ReferenceAsset(raw=value, resolved=value)

    if not _DATA_IMAGE_RX.match(value):
        return ReferenceAsset(
            raw=value,
            note=f"The {label} reference has an invalid format and was ignored.",
        )

    if not storage.enabled:
        return ReferenceAsset(
            raw=value,
            note=(
                f"The {label} reference could not be published because blob storage is "
                "not configured; some providers may ignore it."
            ),
        )

    try:
        data, mime = decode_data_image(value)
    except ReferenceDecodeFailure as exc:
        logger.warning("Reference %s could not be decoded: %s", label, exc)
        return ReferenceAsset(raw=value, note=f"The {label} reference could not be decoded.")

    try:
        url = await run_in_threadpool(
            storage.upload,
            data,
            folder=key_prefix,
            ext=extension_for_mime(mime),
            content_type=mime,
        )
    except Exception as exc:  # noqa: BLE001 - storage failures degrade to no public URL
        logger.warning("Reference %s upload failed: %s", label, exc)
        url = None

    if not url:
        return ReferenceAsset(
            raw=value,
            note=f"The {label} reference upload failed; continuing without a public URL.",
        )
    return ReferenceAsset(raw=value, resolved=url)


async def resolve_references(
    product: str | None,
    brand: str | None,
    storage: Storage,
) -> ResolvedReferences:
    product_asset, brand_asset = await asyncio.gather(
        resolve_reference(product, "references/product", storage),
        resolve_reference(brand, "references/brand", storage),
    )
    return ResolvedReferences(product=product_asset, brand=brand_asset)


__all__ = [
    "ReferenceAsset",
    "ResolvedReferences",
    "decode_data_image",
    "extension_for_mime",
    "resolve_reference",
    "resolve_references",
]
