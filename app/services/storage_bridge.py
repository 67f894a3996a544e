"""Thin wrapper around the R2 client for publishing reference and render images."""
from __future__ import annotations

import logging

from botocore.exceptions import BotoCoreError, ClientError

from app.services import r2_client

logger = logging.getLogger(__name__)


class BlobStorage:
    """Object storage facade handed to resolvers and providers.

    Tests substitute any object exposing ``enabled`` and ``upload``.
    """

    @property
    def enabled(self) -> bool:
        return r2_client.is_configured()

    def upload(self, data: bytes, *, folder: str, ext: str, content_type: str) -> str | None:
        """Persist *data* and return its public URL, or ``None`` on failure."""

        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("upload payload must be bytes")

        key = r2_client.make_key(folder, ext)
        try:
            url = r2_client.put_bytes(key, bytes(data), content_type=content_type)
        except (RuntimeError, ValueError, BotoCoreError, ClientError) as exc:
            # ValueError covers botocore rejecting a malformed endpoint URL
            logger.warning("Blob storage unavailable for key=%s: %s", key, exc)
            return None
        if url:
            logger.info("R2 upload ok key=%s url=%s", key, url)
        return url


__all__ = ["BlobStorage"]
