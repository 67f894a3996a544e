"""Cloudflare R2 (S3 compatible) helpers used to publish generated assets."""
from __future__ import annotations

import datetime as _dt
import logging
import re
import uuid
from functools import lru_cache
from typing import Optional

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from app.config import _env

logger = logging.getLogger(__name__)


def _bucket() -> str | None:
    return _env("R2_BUCKET", "S3_BUCKET")


def is_configured() -> bool:
    """True when credentials, endpoint and bucket are all present."""

    return bool(
        _env("R2_ENDPOINT", "S3_ENDPOINT")
        and _env("R2_ACCESS_KEY_ID", "R2_ACCESS_KEY", "S3_ACCESS_KEY")
        and _env("R2_SECRET_ACCESS_KEY", "R2_SECRET_KEY", "S3_SECRET_KEY")
        and _bucket()
    )


@lru_cache(maxsize=1)
def _session() -> boto3.session.Session:
    return boto3.session.Session()


@lru_cache(maxsize=1)
def _client() -> BaseClient:
    endpoint = _env("R2_ENDPOINT", "S3_ENDPOINT")
    access = _env("R2_ACCESS_KEY_ID", "R2_ACCESS_KEY", "S3_ACCESS_KEY")
    secret = _env("R2_SECRET_ACCESS_KEY", "R2_SECRET_KEY", "S3_SECRET_KEY")
    region = _env("R2_REGION", "S3_REGION") or "auto"
    if not (endpoint and access and secret):
        raise RuntimeError("R2 storage is not configured")
    return _session().client(
        "s3",
        endpoint_url=endpoint,
        aws_access_key_id=access,
        aws_secret_access_key=secret,
        region_name=region,
    )


def make_key(folder: str, ext: str) -> str:
    folder = (folder or "uploads").strip("/ ") or "uploads"
    date_part = _dt.datetime.now(_dt.timezone.utc).strftime("%Y%m%d")
    safe_ext = re.sub(r"[^0-9A-Za-z]", "", ext or "") or "bin"
    return f"{folder}/{date_part}/{uuid.uuid4().hex}.{safe_ext}"


def public_url_for(key: str) -> str | None:
    key = key.lstrip("/")
    base = _env("R2_PUBLIC_BASE", "R2_PUBLIC_BASE_URL", "S3_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key}"
    endpoint = _env("R2_ENDPOINT", "S3_ENDPOINT")
    bucket = _bucket()
    if endpoint and bucket:
        return f"{endpoint.rstrip('/')}/{bucket}/{key}"
    return None


def put_bytes(key: str, data: bytes, *, content_type: str = "application/octet-stream") -> Optional[str]:
    bucket = _bucket()
    if not bucket:
        return None
    client = _client()
    try:
        client.put_object(
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
    except (ClientError, BotoCoreError) as exc:
        logger.warning("R2 put failed: bucket=%s key=%s err=%s", bucket, key, exc)
        return None

    return public_url_for(key)


__all__ = [
    "is_configured",
    "make_key",
    "public_url_for",
    "put_bytes",
]
