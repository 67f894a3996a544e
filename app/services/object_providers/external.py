"""Adapter for a self-hosted or third-party object generation endpoint."""
from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode, urljoin

import httpx

from app.config import ExternalObjectConfig
from app.services.object_request import GenerationRequest
from app.services.payload_scanner import (
    classify_download_type,
    collect_download_items,
    collect_image_urls,
    is_http_url,
    is_image_data_uri,
    model_download_type,
    url_extension,
)
from app.services.references import ResolvedReferences

from .base import (
    HTTP_TIMEOUT,
    DownloadItem,
    ProviderOutcome,
    RenderItem,
    error_message,
    first_string,
    read_json,
)
from .errors import ProviderConfigMissing, ProviderHttpFailure, ProviderJobFailure
from .polling import AsyncTaskHandle, TaskStatus, poll_task

logger = logging.getLogger(__name__)

MAX_POLLS = 25

_SUCCESS = {"succeeded", "success", "completed", "complete", "done", "finished"}
_FAILURE = {"failed", "failure", "error", "canceled", "cancelled"}
_POLL_URL_KEYS = ("pollUrl", "poll_url", "statusUrl", "status_url")


def _label(value: Any) -> str | None:
    """Provider supplied metadata survives only as a non-empty string."""

    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_render(entry: Any, provider: str) -> RenderItem | None:
    if isinstance(entry, str):
        if is_http_url(entry) or is_image_data_uri(entry):
            return RenderItem(url=entry, provider=provider, format=url_extension(entry))
        return None
    if isinstance(entry, dict):
        url = entry.get("url") or entry.get("src")
        if isinstance(url, str) and (is_http_url(url) or is_image_data_uri(url)):
            return RenderItem(
                url=url,
                provider=provider,
                format=_label(entry.get("format")) or url_extension(url),
                angle=_label(entry.get("angle")) or _label(entry.get("view")),
            )
    return None


def _as_download(entry: Any, provider: str) -> DownloadItem | None:
    if isinstance(entry, str) and is_http_url(entry):
        return DownloadItem(url=entry, type=classify_download_type(entry), provider=provider)
    if isinstance(entry, dict):
        url = entry.get("url") or entry.get("href")
        if is_http_url(url):
            hint = _label(entry.get("type")) or _label(entry.get("format"))
            return DownloadItem(url=url, type=classify_download_type(url, hint), provider=provider)
    return None


def _body(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    for key in ("result", "output", "data"):
        nested = payload.get(key)
        if isinstance(nested, dict):
            return nested
    return payload


def decode_external_payload(payload: Any, provider: str) -> ProviderOutcome:
    body = _body(payload)

    renders: list[RenderItem] = []
    for key in ("renders", "images", "previews"):
        entries = body.get(key)
        if isinstance(entries, list):
            renders = [item for item in (_as_render(e, provider) for e in entries) if item]
            if renders:
                break

    downloads: dict[str, DownloadItem] = {}
    entries = body.get("downloads")
    if isinstance(entries, list):
        for entry in entries:
            item = _as_download(entry, provider)
            if item:
                downloads.setdefault(item.url, item)
    model_urls = body.get("model_urls") or body.get("modelUrls")
    if isinstance(model_urls, dict):
        for fmt, url in model_urls.items():
            kind = model_download_type(url, str(fmt)) if is_http_url(url) else None
            if kind:
                downloads.setdefault(url, DownloadItem(url=url, type=kind, provider=provider))

    if not renders and not downloads:
        renders = [
            RenderItem(url=url, provider=provider, format=url_extension(url))
            for url in collect_image_urls(body)
        ]
        downloads = {item.url: item for item in collect_download_items(body, provider)}

    return ProviderOutcome(provider_name=provider, renders=renders, downloads=list(downloads.values()))


def _read_status(payload: Any) -> TaskStatus:
    status = (first_string(payload, "status", "state") or first_string(_body(payload), "status") or "").lower()
    if status in _FAILURE:
        return TaskStatus.FAILED
    if status in _SUCCESS:
        return TaskStatus.SUCCEEDED
    return TaskStatus.PROCESSING


def _failure_reason(payload: Any) -> str:
    return error_message(payload, "External provider job failed.")


class ExternalObjectProvider:
    """providerB: configurable HTTP endpoint following the submit/poll convention."""

    produces_downloads = True

    def __init__(
        self,
        config: ExternalObjectConfig,
        *,
        key: str = "providerB",
        poll_interval: float = 2.5,
        max_polls: int = MAX_POLLS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.key = key
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def discover_poll_url(self, payload: Any, task_id: str) -> str:
        """Explicit response fields win; otherwise ``<endpoint>/status?taskId=``.

        Relative values such as ``/jobs/t1`` are resolved against the endpoint.
        """

        endpoint = (self.config.endpoint or "").rstrip("/")
        for source in (payload, _body(payload)):
            url = first_string(source, *_POLL_URL_KEYS)
            links = source.get("urls") if isinstance(source, dict) else None
            if not url and isinstance(links, dict):
                url = _label(links.get("get"))
            if url:
                return url if is_http_url(url) else urljoin(endpoint, url)
        return f"{endpoint}/status?{urlencode({'taskId': task_id})}"

    def build_payload(self, request: GenerationRequest, references: ResolvedReferences) -> dict[str, Any]:
        return {
            "prompt": request.prompt,
            "composedPrompt": request.composed_prompt,
            "material": request.material,
            "lighting": request.lighting,
            "detail": request.detail,
            "references": {
                "product": references.product.resolved,
                "brand": references.brand.resolved,
            },
            "rawReferences": {
                "product": references.product.raw if references.product.is_inline else None,
                "brand": references.brand.raw if references.brand.is_inline else None,
            },
        }

    async def attempt(self, request: GenerationRequest, references: ResolvedReferences) -> ProviderOutcome:
        if not self.config.is_configured:
            raise ProviderConfigMissing(
                self.key, "OBJECT_PROVIDER_ENDPOINT and OBJECT_PROVIDER_TOKEN must be configured"
            )

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
            response = await client.post(
                self.config.endpoint,
                json=self.build_payload(request, references),
                headers=self._headers(),
            )
            initial = read_json(response)
            if response.status_code >= 400:
                raise ProviderHttpFailure(
                    self.key,
                    error_message(initial, "External provider rejected the request."),
                    status_code=response.status_code,
                )

            outcome = decode_external_payload(initial, self.key)
            task_id = first_string(initial, "taskId", "task_id", "jobId", "id") or first_string(
                _body(initial), "taskId", "task_id", "id"
            )

            if not outcome.has_artifacts and task_id:
                handle = AsyncTaskHandle(task_id=task_id, poll_url=self.discover_poll_url(initial, task_id))
                logger.info("External object task submitted task=%s poll=%s", task_id, handle.poll_url)

                async def fetch(current: AsyncTaskHandle) -> Any:
                    status_response = await client.get(current.poll_url, headers=self._headers())
                    body = read_json(status_response)
                    if status_response.status_code >= 400:
                        raise ProviderHttpFailure(
                            self.key,
                            error_message(body, "External provider status check failed."),
                            status_code=status_response.status_code,
                        )
                    return body

                final = await poll_task(
                    handle,
                    provider=self.key,
                    fetch=fetch,
                    read_status=_read_status,
                    failure_reason=_failure_reason,
                    has_artifacts=lambda body: decode_external_payload(body, self.key).has_artifacts,
                    max_attempts=self.max_polls,
                    interval=self.poll_interval,
                )
                outcome = decode_external_payload(final, self.key)

        if not outcome.has_artifacts:
            raise ProviderJobFailure(self.key, "External provider returned no renders or downloads.")
        return outcome
