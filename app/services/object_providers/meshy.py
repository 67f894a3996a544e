"""Meshy text-to-3D adapter (job based)."""
from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from app.config import MeshyConfig
from app.services.object_request import GenerationRequest
from app.services.payload_scanner import (
    collect_download_items,
    collect_image_urls,
    is_http_url,
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

NEGATIVE_PROMPT = "low quality, blurry, artifacts, distorted geometry, clipping, broken topology"
MAX_POLLS = 25

_SUCCESS = {"SUCCEEDED", "COMPLETED"}
_FAILURE = {"FAILED", "CANCELED", "CANCELLED", "EXPIRED"}
_PREVIEW_LIST_KEYS = ("preview_urls", "preview_images")
_PREVIEW_KEYS = ("preview_url", "thumbnail_url", "image")


def _result_body(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict):
        result = payload.get("result")
        if isinstance(result, dict):
            return result
        return payload
    return {}


def _render(url: str, provider: str) -> RenderItem:
    return RenderItem(url=url, provider=provider, format=url_extension(url))


def decode_meshy_payload(payload: Any, provider: str) -> ProviderOutcome:
    """Map a Meshy task payload onto renders and downloads."""

    body = _result_body(payload)

    preview_urls: list[str] = []
    for key in _PREVIEW_LIST_KEYS:
        values = body.get(key)
        if isinstance(values, list):
            preview_urls = [item for item in values if isinstance(item, str) and item.strip()]
            break
    if not preview_urls:
        for key in _PREVIEW_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                preview_urls = [value.strip()]
                break

    downloads: list[DownloadItem] = []
    model_urls = body.get("model_urls")
    if isinstance(model_urls, dict):
        for fmt, url in model_urls.items():
            kind = model_download_type(url, str(fmt)) if is_http_url(url) else None
            # Meshy lists the .mtl material beside the .obj; only models count
            if kind:
                downloads.append(DownloadItem(url=url, type=kind, provider=provider))

    if not preview_urls and not downloads:
        preview_urls = collect_image_urls(body)
        downloads = collect_download_items(body, provider)

    return ProviderOutcome(
        provider_name=provider,
        renders=[_render(url, provider) for url in preview_urls],
        downloads=downloads,
    )


def _read_status(payload: Any) -> TaskStatus:
    status = (first_string(payload, "status", "state") or "").upper()
    if status in _FAILURE:
        return TaskStatus.FAILED
    if status in _SUCCESS:
        return TaskStatus.SUCCEEDED
    return TaskStatus.PROCESSING


def _failure_reason(payload: Any) -> str:
    return error_message(payload, "Meshy task failed.")


def _http_failure(provider: str, response: httpx.Response, default: str) -> ProviderHttpFailure:
    message = error_message(read_json(response), default)
    if re.search(r"NoMatchingRoute", message, re.IGNORECASE):
        message = "Meshy endpoint unavailable. Confirm that the key has access to Text-to-3D."
    return ProviderHttpFailure(provider, message, status_code=response.status_code)


class MeshyProvider:
    """providerA: POST creates a task, then poll until previews or models appear."""

    produces_downloads = True

    def __init__(
        self,
        config: MeshyConfig,
        *,
        key: str = "providerA",
        poll_interval: float = 2.5,
        max_polls: int = MAX_POLLS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.key = key
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._transport = transport

    @property
    def _task_url(self) -> str:
        return f"{self.config.api_base.rstrip('/')}/v2/text-to-3d"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def build_payload(self, request: GenerationRequest, references: ResolvedReferences) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mode": "preview",
            "prompt": request.composed_prompt,
            "negative_prompt": NEGATIVE_PROMPT,
        }
        if references.product.resolved:
            payload["reference_image_url"] = references.product.resolved
        if references.brand.resolved:
            payload["logo_image_url"] = references.brand.resolved
        return payload

    async def attempt(self, request: GenerationRequest, references: ResolvedReferences) -> ProviderOutcome:
        if not self.config.is_configured:
            raise ProviderConfigMissing(self.key, "MESHY_API_KEY is not configured")

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
            response = await client.post(
                self._task_url,
                json=self.build_payload(request, references),
                headers=self._headers(),
            )
            if response.status_code >= 400:
                raise _http_failure(self.key, response, "Meshy rejected the generation request.")

            initial = read_json(response)
            outcome = decode_meshy_payload(initial, self.key)
            # v2 answers {"result": "<task id>"}; older shapes nest or flatten it
            task_id = first_string(initial, "result", "task_id", "id", "taskId") or first_string(
                _result_body(initial), "task_id", "id"
            )

            if not outcome.has_artifacts and task_id:
                handle = AsyncTaskHandle(task_id=task_id, poll_url=f"{self._task_url}/{task_id}")
                logger.info("Meshy task submitted task=%s", task_id)

                async def fetch(current: AsyncTaskHandle) -> Any:
                    status_response = await client.get(current.poll_url, headers=self._headers())
                    if status_response.status_code >= 400:
                        raise _http_failure(self.key, status_response, "Meshy status check failed.")
                    return read_json(status_response)

                final = await poll_task(
                    handle,
                    provider=self.key,
                    fetch=fetch,
                    read_status=_read_status,
                    failure_reason=_failure_reason,
                    has_artifacts=lambda body: decode_meshy_payload(body, self.key).has_artifacts,
                    max_attempts=self.max_polls,
                    interval=self.poll_interval,
                )
                outcome = decode_meshy_payload(final, self.key)

        if not outcome.has_artifacts:
            raise ProviderJobFailure(self.key, "Meshy returned no previews of the object.")
        return outcome
