"""Replicate prediction lifecycle shared by the object, image and video services.

A prediction is created against a model *version*; the version id is looked
up once per model through ``GET /models/{owner}/{name}`` unless pinned in the
environment, then kept in a :class:`ModelVersionCache`.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx

from app.config import ReplicateConfig
from app.services.object_providers.base import HTTP_TIMEOUT, error_message, first_string, read_json
from app.services.object_providers.errors import ProviderHttpFailure, ProviderJobFailure
from app.services.object_providers.polling import AsyncTaskHandle, TaskStatus, poll_task
from app.services.payload_scanner import is_http_url

logger = logging.getLogger(__name__)

RUNNING_STATUSES = frozenset({"starting", "processing", "queued", "pending"})


class ModelVersionCache:
    """Model name -> version id, populated on first read.

    Two concurrent first reads may both hit the metadata endpoint; the
    resolution is idempotent so the later write simply overwrites an
    equivalent value.
    """

    def __init__(self) -> None:
        self._versions: dict[str, str] = {}

    def get(self, model: str) -> str | None:
        return self._versions.get(model)

    async def resolve(
        self,
        model: str,
        loader: Callable[[str], Awaitable[str]],
        *,
        pinned: str | None = None,
    ) -> str:
        if pinned:
            self._versions[model] = pinned
            return pinned
        cached = self._versions.get(model)
        if cached:
            return cached
        version = await loader(model)
        self._versions[model] = version
        return version


def read_prediction_status(payload: Any) -> TaskStatus:
    status = (first_string(payload, "status") or "").lower()
    if status in {"failed", "canceled", "cancelled"}:
        return TaskStatus.FAILED
    if status == "succeeded":
        return TaskStatus.SUCCEEDED
    return TaskStatus.PROCESSING


def prediction_failure_reason(payload: Any) -> str:
    return error_message(payload, "Replicate prediction failed or was cancelled.")


class ReplicatePredictions:
    """Version lookup plus create-then-poll for one provider key."""

    def __init__(
        self,
        config: ReplicateConfig,
        *,
        provider: str,
        versions: ModelVersionCache | None = None,
        poll_interval: float = 2.5,
        max_polls: int = 45,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.versions = versions or ModelVersionCache()
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self.config.api_base.rstrip("/")

    def session(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def http_failure(self, response: httpx.Response, default: str) -> ProviderHttpFailure:
        body = read_json(response)
        message = error_message(body, default)
        details = body.get("details") if isinstance(body, dict) else None
        if isinstance(details, str) and details.strip() and details.strip() != message:
            message = f"{message} {details.strip()}"
        return ProviderHttpFailure(self.provider, message, status_code=response.status_code)

    async def _load_version(self, client: httpx.AsyncClient, model: str) -> str:
        response = await client.get(f"{self.base_url}/models/{model}", headers=self._headers())
        if response.status_code >= 400:
            raise self.http_failure(
                response,
                f"Unable to resolve the latest version of {model}. Pin a model version to skip the lookup.",
            )
        body = read_json(response)
        latest = body.get("latest_version") if isinstance(body, dict) else None
        version = first_string(latest, "id")
        if not version:
            raise ProviderJobFailure(self.provider, f"Replicate model {model} exposes no version.")
        return version

    async def resolve_version(self, client: httpx.AsyncClient, model: str, *, pinned: str | None = None) -> str:
        return await self.versions.resolve(
            model,
            lambda name: self._load_version(client, name),
            pinned=pinned,
        )

    async def predict(self, client: httpx.AsyncClient, version: str, model_input: dict[str, Any]) -> Any:
        """Create a prediction and return its settled payload.

        Raises :class:`ProviderHttpFailure`, :class:`ProviderJobFailure` or
        :class:`ProviderTimeout`.
        """

        response = await client.post(
            f"{self.base_url}/predictions",
            json={"version": version, "input": model_input},
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise self.http_failure(response, "Replicate rejected the prediction.")

        prediction = read_json(response)
        prediction_id = first_string(prediction, "id")
        if not prediction_id:
            raise ProviderJobFailure(self.provider, "Replicate returned no prediction id.")

        status = (first_string(prediction, "status") or "").lower()
        if status and status not in RUNNING_STATUSES:
            if read_prediction_status(prediction) is TaskStatus.FAILED:
                raise ProviderJobFailure(self.provider, prediction_failure_reason(prediction))
            return prediction

        links = prediction.get("urls") if isinstance(prediction, dict) else None
        poll_url = links.get("get") if isinstance(links, dict) else None
        handle = AsyncTaskHandle(
            task_id=prediction_id,
            poll_url=poll_url if is_http_url(poll_url) else f"{self.base_url}/predictions/{prediction_id}",
            status=TaskStatus.PROCESSING,
        )
        logger.info("Replicate prediction submitted provider=%s id=%s", self.provider, prediction_id)

        async def fetch(current: AsyncTaskHandle) -> Any:
            status_response = await client.get(current.poll_url, headers=self._headers())
            if status_response.status_code >= 400:
                raise self.http_failure(status_response, "Replicate status check failed.")
            return read_json(status_response)

        return await poll_task(
            handle,
            provider=self.provider,
            fetch=fetch,
            read_status=read_prediction_status,
            failure_reason=prediction_failure_reason,
            max_attempts=self.max_polls,
            interval=self.poll_interval,
        )


__all__ = [
    "ModelVersionCache",
    "RUNNING_STATUSES",
    "ReplicatePredictions",
    "prediction_failure_reason",
    "read_prediction_status",
]
