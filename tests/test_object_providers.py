import asyncio
import json

import httpx
import pytest

from app.config import ExternalObjectConfig, MeshyConfig, OpenAIConfig, ReplicateConfig
from app.services.object_providers import openai_fallback
from app.services.object_providers.errors import (
    ProviderConfigMissing,
    ProviderHttpFailure,
    ProviderJobFailure,
    ProviderTimeout,
)
from app.services.object_providers.external import ExternalObjectProvider, decode_external_payload
from app.services.object_providers.meshy import MeshyProvider, decode_meshy_payload
from app.services.object_providers.openai_fallback import OpenAIImageFallbackProvider
from app.services.object_providers.replicate import (
    ModelVersionCache,
    ReplicateProvider,
    decode_replicate_output,
)
from app.services.openai_image import GeneratedImage
from app.services.references import ReferenceAsset, ResolvedReferences

from conftest import FakeStorage


def _recording_transport(handler):
    calls: list[httpx.Request] = []

    def wrapped(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return handler(request, len(calls))

    return httpx.MockTransport(wrapped), calls


def _no_refs() -> ResolvedReferences:
    return ResolvedReferences()


# --- Meshy -----------------------------------------------------------------


def test_meshy_returns_immediate_result(helmet_request) -> None:
    def handler(request, n):
        return httpx.Response(
            200,
            json={
                "result": {
                    "thumbnail_url": "https://assets.meshy.ai/t/preview.png",
                    "model_urls": {"glb": "https://assets.meshy.ai/t/model.glb"},
                }
            },
        )

    transport, calls = _recording_transport(handler)
    provider = MeshyProvider(MeshyConfig(api_key="msy"), transport=transport, poll_interval=0)

    outcome = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert [item.type for item in outcome.downloads] == ["glb"]
    assert outcome.renders[0].url == "https://assets.meshy.ai/t/preview.png"
    assert len(calls) == 1
    body = json.loads(calls[0].content)
    assert body["mode"] == "preview"
    assert body["prompt"] == helmet_request.composed_prompt
    assert calls[0].headers["Authorization"] == "Bearer msy"


def test_meshy_polls_until_succeeded(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(202, json={"result": "task-9"})
        if n < 3:
            return httpx.Response(200, json={"status": "IN_PROGRESS", "progress": 40})
        return httpx.Response(
            200,
            json={
                "status": "SUCCEEDED",
                "thumbnail_url": "https://assets.meshy.ai/task-9/thumb.png",
                "model_urls": {"glb": "https://assets.meshy.ai/task-9/m.glb", "usdz": "https://assets.meshy.ai/task-9/m.usdz"},
            },
        )

    transport, calls = _recording_transport(handler)
    references = ResolvedReferences(
        product=ReferenceAsset(raw="https://img.example.com/p.png", resolved="https://img.example.com/p.png")
    )
    provider = MeshyProvider(MeshyConfig(api_key="msy"), transport=transport, poll_interval=0)

    outcome = asyncio.run(provider.attempt(helmet_request, references))

    assert {item.type for item in outcome.downloads} == {"glb", "usdz"}
    assert str(calls[1].url) == "https://api.meshy.ai/v2/text-to-3d/task-9"
    assert json.loads(calls[0].content)["reference_image_url"] == "https://img.example.com/p.png"
    assert len(calls) == 3


def test_meshy_failed_task_raises_with_reason(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(202, json={"result": "task-1"})
        return httpx.Response(200, json={"status": "FAILED", "task_error": {"message": "prompt rejected"}})

    transport, _ = _recording_transport(handler)
    provider = MeshyProvider(MeshyConfig(api_key="msy"), transport=transport, poll_interval=0)

    with pytest.raises(ProviderJobFailure, match="prompt rejected"):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))


def test_meshy_exhausted_polls_raise_timeout(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(202, json={"result": "task-1"})
        return httpx.Response(200, json={"status": "PENDING"})

    transport, calls = _recording_transport(handler)
    provider = MeshyProvider(MeshyConfig(api_key="msy"), transport=transport, poll_interval=0, max_polls=3)

    with pytest.raises(ProviderTimeout):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))
    assert len(calls) == 4


def test_meshy_no_matching_route_message(helmet_request) -> None:
    def handler(request, n):
        return httpx.Response(404, json={"message": "NoMatchingRoute"})

    transport, _ = _recording_transport(handler)
    provider = MeshyProvider(MeshyConfig(api_key="msy"), transport=transport)

    with pytest.raises(ProviderHttpFailure, match="Text-to-3D") as excinfo:
        asyncio.run(provider.attempt(helmet_request, _no_refs()))
    assert excinfo.value.status_code == 404


def test_meshy_requires_key(helmet_request) -> None:
    with pytest.raises(ProviderConfigMissing):
        asyncio.run(MeshyProvider(MeshyConfig()).attempt(helmet_request, _no_refs()))


def test_decode_meshy_payload_falls_back_to_scanner() -> None:
    outcome = decode_meshy_payload(
        {"result": {"assets": [{"file": "https://cdn.example.com/x.obj"}, {"render": "https://cdn.example.com/r"}]}},
        "providerA",
    )

    assert [item.url for item in outcome.downloads] == ["https://cdn.example.com/x.obj"]
    assert [item.url for item in outcome.renders] == ["https://cdn.example.com/r"]


def test_meshy_material_file_is_not_a_download() -> None:
    outcome = decode_meshy_payload(
        {
            "status": "SUCCEEDED",
            "thumbnail_url": "https://assets.meshy.ai/t/preview.png",
            "model_urls": {
                "glb": "https://assets.meshy.ai/t/model.glb",
                "obj": "https://assets.meshy.ai/t/model.obj",
                "mtl": "https://assets.meshy.ai/t/model.mtl",
            },
        },
        "providerA",
    )

    assert [(item.url, item.type) for item in outcome.downloads] == [
        ("https://assets.meshy.ai/t/model.glb", "glb"),
        ("https://assets.meshy.ai/t/model.obj", "obj"),
    ]


# --- external endpoint -----------------------------------------------------


def test_external_derives_poll_url(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(200, json={"taskId": "abc 1", "status": "queued"})
        return httpx.Response(
            200,
            json={
                "status": "completed",
                "result": {
                    "renders": [{"url": "https://objects.example.com/r/front.png", "angle": "front"}],
                    "downloads": [{"url": "https://objects.example.com/d/asset", "type": "obj"}],
                },
            },
        )

    transport, calls = _recording_transport(handler)
    provider = ExternalObjectProvider(
        ExternalObjectConfig(endpoint="https://objects.example.com/generate", token="tok"),
        transport=transport,
        poll_interval=0,
    )

    outcome = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert calls[1].url.path == "/generate/status"
    assert calls[1].url.params["taskId"] == "abc 1"
    assert outcome.downloads[0].type == "obj"
    assert outcome.renders[0].angle == "front"


def test_external_prefers_explicit_poll_url() -> None:
    provider = ExternalObjectProvider(ExternalObjectConfig(endpoint="https://objects.example.com/generate", token="t"))

    assert provider.discover_poll_url({"statusUrl": "https://jobs.example.com/42"}, "42") == "https://jobs.example.com/42"
    assert (
        provider.discover_poll_url({"data": {"urls": {"get": "https://jobs.example.com/q/42"}}}, "42")
        == "https://jobs.example.com/q/42"
    )
    assert provider.discover_poll_url({"statusUrl": "/gen/jobs/t1"}, "t1") == "https://objects.example.com/gen/jobs/t1"


def test_external_relative_status_url_is_polled_on_endpoint_host(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(200, json={"taskId": "t1", "statusUrl": "/gen/jobs/t1"})
        return httpx.Response(
            200,
            json={"status": "done", "downloads": ["https://objects.example.com/d/t1.glb"]},
        )

    transport, calls = _recording_transport(handler)
    provider = ExternalObjectProvider(
        ExternalObjectConfig(endpoint="https://objects.example.com/generate", token="tok"),
        transport=transport,
        poll_interval=0,
    )

    outcome = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert str(calls[1].url) == "https://objects.example.com/gen/jobs/t1"
    assert [item.url for item in outcome.downloads] == ["https://objects.example.com/d/t1.glb"]


def test_external_non_string_render_metadata_is_dropped(helmet_request) -> None:
    def handler(request, n):
        return httpx.Response(
            200,
            json={
                "renders": [{"url": "https://objects.example.com/r/a.png", "angle": 90, "format": 3}],
                "downloads": ["https://objects.example.com/d/m.glb"],
            },
        )

    transport, _ = _recording_transport(handler)
    provider = ExternalObjectProvider(
        ExternalObjectConfig(endpoint="https://objects.example.com/generate", token="tok"),
        transport=transport,
        poll_interval=0,
    )

    outcome = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert outcome.renders[0].angle is None
    assert outcome.renders[0].format == "png"
    assert outcome.downloads[0].type == "glb"


def test_external_failed_status(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(200, json={"id": "j1"})
        return httpx.Response(200, json={"state": "error", "message": "GPU out of memory"})

    transport, _ = _recording_transport(handler)
    provider = ExternalObjectProvider(
        ExternalObjectConfig(endpoint="https://objects.example.com/generate", token="tok"),
        transport=transport,
        poll_interval=0,
    )

    with pytest.raises(ProviderJobFailure, match="GPU out of memory"):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))


def test_external_requires_endpoint(helmet_request) -> None:
    with pytest.raises(ProviderConfigMissing):
        asyncio.run(ExternalObjectProvider(ExternalObjectConfig(token="t")).attempt(helmet_request, _no_refs()))


def test_decode_external_payload_reads_model_urls() -> None:
    outcome = decode_external_payload({"output": {"modelUrls": {"glb": "https://o.example.com/a"}}}, "providerB")

    assert [(item.url, item.type) for item in outcome.downloads] == [("https://o.example.com/a", "glb")]


# --- Replicate -------------------------------------------------------------


def _replicate(transport, **kwargs) -> ReplicateProvider:
    config = ReplicateConfig(api_token="r8", model="acme/mesh-maker", version=kwargs.pop("version", None))
    return ReplicateProvider(config, transport=transport, poll_interval=0, **kwargs)


def test_replicate_resolves_and_caches_version(helmet_request) -> None:
    def handler(request, n):
        if request.url.path == "/v1/models/acme/mesh-maker":
            return httpx.Response(200, json={"latest_version": {"id": "v42"}})
        if request.method == "POST":
            return httpx.Response(201, json={"id": f"pred-{n}", "status": "starting"})
        return httpx.Response(200, json={"status": "succeeded", "output": "https://replicate.delivery/x/mesh.glb"})

    transport, calls = _recording_transport(handler)
    cache = ModelVersionCache()
    provider = _replicate(transport, versions=cache)

    first = asyncio.run(provider.attempt(helmet_request, _no_refs()))
    second = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    model_lookups = [c for c in calls if c.url.path.startswith("/v1/models/")]
    assert len(model_lookups) == 1
    assert cache.get("acme/mesh-maker") == "v42"
    assert first.downloads[0].type == "glb"
    assert second.downloads[0].url == "https://replicate.delivery/x/mesh.glb"
    submitted = json.loads([c for c in calls if c.method == "POST"][0].content)
    assert submitted == {"version": "v42", "input": {"prompt": helmet_request.composed_prompt}}


def test_replicate_pinned_version_skips_lookup(helmet_request) -> None:
    def handler(request, n):
        assert not request.url.path.startswith("/v1/models/")
        return httpx.Response(201, json={"id": "p1", "status": "succeeded", "output": ["https://r.example.com/a.glb"]})

    transport, _ = _recording_transport(handler)
    cache = ModelVersionCache()
    provider = _replicate(transport, version="pinned-1", versions=cache)

    asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert cache.get("acme/mesh-maker") == "pinned-1"


def test_replicate_tries_next_schema_after_failure(helmet_request) -> None:
    submitted: list[dict] = []

    def handler(request, n):
        payload = json.loads(request.content)
        submitted.append(payload["input"])
        if "images" in payload["input"]:
            return httpx.Response(422, json={"detail": "- input: images is not allowed"})
        return httpx.Response(
            201,
            json={
                "id": "p2",
                "status": "succeeded",
                "output": {"model_file": "https://r.example.com/m.glb", "render": "https://r.example.com/r.png"},
            },
        )

    transport, _ = _recording_transport(handler)
    references = ResolvedReferences(
        product=ReferenceAsset(raw="https://img.example.com/p.png", resolved="https://img.example.com/p.png")
    )
    provider = _replicate(transport, version="v1")

    outcome = asyncio.run(provider.attempt(helmet_request, references))

    assert [sorted(item) for item in submitted] == [["images", "prompt"], ["image", "prompt"]]
    assert submitted[1]["image"] == "https://img.example.com/p.png"
    assert outcome.downloads[0].url == "https://r.example.com/m.glb"
    assert any("image" in note for note in outcome.notes)


def test_replicate_failed_prediction_and_empty_outputs(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p3", "status": "starting"})
        return httpx.Response(200, json={"status": "failed", "error": "CUDA error"})

    transport, _ = _recording_transport(handler)
    provider = _replicate(transport, version="v1")

    with pytest.raises(ProviderJobFailure, match="CUDA error"):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))


def test_replicate_poll_budget_raises_timeout_per_schema(helmet_request) -> None:
    def handler(request, n):
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p4", "status": "processing"})
        return httpx.Response(200, json={"status": "processing"})

    transport, calls = _recording_transport(handler)
    provider = _replicate(transport, version="v1", max_polls=2)

    with pytest.raises(ProviderJobFailure, match="did not finish"):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))
    assert len(calls) == 3


def test_decode_replicate_output_splits_renders_and_downloads() -> None:
    outcome = decode_replicate_output(
        {"output": ["https://r.example.com/view.png", "https://r.example.com/mesh.stl"]}, "providerC"
    )

    assert [item.url for item in outcome.renders] == ["https://r.example.com/view.png"]
    assert [item.type for item in outcome.downloads] == ["stl"]


# --- 2-D fallback ----------------------------------------------------------


def _fake_images(*images):
    def fake(config, prompt, *, n=1, **kwargs):
        fake.calls.append({"prompt": prompt, "n": n})
        return list(images)

    fake.calls = []
    return fake


def test_fallback_inlines_images_without_storage(monkeypatch, helmet_request, disabled_storage) -> None:
    fake = _fake_images(GeneratedImage(b64_json="aGVsbWV0"), GeneratedImage(b64_json="aGVsbWV0Mg=="))
    monkeypatch.setattr(openai_fallback, "request_images", fake)
    provider = OpenAIImageFallbackProvider(OpenAIConfig(api_key="sk-test"), disabled_storage)

    outcome = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert [item.url for item in outcome.renders] == [
        "data:image/png;base64,aGVsbWV0",
        "data:image/png;base64,aGVsbWV0Mg==",
    ]
    assert [item.angle for item in outcome.renders] == ["front", "three-quarter"]
    assert outcome.downloads == []
    assert fake.calls[0]["n"] == 2
    assert fake.calls[0]["prompt"].startswith(helmet_request.composed_prompt)
    assert not OpenAIImageFallbackProvider.produces_downloads


def test_fallback_publishes_to_storage(monkeypatch, helmet_request, storage) -> None:
    monkeypatch.setattr(
        openai_fallback,
        "request_images",
        _fake_images(GeneratedImage(b64_json="aGVsbWV0"), GeneratedImage(url="https://oai.example.com/b.png")),
    )
    provider = OpenAIImageFallbackProvider(OpenAIConfig(api_key="sk-test"), storage)

    outcome = asyncio.run(provider.attempt(helmet_request, _no_refs()))

    assert [item.url for item in outcome.renders] == [
        "https://cdn.example.com/renders/fallback/1.png",
        "https://oai.example.com/b.png",
    ]
    assert storage.uploads[0]["data"] == b"helmet"


def test_fallback_without_images_fails(monkeypatch, helmet_request, storage) -> None:
    monkeypatch.setattr(openai_fallback, "request_images", _fake_images())
    provider = OpenAIImageFallbackProvider(OpenAIConfig(api_key="sk-test"), storage)

    with pytest.raises(ProviderJobFailure):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))


def test_fallback_requires_key(helmet_request, storage) -> None:
    with pytest.raises(ProviderConfigMissing):
        asyncio.run(OpenAIImageFallbackProvider(OpenAIConfig(), storage).attempt(helmet_request, _no_refs()))


def test_fallback_storage_errors_become_job_failures(monkeypatch, helmet_request) -> None:
    monkeypatch.setattr(openai_fallback, "request_images", _fake_images(GeneratedImage(b64_json="aGVsbWV0")))
    provider = OpenAIImageFallbackProvider(
        OpenAIConfig(api_key="sk-test"), FakeStorage(error=ValueError("Invalid endpoint"))
    )

    with pytest.raises(ProviderJobFailure, match="Invalid endpoint"):
        asyncio.run(provider.attempt(helmet_request, _no_refs()))
