from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.config import OpenAIConfig
from app.services import openai_image
from app.services.openai_image import (
    GeneratedImage,
    build_openai_client,
    publish_image,
    request_images,
)

from conftest import FakeStorage


def test_build_openai_client_requires_key() -> None:
    with pytest.raises(ValueError):
        build_openai_client("")


def test_build_openai_client_injects_proxy(monkeypatch) -> None:
    fake_openai = MagicMock()
    fake_http = MagicMock()
    monkeypatch.setattr(openai_image, "OpenAI", fake_openai)
    monkeypatch.setattr(openai_image.httpx, "Client", fake_http)

    client, http_client = build_openai_client("sk-test", base_url="https://proxy.example.com/v1", proxy="http://p:8080")

    assert http_client is fake_http.return_value
    assert client is fake_openai.return_value
    kwargs = fake_openai.call_args.kwargs
    assert kwargs["api_key"] == "sk-test"
    assert kwargs["base_url"] == "https://proxy.example.com/v1"
    assert kwargs["http_client"] is fake_http.return_value
    assert fake_http.call_args.kwargs["proxy"] == "http://p:8080"


def test_request_images_collects_urls_and_payloads(monkeypatch) -> None:
    fake_openai = MagicMock()
    fake_openai.return_value.images.generate.return_value = SimpleNamespace(
        data=[
            SimpleNamespace(url="https://oai.example.com/a.png", b64_json=None),
            SimpleNamespace(url=None, b64_json=None),
            SimpleNamespace(url=None, b64_json="aGVsbWV0"),
        ]
    )
    monkeypatch.setattr(openai_image, "OpenAI", fake_openai)

    images = request_images(OpenAIConfig(api_key="sk-test", image_model="gpt-image-1"), "a vase", n=3)

    assert [image.url for image in images] == ["https://oai.example.com/a.png", None]
    assert images[1].b64_json == "aGVsbWV0"
    assert [image.seed for image in images] == [1, 3]
    fake_openai.return_value.images.generate.assert_called_once_with(
        model="gpt-image-1", prompt="a vase", size="1024x1024", n=3
    )


def test_request_images_closes_proxy_client(monkeypatch) -> None:
    fake_openai = MagicMock()
    fake_openai.return_value.images.generate.return_value = SimpleNamespace(data=[])
    fake_http = MagicMock()
    monkeypatch.setattr(openai_image, "OpenAI", fake_openai)
    monkeypatch.setattr(openai_image.httpx, "Client", fake_http)

    assert request_images(OpenAIConfig(api_key="sk", proxy="http://p:8080"), "x") == []
    fake_http.return_value.close.assert_called_once()


def test_publish_image_variants() -> None:
    storage = FakeStorage()
    disabled = FakeStorage(enabled=False)
    failing = FakeStorage(fail=True)
    inline = GeneratedImage(b64_json="aGVsbWV0")

    assert publish_image(GeneratedImage(url="https://oai.example.com/a.png"), storage, folder="f") == (
        "https://oai.example.com/a.png"
    )
    assert publish_image(inline, storage, folder="f") == "https://cdn.example.com/f/1.png"
    assert publish_image(inline, disabled, folder="f") == "data:image/png;base64,aGVsbWV0"
    assert publish_image(inline, failing, folder="f") == "data:image/png;base64,aGVsbWV0"
    assert publish_image(GeneratedImage(), storage, folder="f") is None
