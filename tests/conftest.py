from __future__ import annotations

import pytest

from app.services.object_providers.base import DownloadItem, ProviderOutcome, RenderItem
from app.services.object_request import normalize_request


class FakeStorage:
    """In-memory stand-in for the R2 bridge."""

    def __init__(self, enabled: bool = True, fail: bool = False, error: Exception | None = None) -> None:
        self.enabled = enabled
        self.fail = fail
        self.error = error
        self.uploads: list[dict] = []

    def upload(self, data: bytes, *, folder: str, ext: str, content_type: str) -> str | None:
        self.uploads.append({"data": data, "folder": folder, "ext": ext, "content_type": content_type})
        if self.error is not None:
            raise self.error
        if self.fail:
            return None
        return f"https://cdn.example.com/{folder}/{len(self.uploads)}.{ext}"


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def disabled_storage() -> FakeStorage:
    return FakeStorage(enabled=False)


@pytest.fixture
def helmet_request():
    return normalize_request(
        {"prompt": "chrome helmet", "material": "metallic", "lighting": "studio", "detail": 70}
    )


class FakeProvider:
    """Scripted provider: returns fixed artifacts or raises ``error``."""

    def __init__(self, key, *, renders=(), downloads=(), error=None, produces_downloads=True, notes=()):
        self.key = key
        self.produces_downloads = produces_downloads
        self.renders = [RenderItem(url=url, provider=key) for url in renders]
        self.downloads = [DownloadItem(url=url, type="glb", provider=key) for url in downloads]
        self.error = error
        self.notes = list(notes)
        self.calls = 0

    async def attempt(self, request, references):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ProviderOutcome(
            provider_name=self.key,
            renders=list(self.renders),
            downloads=list(self.downloads),
            notes=list(self.notes),
        )
