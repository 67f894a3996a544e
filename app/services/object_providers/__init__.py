"""Provider adapters used by the object generation orchestrator."""
from __future__ import annotations

from .base import DownloadItem, ObjectProvider, ProviderOutcome, RenderItem
from .errors import (
    ProviderConfigMissing,
    ProviderError,
    ProviderHttpFailure,
    ProviderJobFailure,
    ProviderTimeout,
)

__all__ = [
    "DownloadItem",
    "ObjectProvider",
    "ProviderConfigMissing",
    "ProviderError",
    "ProviderHttpFailure",
    "ProviderJobFailure",
    "ProviderOutcome",
    "ProviderTimeout",
    "RenderItem",
]
