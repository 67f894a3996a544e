"""Error taxonomy shared by the object generation providers."""
from __future__ import annotations


class ProviderError(RuntimeError):
    """Base failure raised by a provider adapter."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message


class ProviderConfigMissing(ProviderError):
    """A credential or endpoint required by the provider is absent."""


class ProviderHttpFailure(ProviderError):
    """Non-2xx response; the message comes from the provider body when present."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(provider, message)
        self.status_code = status_code


class ProviderJobFailure(ProviderError):
    """A submitted job reported a failed or cancelled status."""


class ProviderTimeout(ProviderError):
    """The polling budget ran out before the job settled."""


class InvalidInput(ValueError):
    """The incoming request cannot be turned into a generation request."""


class ReferenceDecodeFailure(ValueError):
    """An inline reference image could not be decoded."""


class GenerationFailed(RuntimeError):
    """No provider produced anything usable."""

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = list(details or [])


__all__ = [
    "GenerationFailed",
    "InvalidInput",
    "ProviderConfigMissing",
    "ProviderError",
    "ProviderHttpFailure",
    "ProviderJobFailure",
    "ProviderTimeout",
    "ReferenceDecodeFailure",
]
