from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderFailure:
    provider: str
    message: str


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderConfigError(ProviderError):
    """A backend is missing a credential or required setting."""


class ProviderUnavailableError(ProviderError):
    """A backend is not installed or not enabled in this deployment."""


class ProviderCallError(ProviderError):
    """A backend was reached but the call failed.

    When raised by a fallback chain, ``failures`` lists every backend that was
    tried together with its error message, in the order they were attempted.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        failures: list[ProviderFailure] | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.failures = list(failures or [])


class AudioFormatError(ValueError):
    pass
