from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from podcast.fallback import call_with_fallback, ensure_providers, fallback_name
from podcast.types import ProviderContext, TtsRequest, TtsResult


class TtsProvider(ABC):
    name: str

    def warmup(self) -> None:
        return None

    @abstractmethod
    async def speak(self, request: TtsRequest, ctx: ProviderContext | None = None) -> TtsResult:
        raise NotImplementedError


class FallbackTtsProvider(TtsProvider):
    """Tries each wrapped synthesizer in order until one succeeds."""

    def __init__(self, providers: Sequence[TtsProvider]) -> None:
        self.providers = ensure_providers(providers)
        self.name = fallback_name(self.providers)

    def warmup(self) -> None:
        for provider in self.providers:
            try:
                provider.warmup()
            except Exception as exc:
                print(f"[tts] warmup skipped provider={provider.name} error={exc}")

    async def speak(self, request: TtsRequest, ctx: ProviderContext | None = None) -> TtsResult:
        return await call_with_fallback(self.providers, "speak", request, ctx)
