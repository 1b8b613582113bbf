from __future__ import annotations

import os
import threading
from typing import Callable

from podcast.errors import ProviderConfigError
from podcast.generator import FallbackLlmProvider, LlmProvider, MockLlmProvider, OpenRouterLlmProvider
from podcast.tts_base import FallbackTtsProvider, TtsProvider
from podcast.tts_kokoro import KokoroProvider
from podcast.tts_mock import MockTtsProvider
from podcast.tts_voicevox import VoiceVoxProvider

DEFAULT_PROVIDER = "mock"

LLM_FACTORIES: dict[str, Callable[[], LlmProvider]] = {
    "mock": MockLlmProvider,
    "openrouter": OpenRouterLlmProvider,
}

TTS_FACTORIES: dict[str, Callable[[], TtsProvider]] = {
    "mock": MockTtsProvider,
    "kokoro": KokoroProvider,
    "voicevox": VoiceVoxProvider,
}

_INSTANCES: dict[tuple[str, str], object] = {}
_LOCK = threading.Lock()


def resolve_provider_list(value: str | None, default: str = DEFAULT_PROVIDER) -> list[str]:
    names = [item.strip().lower() for item in (value or "").split(",") if item.strip()]
    return names or [default]


def _instance(kind: str, name: str, factories: dict[str, Callable[[], object]]) -> object:
    factory = factories.get(name)
    if factory is None:
        known = ", ".join(sorted(factories))
        raise ProviderConfigError(f"Unknown {kind} provider '{name}' (expected one of: {known})", provider=name)
    with _LOCK:
        cached = _INSTANCES.get((kind, name))
        if cached is None:
            cached = factory()
            _INSTANCES[(kind, name)] = cached
        return cached


def get_llm_provider(value: str | None = None) -> LlmProvider:
    names = resolve_provider_list(value if value is not None else os.environ.get("LLM_PROVIDER"))
    providers = [_instance("llm", name, LLM_FACTORIES) for name in names]
    if len(providers) == 1:
        return providers[0]  # type: ignore[return-value]
    return FallbackLlmProvider(providers)  # type: ignore[arg-type]


def get_tts_provider(value: str | None = None) -> TtsProvider:
    names = resolve_provider_list(value if value is not None else os.environ.get("TTS_PROVIDER"))
    providers = [_instance("tts", name, TTS_FACTORIES) for name in names]
    if len(providers) == 1:
        return providers[0]  # type: ignore[return-value]
    return FallbackTtsProvider(providers)  # type: ignore[arg-type]


def reset_providers() -> None:
    with _LOCK:
        _INSTANCES.clear()


def warmup_on_startup() -> None:
    raw = os.environ.get("TTS_WARMUP_ENABLED", "true").strip().lower()
    if raw not in {"1", "true", "yes", "on"}:
        return
    try:
        provider = get_tts_provider()
        provider.warmup()
        print(f"[registry] tts warmup done provider={provider.name}")
    except Exception as exc:
        print(f"[registry] tts warmup skipped error={exc}")
