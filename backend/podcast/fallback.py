from __future__ import annotations

import os
from typing import Any, Sequence

from podcast.errors import ProviderCallError, ProviderFailure, ProviderUnavailableError


def _debug_enabled() -> bool:
    return os.environ.get("PROVIDER_DEBUG", "false").strip().lower() in {"1", "true", "yes", "on"}


def fallback_name(providers: Sequence[Any]) -> str:
    return f"fallback({','.join(p.name for p in providers)})"


def ensure_providers(providers: Sequence[Any]) -> list[Any]:
    items = list(providers)
    if not items:
        raise ProviderUnavailableError("No providers available for fallback.")
    return items


async def call_with_fallback(providers: Sequence[Any], method: str, *args: Any, **kwargs: Any) -> Any:
    failures: list[ProviderFailure] = []
    for provider in providers:
        func = getattr(provider, method, None)
        if func is None:
            failures.append(ProviderFailure(provider.name, f"Provider missing method {method}"))
            continue
        if _debug_enabled():
            print(f"[providers] attempt provider={provider.name} method={method}")
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            failures.append(ProviderFailure(provider.name, str(exc) or type(exc).__name__))
            if _debug_enabled():
                print(f"[providers] failure provider={provider.name} method={method} error={exc}")

    detail = "; ".join(f"{f.provider}: {f.message}" for f in failures)
    raise ProviderCallError(
        f"All providers failed for {method} ({detail})",
        failures=failures,
    )
