from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import requests

from podcast.errors import ProviderCallError, ProviderConfigError

DEFAULT_OPENROUTER_MODEL = "google/gemini-2.5-flash-lite"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass
class Completion:
    text: str
    model: str
    usage: dict[str, Any] = field(default_factory=dict)


def _extract_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderCallError("OpenRouter response missing choices.", provider="openrouter")

    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise ProviderCallError("OpenRouter response missing message.", provider="openrouter")

    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()

    # Some upstream models return a list of content parts.
    if isinstance(content, list):
        parts = [
            item["text"].strip()
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"].strip()
        ]
        if parts:
            return "\n".join(parts)

    raise ProviderCallError("OpenRouter response does not contain text content.", provider="openrouter")


class OpenRouterClient:
    def __init__(self, api_key: str, base_url: str, model: str, timeout: float = 90.0) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def complete(self, prompt: str, *, temperature: float = 0.7, max_tokens: int | None = None) -> Completion:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                f"{self._base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderCallError(f"OpenRouter request failed: {exc}", provider="openrouter") from exc

        if response.status_code != 200:
            raise ProviderCallError(
                f"OpenRouter HTTP {response.status_code}: {response.text[:300]}",
                provider="openrouter",
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderCallError("OpenRouter response is not valid JSON.", provider="openrouter") from exc

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return Completion(text=_extract_text(data), model=str(data.get("model") or self.model), usage=usage)


def get_client() -> OpenRouterClient:
    api_key = os.environ.get("OPENROUTER_API_KEY", "").strip()
    if not api_key:
        raise ProviderConfigError("OPENROUTER_API_KEY is not set.", provider="openrouter")
    base_url = os.environ.get("OPENROUTER_BASE_URL", "").strip() or DEFAULT_OPENROUTER_BASE_URL
    model = os.environ.get("OPENROUTER_MODEL", "").strip() or DEFAULT_OPENROUTER_MODEL
    try:
        timeout = float(os.environ.get("OPENROUTER_TIMEOUT_SECONDS", "90"))
    except ValueError:
        timeout = 90.0
    return OpenRouterClient(api_key=api_key, base_url=base_url, model=model, timeout=timeout)
