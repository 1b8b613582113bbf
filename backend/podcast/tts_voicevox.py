from __future__ import annotations

import asyncio
import hashlib
import io
import os
import threading
from collections import OrderedDict

import requests
import soundfile as sf

from podcast.errors import ProviderCallError
from podcast.tts_base import TtsProvider
from podcast.types import ProviderContext, TtsRequest, TtsResult, Usage


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _speaker_from_voice(voice: str | None, default_speaker: int) -> int:
    if not voice:
        return default_speaker
    try:
        return int(voice)
    except Exception:
        return default_speaker


class VoiceVoxProvider(TtsProvider):
    """HTTP client for a local VOICEVOX engine. Japanese text only."""

    name = "voicevox"

    def __init__(self) -> None:
        self.base_url = (
            os.environ.get("VOICEVOX_BASE_URL", "http://127.0.0.1:50021").strip() or "http://127.0.0.1:50021"
        ).rstrip("/")
        self.default_speaker = _env_int("VOICEVOX_DEFAULT_SPEAKER", 3)
        self.connect_timeout = _env_float("VOICEVOX_CONNECT_TIMEOUT_SECONDS", 5.0)
        self.request_timeout = _env_float("VOICEVOX_REQUEST_TIMEOUT_SECONDS", 20.0)
        self.cache_size = _env_int("VOICEVOX_CACHE_SIZE", 256)
        self._cache_lock = threading.Lock()
        self._cache: OrderedDict[str, bytes] = OrderedDict()
        self.engine_version = "unknown"

    def warmup(self) -> None:
        response = requests.get(
            f"{self.base_url}/version",
            timeout=(self.connect_timeout, self.request_timeout),
        )
        response.raise_for_status()
        self.engine_version = str(response.text or "").strip().strip('"') or "unknown"
        print(f"[voicevox] engine_version={self.engine_version}")

    def _cache_key(self, *, speaker: int, speed: float, text: str) -> str:
        normalized = "\n".join(ln.rstrip() for ln in text.splitlines()).strip()
        raw = f"voicevox|{self.engine_version}|{speaker}|{speed:.3f}|{normalized}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> bytes | None:
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
            return cached

    def _cache_put(self, key: str, audio: bytes) -> None:
        with self._cache_lock:
            self._cache[key] = audio
            self._cache.move_to_end(key)
            while len(self._cache) > max(1, self.cache_size):
                self._cache.popitem(last=False)

    def _synthesize(self, text: str, speaker: int, speed: float) -> bytes:
        key = self._cache_key(speaker=speaker, speed=speed, text=text)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        try:
            q = requests.post(
                f"{self.base_url}/audio_query",
                params={"text": text, "speaker": speaker},
                timeout=(self.connect_timeout, self.request_timeout),
            )
            q.raise_for_status()
            query = q.json()
            query["speedScale"] = speed

            s = requests.post(
                f"{self.base_url}/synthesis",
                params={"speaker": speaker},
                json=query,
                timeout=(self.connect_timeout, self.request_timeout),
            )
            s.raise_for_status()
        except requests.RequestException as exc:
            raise ProviderCallError(f"VOICEVOX request failed: {exc}", provider=self.name) from exc
        self._cache_put(key, s.content)
        return s.content

    async def speak(self, request: TtsRequest, ctx: ProviderContext | None = None) -> TtsResult:
        if request.language != "ja":
            raise ProviderCallError(
                f"VOICEVOX only supports Japanese (got {request.language})",
                provider=self.name,
            )
        text = request.text.strip()
        if not text:
            raise ProviderCallError("VOICEVOX text is empty.", provider=self.name)
        speaker = _speaker_from_voice(request.voice, self.default_speaker)
        speed = max(0.5, min(2.0, float(request.speaking_rate or 1.0)))

        audio = await asyncio.to_thread(self._synthesize, text, speaker, speed)
        try:
            seconds = float(sf.info(io.BytesIO(audio)).duration)
        except Exception:
            seconds = None
        usage = Usage(provider=self.name, model=f"voicevox-{self.engine_version}", audio_seconds_out=seconds)
        if ctx:
            ctx.report_usage(usage)
        return TtsResult(audio=audio, mime_type="audio/wav", duration_sec=seconds, usage=usage)
