from __future__ import annotations

import math

from podcast.audio_mix import build_silent_wav
from podcast.tts_base import TtsProvider
from podcast.types import ProviderContext, TtsRequest, TtsResult, Usage

_WORDS_PER_SECOND = 2


def estimate_duration_seconds(text: str, speaking_rate: float | None = None) -> int:
    words = len(text.split())
    rate = speaking_rate if speaking_rate and speaking_rate > 0 else 1.0
    return max(1, math.ceil(words / (_WORDS_PER_SECOND * rate)))


class MockTtsProvider(TtsProvider):
    """Silent 16 kHz WAV whose length follows the word count."""

    name = "mock"

    async def speak(self, request: TtsRequest, ctx: ProviderContext | None = None) -> TtsResult:
        duration = estimate_duration_seconds(request.text, request.speaking_rate)
        usage = Usage(
            provider=self.name,
            model="mock-tts",
            audio_seconds_in=float(duration),
            audio_seconds_out=float(duration),
        )
        if ctx:
            ctx.report_usage(usage)
        return TtsResult(
            audio=build_silent_wav(duration),
            mime_type="audio/wav",
            duration_sec=float(duration),
            usage=usage,
        )
