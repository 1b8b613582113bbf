from __future__ import annotations

import asyncio

from podcast import synthesizer
from podcast.tts_base import TtsProvider
from podcast.types import ProviderContext, TtsRequest, TtsResult, Usage


class KokoroProvider(TtsProvider):
    name = "kokoro"

    def warmup(self) -> None:
        synthesizer.init_kokoro()

    async def speak(self, request: TtsRequest, ctx: ProviderContext | None = None) -> TtsResult:
        audio, seconds = await asyncio.to_thread(
            synthesizer.synthesize_wav,
            request.text,
            language=request.language,
            voice=request.voice,
            speed=request.speaking_rate,
        )
        usage = Usage(provider=self.name, model="kokoro-v1.0", audio_seconds_out=round(seconds, 3))
        if ctx:
            ctx.report_usage(usage)
        return TtsResult(audio=audio, mime_type="audio/wav", duration_sec=seconds, usage=usage)
