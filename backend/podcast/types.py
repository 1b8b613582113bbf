from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass(frozen=True)
class OutlineSection:
    heading: str
    bullets: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PodcastOutline:
    title: str
    sections: list[OutlineSection] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "sections": [
                {"heading": s.heading, "bullets": list(s.bullets)} for s in self.sections
            ],
        }


@dataclass(frozen=True)
class ScriptRequest:
    outline: PodcastOutline
    topic: str
    language: str
    tone: str
    content_type: str
    duration_minutes: int
    target_audience: str
    format: str


@dataclass(frozen=True)
class TtsRequest:
    text: str
    language: str
    voice: str | None = None
    format: str | None = None
    speaking_rate: float | None = None


@dataclass
class Usage:
    provider: str | None = None
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    audio_seconds_in: float | None = None
    audio_seconds_out: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class TtsResult:
    audio: bytes
    mime_type: str
    duration_sec: float | None = None
    usage: Usage | None = None


@dataclass
class ProviderContext:
    request_id: str | None = None
    on_usage: Callable[[Usage], None] | None = None

    def report_usage(self, usage: Usage | None) -> None:
        if usage is not None and self.on_usage is not None:
            self.on_usage(usage)
