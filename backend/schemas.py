from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


JobStatus = Literal["QUEUED", "RUNNING", "DONE", "ERROR"]
AudioFormat = Literal["wav", "mp3"]

TERMINAL_STATUSES = frozenset({"DONE", "ERROR"})

SUPPORTED_LANGUAGES = ("en", "es", "fr", "de", "it", "pt", "ja", "zh", "hi")
TONES = ("informative", "friendly", "professional", "energetic", "calm")
CONTENT_TYPES = ("explanation", "storytelling", "news", "debate", "tutorial")
FORMATS = ("solo-host", "interview", "narrative", "roundtable")

TOPIC_MAX_LENGTH = 120
MIN_DURATION_MINUTES = 1
MAX_DURATION_MINUTES = 20
DEFAULT_DURATION_MINUTES = 5


def _pick(value: Any, allowed: tuple[str, ...]) -> str:
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return allowed[0]


def _validate_language(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return "en"
    if not isinstance(value, str) or value.strip().lower() not in SUPPORTED_LANGUAGES:
        raise ValueError(f"Language must be one of: {', '.join(SUPPORTED_LANGUAGES)}")
    return value.strip().lower()


class JobInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    topic: str = Field(default="", validate_default=True)
    duration_minutes: int = Field(default=DEFAULT_DURATION_MINUTES, validate_default=True)
    language: str = "en"
    tone: str = Field(default=TONES[0], validate_default=True)
    content_type: str = Field(default=CONTENT_TYPES[0], validate_default=True)
    target_audience: str = Field(default="general", max_length=120)
    format: str = Field(default=FORMATS[0], validate_default=True)
    voice: str | None = Field(default=None, max_length=64)
    speaking_rate: float | None = Field(default=None, ge=0.5, le=2.0)

    @field_validator("topic", mode="before")
    @classmethod
    def _topic(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Topic is required")
        value = value.strip()
        if len(value) > TOPIC_MAX_LENGTH:
            raise ValueError(f"Topic must be at most {TOPIC_MAX_LENGTH} characters")
        return value

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_DURATION_MINUTES
        message = f"Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes"
        if isinstance(value, bool):
            raise ValueError(message)
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(message) from None
        if not number.is_integer() or not MIN_DURATION_MINUTES <= number <= MAX_DURATION_MINUTES:
            raise ValueError(message)
        return int(number)

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, value: Any) -> str:
        return _validate_language(value)

    @field_validator("tone", mode="before")
    @classmethod
    def _tone(cls, value: Any) -> str:
        return _pick(value, TONES)

    @field_validator("content_type", mode="before")
    @classmethod
    def _content_type(cls, value: Any) -> str:
        return _pick(value, CONTENT_TYPES)

    @field_validator("format", mode="before")
    @classmethod
    def _format(cls, value: Any) -> str:
        return _pick(value, FORMATS)

    @field_validator("target_audience", mode="before")
    @classmethod
    def _audience(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return "general"


class JobLog(BaseModel):
    step: str
    percent: int
    message: str
    ts: datetime


class JobOutputs(BaseModel):
    script: str
    chapters: str
    audio: str
    metadata: str


class JobState(BaseModel):
    job_id: str
    status: JobStatus
    step: str
    percent: int = Field(ge=0, le=100)
    message: str
    error: str | None = None
    logs: list[JobLog] = Field(default_factory=list)
    outputs: JobOutputs | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobTimings(BaseModel):
    started_at: datetime | None = None
    finished_at: datetime | None = None


class JobMetadata(BaseModel):
    job_id: str
    input: JobInput
    created_at: datetime
    providers: dict[str, str] | None = None
    timings: JobTimings | None = None
    usage: list[dict[str, Any]] = Field(default_factory=list)
    audio_format: AudioFormat | None = None


class JobCreateResponse(BaseModel):
    job_id: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    step: str
    percent: int
    message: str
    error: str | None = None
    outputs: JobOutputs | None = None


class PreviewRequest(BaseModel):
    voice: str | None = Field(default=None, max_length=64)
    language: str = "en"

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, value: Any) -> str:
        return _validate_language(value)


class HealthResponse(BaseModel):
    status: Literal["ok"]
    storage: str


def format_validation_errors(errors: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Group pydantic errors by field name, dropping the ``body`` prefix."""
    details: dict[str, list[str]] = {}
    for error in errors:
        loc = [part for part in error.get("loc", ()) if part != "body"]
        # invalid JSON reports a character offset, not a field name
        field = loc[0] if loc and isinstance(loc[0], str) else "body"
        message = str(error.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.setdefault(field, []).append(message)
    return details
