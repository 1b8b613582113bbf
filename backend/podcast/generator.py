from __future__ import annotations

import asyncio
import json
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Sequence

from podcast.errors import ProviderCallError
from podcast.fallback import call_with_fallback, ensure_providers, fallback_name
from podcast.llm import get_client
from podcast.types import (
    OutlineSection,
    PodcastOutline,
    ProviderContext,
    ScriptRequest,
    Usage,
)

_WORDS_PER_MINUTE = 140


def _estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))


def _extract_json_object(text: str) -> dict[str, Any]:
    raw = (text or "").strip()
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass
    match = re.search(r"\{[\s\S]*\}", raw)
    if not match:
        raise ValueError("No JSON object found in model response.")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Model response JSON is not an object.")
    return parsed


def outline_from_dict(data: dict[str, Any]) -> PodcastOutline:
    sections: list[OutlineSection] = []
    for item in data.get("sections") or []:
        if not isinstance(item, dict):
            continue
        heading = str(item.get("heading") or "").strip()
        if not heading:
            continue
        bullets = [str(b).strip() for b in item.get("bullets") or [] if str(b).strip()]
        sections.append(OutlineSection(heading=heading, bullets=bullets))
    title = str(data.get("title") or "").strip()
    if not title or not sections:
        raise ValueError("Outline must contain a title and at least one section.")
    return PodcastOutline(title=title, sections=sections)


def script_request_from_input(outline: PodcastOutline, job_input: Any) -> ScriptRequest:
    return ScriptRequest(
        outline=outline,
        topic=job_input.topic,
        language=job_input.language,
        tone=job_input.tone,
        content_type=job_input.content_type,
        duration_minutes=job_input.duration_minutes,
        target_audience=job_input.target_audience,
        format=job_input.format,
    )


class LlmProvider(ABC):
    name: str

    @abstractmethod
    async def generate_outline(self, job_input: Any, ctx: ProviderContext | None = None) -> PodcastOutline:
        raise NotImplementedError

    @abstractmethod
    async def generate_script(self, request: ScriptRequest, ctx: ProviderContext | None = None) -> str:
        raise NotImplementedError


class FallbackLlmProvider(LlmProvider):
    def __init__(self, providers: Sequence[LlmProvider]) -> None:
        self.providers = ensure_providers(providers)
        self.name = fallback_name(self.providers)

    async def generate_outline(self, job_input: Any, ctx: ProviderContext | None = None) -> PodcastOutline:
        return await call_with_fallback(self.providers, "generate_outline", job_input, ctx)

    async def generate_script(self, request: ScriptRequest, ctx: ProviderContext | None = None) -> str:
        return await call_with_fallback(self.providers, "generate_script", request, ctx)


_MOCK_BODY = [
    ("Essential context", ["A clear definition of {topic}.", "Why it matters today."]),
    ("Key ideas", ["The main strategy behind {topic}.", "Short examples that make it concrete."]),
    ("Common mistakes", ["Misconceptions about {topic}.", "How to avoid them."]),
    ("Practical steps", ["What {audience} listeners can try this week."]),
]


class MockLlmProvider(LlmProvider):
    """Deterministic outline and script, sized from the requested duration."""

    name = "mock"

    async def generate_outline(self, job_input: Any, ctx: ProviderContext | None = None) -> PodcastOutline:
        topic = job_input.topic.strip() or "an unknown topic"
        audience = job_input.target_audience
        body_count = max(0, min(len(_MOCK_BODY), int(job_input.duration_minutes) - 1))
        sections = [
            OutlineSection(
                heading="Intro hook",
                bullets=[f"A surprising fact about {topic}.", f"What {audience} listeners will take away."],
            )
        ]
        for heading, bullets in _MOCK_BODY[:body_count]:
            sections.append(
                OutlineSection(heading=heading, bullets=[b.format(topic=topic, audience=audience) for b in bullets])
            )
        sections.append(OutlineSection(heading="Outro", bullets=["Recap of the episode.", "Next steps."]))
        outline = PodcastOutline(title=f"{topic}: a {job_input.format} episode", sections=sections)
        if ctx:
            ctx.report_usage(
                Usage(
                    provider=self.name,
                    model="mock-llm",
                    input_tokens=_estimate_tokens(topic),
                    output_tokens=_estimate_tokens(json.dumps(outline.as_dict())),
                )
            )
        return outline

    async def generate_script(self, request: ScriptRequest, ctx: ProviderContext | None = None) -> str:
        lines = [
            f"# {request.outline.title}",
            "",
            f"**Language:** {request.language}",
            f"**Tone:** {request.tone}",
            f"**Duration:** {request.duration_minutes} minutes",
            "",
        ]
        for section in request.outline.sections:
            lines.append(f"## {section.heading}")
            if section.heading == "Intro hook":
                lines.append(
                    f"Welcome. Today we explore {request.topic}. "
                    f"In the next few minutes you will see why it matters for {request.target_audience} listeners."
                )
            elif section.heading == "Outro":
                lines.append(
                    f"Thanks for listening. If this episode on {request.topic} helped, share it with a friend."
                )
            else:
                lines.extend(f"- {bullet}" for bullet in section.bullets)
            lines.append("")
        markdown = "\n".join(lines).strip()
        if ctx:
            ctx.report_usage(
                Usage(
                    provider=self.name,
                    model="mock-llm",
                    input_tokens=_estimate_tokens(json.dumps(request.outline.as_dict())),
                    output_tokens=_estimate_tokens(markdown),
                )
            )
        return markdown


def _usage_from_completion(provider: str, model: str, usage: dict[str, Any]) -> Usage:
    return Usage(
        provider=provider,
        model=model,
        input_tokens=usage.get("prompt_tokens"),
        output_tokens=usage.get("completion_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


class OpenRouterLlmProvider(LlmProvider):
    name = "openrouter"

    def _outline_prompt(self, job_input: Any) -> str:
        return f"""
You are a professional podcast producer. Build a structured outline for one episode.

TOPIC: {job_input.topic}
DURATION: {job_input.duration_minutes} minutes
LANGUAGE: {job_input.language}
TONE: {job_input.tone}
CONTENT TYPE: {job_input.content_type}
AUDIENCE: {job_input.target_audience}
FORMAT: {job_input.format}

The outline must have an intro hook, 2-4 main sections and a closing call to action.
Return ONLY valid JSON (no markdown fences):
{{"title": "Episode title", "sections": [{{"heading": "Section name", "bullets": ["Point 1", "Point 2"]}}]}}
"""

    def _script_prompt(self, request: ScriptRequest) -> str:
        outline_text = "\n\n".join(
            f"## {s.heading}\n" + "\n".join(f"- {b}" for b in s.bullets) for s in request.outline.sections
        )
        target_words = request.duration_minutes * _WORDS_PER_MINUTE
        return f"""
Write the full spoken script for a podcast episode in {request.language}.

TITLE: {request.outline.title}
TONE: {request.tone}
CONTENT TYPE: {request.content_type}
AUDIENCE: {request.target_audience}
FORMAT: {request.format}
LENGTH: about {target_words} words ({request.duration_minutes} minutes spoken)

OUTLINE:
{outline_text}

Rules:
1. Output Markdown only.
2. Start every section with a level-2 heading ("## Heading"), one per outline section, in order.
3. Under each heading write flowing prose meant to be read aloud. No stage directions.
"""

    async def generate_outline(self, job_input: Any, ctx: ProviderContext | None = None) -> PodcastOutline:
        client = get_client()
        completion = await asyncio.to_thread(client.complete, self._outline_prompt(job_input), temperature=0.7)
        try:
            outline = outline_from_dict(_extract_json_object(completion.text))
        except ValueError as exc:
            raise ProviderCallError(f"Invalid outline from model: {exc}", provider=self.name) from exc
        if ctx:
            ctx.report_usage(_usage_from_completion(self.name, completion.model, completion.usage))
        return outline

    async def generate_script(self, request: ScriptRequest, ctx: ProviderContext | None = None) -> str:
        client = get_client()
        completion = await asyncio.to_thread(
            client.complete,
            self._script_prompt(request),
            temperature=0.7,
            max_tokens=4000,
        )
        if ctx:
            ctx.report_usage(_usage_from_completion(self.name, completion.model, completion.usage))
        return completion.text
