"""Split a generated Markdown script into sections and derive chapter timings."""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from typing import Any

WORDS_PER_MINUTE = 140
MIN_CHAPTER_SECONDS = 30
SUMMARY_WORDS = 18
FALLBACK_SECTION_TITLE = "Full Script"

_HEADING_RE = re.compile(r"^##\s+(.*)")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass
class ScriptSection:
    title: str
    content: str


@dataclass(frozen=True)
class Chapter:
    title: str
    start_sec: int
    end_sec: int
    summary: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def count_words(text: str) -> int:
    return len(text.split())


def summarize(text: str) -> str:
    normalized = " ".join(text.split())
    if not normalized:
        return ""
    parts = _SENTENCE_END_RE.split(normalized, maxsplit=1)
    if len(parts) > 1 or normalized[-1] in ".!?":
        return parts[0].strip()
    return " ".join(normalized.split(" ")[:SUMMARY_WORDS]) + "..."


def parse_sections(markdown: str) -> list[ScriptSection]:
    """Return the ``##`` sections of ``markdown`` in document order.

    Lines before the first heading belong to no section. Sections whose body is
    only whitespace are dropped; if nothing is left the whole document becomes
    a single section.
    """
    sections: list[ScriptSection] = []
    current: ScriptSection | None = None
    for line in re.split(r"\r?\n", markdown):
        match = _HEADING_RE.match(line)
        if match:
            if current is not None:
                sections.append(current)
            current = ScriptSection(title=match.group(1).strip(), content="")
            continue
        if current is not None:
            current.content += f"{line}\n"
    if current is not None:
        sections.append(current)

    kept = [s for s in sections if s.content.strip()]
    if not kept:
        return [ScriptSection(title=FALLBACK_SECTION_TITLE, content=markdown)]
    return kept


def section_seconds(content: str, words_per_minute: int = WORDS_PER_MINUTE) -> int:
    words = count_words(content)
    return max(MIN_CHAPTER_SECONDS, math.ceil(words / words_per_minute * 60))


def estimate_chapters(
    markdown: str,
    job_input: Any,
    words_per_minute: int = WORDS_PER_MINUTE,
) -> list[Chapter]:
    topic = str(getattr(job_input, "topic", "") or "this topic")
    chapters: list[Chapter] = []
    cursor = 0
    for section in parse_sections(markdown):
        seconds = section_seconds(section.content, words_per_minute)
        chapters.append(
            Chapter(
                title=section.title,
                start_sec=cursor,
                end_sec=cursor + seconds,
                summary=summarize(section.content) or f"Section about {topic}.",
            )
        )
        cursor += seconds
    return chapters
