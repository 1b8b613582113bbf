from __future__ import annotations

import asyncio
import json
import math
import os
from datetime import datetime, timezone
from typing import Any

from job_store import JobNotFoundError, JobStateError, JobStore, NotFoundError, utc_now
from podcast.audio_mix import FORMAT_CONTENT_TYPES, concat_audio_buffers, mime_to_format
from podcast.errors import AudioFormatError
from podcast.generator import LlmProvider, script_request_from_input
from podcast.registry import get_llm_provider, get_tts_provider
from podcast.sections import estimate_chapters, parse_sections
from podcast.tts_base import TtsProvider
from podcast.types import ProviderContext, TtsRequest, Usage
from schemas import JobOutputs, JobTimings

TTS_BAND_START = 60
TTS_BAND_WIDTH = 20


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def job_timeout_seconds() -> float | None:
    value = _env_float("JOB_TIMEOUT_SECONDS", 900)
    return value if value > 0 else None


def section_percent(done: int, total: int) -> int:
    # round half up, so 1 of 8 sections gives 63 not 62
    return TTS_BAND_START + int(math.floor(TTS_BAND_WIDTH * done / total + 0.5))


def _section_filename(index: int, ext: str) -> str:
    return f"sections/section_{index:02d}.{ext}"


async def _run_stages(
    job_id: str,
    store: JobStore,
    llm: LlmProvider | None,
    tts: TtsProvider | None,
) -> None:
    metadata = await store.read_metadata(job_id)
    job_input = metadata.input
    usage_records: list[dict[str, Any]] = []

    def on_usage(usage: Usage) -> None:
        usage_records.append(usage.as_dict())

    ctx = ProviderContext(request_id=job_id, on_usage=on_usage)
    started_at = utc_now()

    await store.set_status(job_id, "RUNNING", "outline", 10, "Generating outline")
    llm = llm or get_llm_provider()
    tts = tts or get_tts_provider()
    print(f"[{_utc_now_iso()}] job={job_id} stage=outline llm={llm.name} tts={tts.name}")
    outline = await llm.generate_outline(job_input, ctx)

    await store.set_status(job_id, "RUNNING", "script", 30, "Drafting script")
    print(f"[{_utc_now_iso()}] job={job_id} stage=script sections={len(outline.sections)}")
    markdown = await llm.generate_script(script_request_from_input(outline, job_input), ctx)
    script_url = await store.save_file(job_id, "script.md", markdown, "text/markdown")
    chapters = estimate_chapters(markdown, job_input)

    await store.set_status(job_id, "RUNNING", "tts", TTS_BAND_START, "Synthesizing audio")
    sections = parse_sections(markdown)
    requested_format = os.environ.get("TTS_FORMAT", "mp3").strip().lower() or "mp3"
    audio_format: str | None = None
    buffers: list[bytes] = []
    for index, section in enumerate(sections, start=1):
        result = await tts.speak(
            TtsRequest(
                text=section.content,
                language=job_input.language,
                voice=job_input.voice,
                format=requested_format,
                speaking_rate=job_input.speaking_rate,
            ),
            ctx,
        )
        section_format = mime_to_format(result.mime_type)
        if section_format is None:
            raise AudioFormatError(f"Unsupported audio mime type: {result.mime_type}")
        if audio_format is None:
            audio_format = section_format
        elif section_format != audio_format:
            raise AudioFormatError(
                f"Audio format mismatch between sections: {section_format} != {audio_format}"
            )
        buffers.append(result.audio)
        await store.save_file(job_id, _section_filename(index, audio_format), result.audio, result.mime_type)

        message = f"Synthesized section {index} of {len(sections)}"
        await store.set_status(job_id, "RUNNING", "tts", section_percent(index, len(sections)), message)
        print(f"[{_utc_now_iso()}] job={job_id} stage=tts section={index}/{len(sections)}")

    await store.set_status(job_id, "RUNNING", "mix", 85, "Mixing audio")
    if audio_format is None:
        raise AudioFormatError("No audio generated")
    final_audio = concat_audio_buffers(buffers, audio_format)
    audio_url = await store.save_file(
        job_id, f"audio.{audio_format}", final_audio, FORMAT_CONTENT_TYPES[audio_format]
    )
    chapters_url = await store.save_file(
        job_id,
        "chapters.json",
        json.dumps([c.as_dict() for c in chapters], ensure_ascii=False, indent=2),
        "application/json",
    )

    metadata = metadata.model_copy(
        update={
            "providers": {"llm": llm.name, "tts": tts.name},
            "timings": JobTimings(started_at=started_at, finished_at=utc_now()),
            "usage": usage_records,
            "audio_format": audio_format,
        }
    )
    await store.write_metadata(metadata)

    outputs = JobOutputs(
        script=script_url,
        chapters=chapters_url,
        audio=audio_url,
        metadata=store.locator(job_id, "metadata.json"),
    )
    await store.set_status(job_id, "DONE", "finalize", 100, "Job complete", outputs=outputs)


async def run_job(
    job_id: str,
    *,
    store: JobStore,
    llm: LlmProvider | None = None,
    tts: TtsProvider | None = None,
    timeout_seconds: float | None = None,
) -> None:
    """Run one QUEUED job to DONE or ERROR.

    Not safe to call twice at once for the same job; use ``JobLauncher``.
    """
    try:
        state = await store.read_state(job_id)
    except JobNotFoundError:
        print(f"[{_utc_now_iso()}] job={job_id} stage=skipped reason=not_found")
        return
    if state.status != "QUEUED":
        print(f"[{_utc_now_iso()}] job={job_id} stage=skipped status={state.status}")
        return

    timeout = job_timeout_seconds() if timeout_seconds is None else (timeout_seconds or None)
    print(f"[{_utc_now_iso()}] job={job_id} stage=running timeout={timeout}")
    # the stages run as their own task so only the deadline counts as a timeout
    task = asyncio.create_task(_run_stages(job_id, store, llm, tts))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task not in done:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        message = f"Job timed out after {timeout:g}s"
    else:
        exc = task.exception()
        if exc is None:
            print(f"[{_utc_now_iso()}] job={job_id} stage=completed")
            return
        message = str(exc) or type(exc).__name__

    print(f"[{_utc_now_iso()}] job={job_id} stage=failed error={message}")
    try:
        await store.set_status(job_id, "ERROR", "error", 100, message, error=message)
    except (JobStateError, NotFoundError) as exc:
        print(f"[{_utc_now_iso()}] job={job_id} stage=error_not_recorded reason={exc}")


class JobLauncher:
    """Starts ``run_job`` in the background, at most once per job in this process."""

    def __init__(
        self,
        store: JobStore,
        llm: LlmProvider | None = None,
        tts: TtsProvider | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.tts = tts
        self.timeout_seconds = timeout_seconds
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    def running_ids(self) -> frozenset[str]:
        return frozenset(self._running)

    def launch(self, job_id: str) -> bool:
        # check and insert with no await in between
        if job_id in self._running:
            return False
        self._running.add(job_id)
        task = asyncio.create_task(self._run(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, job_id: str) -> None:
        try:
            await run_job(
                job_id,
                store=self.store,
                llm=self.llm,
                tts=self.tts,
                timeout_seconds=self.timeout_seconds,
            )
        finally:
            self._running.discard(job_id)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
