from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Callable

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles

load_dotenv()

from job_store import JobStore, LocalObjectStorage, NotFoundError, create_object_storage
from pipeline import JobLauncher
from podcast.audio_mix import FORMAT_CONTENT_TYPES
from podcast.registry import get_tts_provider, warmup_on_startup
from podcast.tts_base import TtsProvider
from podcast.types import TtsRequest
from progress import job_event_stream
from schemas import (
    HealthResponse,
    JobCreateResponse,
    JobInput,
    JobOutputs,
    JobStatusResponse,
    PreviewRequest,
    format_validation_errors,
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


PREVIEW_PHRASES = {
    "es": "Hola, esta es mi voz.",
    "fr": "Bonjour, voici ma voix.",
}
DEFAULT_PREVIEW_PHRASE = "Hello, this is my voice."

ARTIFACTS = {
    "script": ("script.md", "text/markdown; charset=utf-8"),
    "chapters": ("chapters.json", "application/json"),
    "metadata": ("metadata.json", "application/json"),
}

app = FastAPI(
    title="Topicast API",
    description="Backend for Topicast: turning a topic into a narrated episode",
    version="0.1.0",
)

cors_origins_raw = os.environ.get("CORS_ALLOW_ORIGINS", "*").strip()
if cors_origins_raw == "*":
    allow_origins = ["*"]
else:
    allow_origins = [o.strip() for o in cors_origins_raw.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = JobStore(create_object_storage())
launcher = JobLauncher(store)

if isinstance(store.storage, LocalObjectStorage) and store.storage.base_url.startswith("/"):
    app.mount(store.storage.base_url, StaticFiles(directory=store.storage.root), name="files")


def get_job_store() -> JobStore:
    return store


def get_launcher() -> JobLauncher:
    return launcher


def get_preview_tts() -> Callable[[], TtsProvider]:
    return get_tts_provider


@app.exception_handler(RequestValidationError)
async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid input", "details": format_validation_errors(list(exc.errors()))},
    )


@app.on_event("startup")
async def _warmup_tts_engine() -> None:
    async def _warmup() -> None:
        try:
            await asyncio.to_thread(warmup_on_startup)
            print(f"[{_utc_now_iso()}] startup tts=warmup_done")
        except Exception as exc:
            print(f"[{_utc_now_iso()}] startup tts=warmup_failed error={exc}")

    # Do not block API readiness on model warmup.
    asyncio.create_task(_warmup())


async def _cleanup_after_create(job_store: JobStore, job_id: str, job_launcher: JobLauncher) -> None:
    if not _env_bool("JOB_CLEANUP_ENABLED", True):
        return
    try:
        result = await job_store.cleanup(
            max_age_hours=_env_float("JOB_RETENTION_HOURS", 24),
            delete_incomplete=True,
            incomplete_threshold_minutes=_env_float("JOB_INCOMPLETE_MINUTES", 30),
            exclude_job_ids={job_id, *job_launcher.running_ids()},
        )
        for error in result.errors:
            print(f"[{_utc_now_iso()}] cleanup error={error}")
    except Exception as exc:
        print(f"[{_utc_now_iso()}] cleanup failed error={exc}")


@app.get("/health", response_model=HealthResponse)
async def health(job_store: JobStore = Depends(get_job_store)) -> HealthResponse:
    return HealthResponse(status="ok", storage=job_store.backend)


@app.post("/jobs/create", response_model=JobCreateResponse)
async def create_job(
    job_input: JobInput,
    background_tasks: BackgroundTasks,
    job_store: JobStore = Depends(get_job_store),
    job_launcher: JobLauncher = Depends(get_launcher),
) -> JobCreateResponse:
    job_id = await job_store.init_job(job_input)
    print(f"[{_utc_now_iso()}] job={job_id} stage=queued topic={job_input.topic}")
    background_tasks.add_task(_cleanup_after_create, job_store, job_id, job_launcher)
    if _env_bool("JOBS_AUTO_START", False):
        job_launcher.launch(job_id)
    return JobCreateResponse(job_id=job_id)


@app.get("/jobs/{job_id}", response_model=JobStatusResponse, response_model_exclude_none=True)
async def get_job(job_id: str, job_store: JobStore = Depends(get_job_store)) -> JobStatusResponse:
    try:
        state = await job_store.read_state(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None
    outputs = None
    if state.outputs is not None:
        outputs = JobOutputs(
            script=f"/jobs/{job_id}/script",
            chapters=f"/jobs/{job_id}/chapters",
            audio=f"/jobs/{job_id}/audio",
            metadata=f"/jobs/{job_id}/metadata",
        )
    return JobStatusResponse(
        job_id=state.job_id,
        status=state.status,
        step=state.step,
        percent=state.percent,
        message=state.message,
        error=state.error,
        outputs=outputs,
    )


@app.get("/jobs/{job_id}/events")
async def job_events(
    job_id: str,
    job_store: JobStore = Depends(get_job_store),
    job_launcher: JobLauncher = Depends(get_launcher),
) -> StreamingResponse:
    poll_interval = _env_float("PROGRESS_POLL_INTERVAL_SECONDS", 1.0)
    return StreamingResponse(
        job_event_stream(job_id, job_store, job_launcher, poll_interval=poll_interval),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


@app.get("/jobs/{job_id}/audio")
async def get_audio(job_id: str, job_store: JobStore = Depends(get_job_store)) -> Response:
    try:
        metadata = await job_store.read_metadata(job_id)
        if metadata.audio_format is None:
            raise HTTPException(status_code=404, detail="Audio not found")
        data = await job_store.read_file(job_id, f"audio.{metadata.audio_format}")
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    return Response(content=data, media_type=FORMAT_CONTENT_TYPES[metadata.audio_format])


@app.get("/jobs/{job_id}/{artifact}")
async def get_artifact(job_id: str, artifact: str, job_store: JobStore = Depends(get_job_store)) -> Response:
    if artifact not in ARTIFACTS:
        raise HTTPException(status_code=404, detail="Not found")
    filename, media_type = ARTIFACTS[artifact]
    try:
        data = await job_store.read_file(job_id, filename)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    return Response(content=data, media_type=media_type)


@app.post("/preview")
async def preview_voice(
    req: PreviewRequest,
    tts_factory: Callable[[], TtsProvider] = Depends(get_preview_tts),
) -> Response:
    text = PREVIEW_PHRASES.get(req.language, DEFAULT_PREVIEW_PHRASE)
    try:
        tts = tts_factory()
        result = await tts.speak(TtsRequest(text=text, language=req.language, voice=req.voice, speaking_rate=1.0))
    except Exception as exc:
        print(f"[{_utc_now_iso()}] preview failed error={exc}")
        return JSONResponse(status_code=500, content={"error": str(exc) or "Preview failed"})
    return Response(content=result.audio, media_type=result.mime_type)
