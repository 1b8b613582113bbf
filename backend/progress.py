"""Server-sent progress events for one job.

The stream polls the job state on a fixed interval. Each poll emits one frame
per log entry added since the previous poll, or a single summary frame when
nothing changed. The first poll that sees a QUEUED job starts its run.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Protocol

from pydantic import ValidationError

from job_store import JobStore, NotFoundError, utc_now
from schemas import JobState

RETRY_MS = 1000


class Launcher(Protocol):
    def launch(self, job_id: str) -> bool: ...


def format_sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _summary(state: JobState) -> dict[str, Any]:
    return {
        "status": state.status,
        "step": state.step,
        "percent": state.percent,
        "message": state.message or state.status,
        "ts": state.updated_at.isoformat(),
    }


async def job_event_stream(
    job_id: str,
    store: JobStore,
    launcher: Launcher,
    poll_interval: float = 1.0,
) -> AsyncIterator[str]:
    yield f"retry: {RETRY_MS}\n\n"
    seen_logs = 0
    first_poll = True
    while True:
        try:
            state = await store.read_state(job_id)
        except (NotFoundError, ValidationError):
            yield format_sse(
                {"step": "error", "percent": 100, "message": "Job not found", "ts": utc_now().isoformat()}
            )
            return

        if first_poll:
            first_poll = False
            if state.status == "QUEUED" and launcher.launch(job_id):
                print(f"[progress] job={job_id} launched")

        new_logs = state.logs[seen_logs:]
        if new_logs:
            for log in new_logs:
                yield format_sse({**log.model_dump(mode="json"), "status": state.status})
            seen_logs = len(state.logs)
        else:
            yield format_sse(_summary(state))

        if state.is_terminal:
            yield format_sse({**_summary(state), "done": True})
            return

        await asyncio.sleep(poll_interval)
