from __future__ import annotations

import os

# Settings must be in place before the app module is imported.
os.environ["JOB_STORAGE_BACKEND"] = "memory"
os.environ["LLM_PROVIDER"] = "mock"
os.environ["TTS_PROVIDER"] = "mock"
os.environ["TTS_WARMUP_ENABLED"] = "false"
os.environ["JOBS_AUTO_START"] = "false"
os.environ["PROGRESS_POLL_INTERVAL_SECONDS"] = "0.01"

import pytest  # noqa: E402

from job_store import InMemoryObjectStorage, JobStore  # noqa: E402
from schemas import JobInput  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> JobStore:
    return JobStore(InMemoryObjectStorage())


@pytest.fixture
def job_input() -> JobInput:
    return JobInput(topic="history of space exploration", duration_minutes=1, language="en")
