from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

import main
from job_store import InMemoryObjectStorage, JobStore
from main import app, get_job_store, get_launcher, get_preview_tts
from pipeline import JobLauncher
from podcast.audio_mix import parse_wav_header
from podcast.errors import ProviderConfigError
from podcast.generator import MockLlmProvider
from podcast.tts_mock import MockTtsProvider
from schemas import JobInput, format_validation_errors


class FailingLlm(MockLlmProvider):
    name = "failing"

    async def generate_script(self, request, ctx=None):
        raise RuntimeError("LLM failure")


class CountingLlm(MockLlmProvider):
    def __init__(self) -> None:
        self.outlines = 0

    async def generate_outline(self, job_input, ctx=None):
        self.outlines += 1
        return await super().generate_outline(job_input, ctx)


class FixedLauncher:
    def __init__(self, running: set[str]) -> None:
        self.running = running

    def running_ids(self) -> frozenset[str]:
        return frozenset(self.running)


@pytest.fixture
def api_store() -> JobStore:
    return JobStore(InMemoryObjectStorage())


@pytest.fixture
def client(api_store: JobStore):
    launcher = JobLauncher(api_store, llm=MockLlmProvider(), tts=MockTtsProvider())
    app.dependency_overrides[get_job_store] = lambda: api_store
    app.dependency_overrides[get_launcher] = lambda: launcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _events(client: TestClient, job_id: str) -> list[dict]:
    events: list[dict] = []
    with client.stream("GET", f"/jobs/{job_id}/events") as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        for line in response.iter_lines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "storage": "memory"}


def test_create_job_validation_errors(client: TestClient, api_store: JobStore) -> None:
    response = client.post(
        "/jobs/create",
        json={"topic": "   ", "duration_minutes": 45, "language": "xx", "tone": "sarcastic"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid input"
    assert body["details"]["topic"] == ["Topic is required"]
    assert "duration_minutes" in body["details"]
    assert "language" in body["details"]
    assert "tone" not in body["details"]
    assert api_store.storage.list_job_ids() == []


def test_invalid_json_body_is_reported_under_body(client: TestClient) -> None:
    response = client.post(
        "/jobs/create", content=b"{bad", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    details = response.json()["details"]
    assert list(details) == ["body"]


def test_validation_errors_ignore_offsets_in_location() -> None:
    errors = [
        {"loc": ("body", 12), "msg": "JSON decode error"},
        {"loc": ("body", "topic"), "msg": "Value error, Topic is required"},
    ]

    assert format_validation_errors(errors) == {
        "body": ["JSON decode error"],
        "topic": ["Topic is required"],
    }


def test_full_flow_over_http(client: TestClient) -> None:
    response = client.post(
        "/jobs/create",
        json={"topic": "history of space exploration", "duration_minutes": 1, "language": "en"},
    )
    assert response.status_code == 200
    job_id = response.json()["job_id"]

    status = client.get(f"/jobs/{job_id}").json()
    assert status["status"] == "QUEUED"
    assert "outputs" not in status

    events = _events(client, job_id)
    assert events[-1]["done"] is True
    assert events[-1]["status"] == "DONE"

    status = client.get(f"/jobs/{job_id}").json()
    assert status["status"] == "DONE"
    assert status["outputs"] == {
        "script": f"/jobs/{job_id}/script",
        "chapters": f"/jobs/{job_id}/chapters",
        "audio": f"/jobs/{job_id}/audio",
        "metadata": f"/jobs/{job_id}/metadata",
    }

    script = client.get(status["outputs"]["script"])
    assert script.status_code == 200
    assert script.text.startswith("# ")

    chapters = client.get(status["outputs"]["chapters"]).json()
    assert chapters and 20 <= chapters[-1]["end_sec"] <= 90

    audio = client.get(status["outputs"]["audio"])
    assert audio.headers["content-type"] == "audio/wav"
    assert parse_wav_header(audio.content).sample_rate == 16000

    metadata = client.get(status["outputs"]["metadata"]).json()
    assert metadata["providers"] == {"llm": "mock", "tts": "mock"}


def test_missing_job_and_artifacts_are_404(client: TestClient) -> None:
    assert client.get("/jobs/unknown").status_code == 404
    assert client.get("/jobs/unknown/script").status_code == 404
    assert client.get("/jobs/unknown/audio").status_code == 404

    job_id = client.post("/jobs/create", json={"topic": "tides"}).json()["job_id"]
    assert client.get(f"/jobs/{job_id}/chapters").status_code == 404
    assert client.get(f"/jobs/{job_id}/audio").status_code == 404
    assert client.get(f"/jobs/{job_id}/transcript").status_code == 404


def test_events_for_missing_job(client: TestClient) -> None:
    events = _events(client, "unknown")

    assert len(events) == 1
    assert events[0]["message"] == "Job not found"


def test_create_sweeps_old_jobs(client: TestClient, api_store: JobStore) -> None:
    api_store.storage.put("orphan/notes.txt", b"x", "text/plain")
    old = client.post("/jobs/create", json={"topic": "old"}).json()["job_id"]
    raw = json.loads(api_store.storage.get(f"{old}/state.json"))
    raw["created_at"] = "2000-01-01T00:00:00Z"
    api_store.storage.put(f"{old}/state.json", json.dumps(raw).encode(), "application/json")

    new = client.post("/jobs/create", json={"topic": "new"}).json()["job_id"]

    ids = api_store.storage.list_job_ids()
    assert new in ids
    assert old not in ids
    assert "orphan" in ids


def test_preview_returns_audio(client: TestClient) -> None:
    response = client.post("/preview", json={"voice": "ef_dora", "language": "es"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/wav"
    assert response.content[:4] == b"RIFF"


def test_preview_failure_is_500(client: TestClient) -> None:
    def _broken():
        raise ProviderConfigError("Unknown tts provider 'nope'")

    app.dependency_overrides[get_preview_tts] = lambda: _broken

    response = client.post("/preview", json={"language": "en"})

    assert response.status_code == 500
    assert response.json() == {"error": "Unknown tts provider 'nope'"}


def test_failed_job_over_http(api_store: JobStore) -> None:
    launcher = JobLauncher(api_store, llm=FailingLlm(), tts=MockTtsProvider())
    app.dependency_overrides[get_job_store] = lambda: api_store
    app.dependency_overrides[get_launcher] = lambda: launcher
    try:
        with TestClient(app) as client:
            job_id = client.post("/jobs/create", json={"topic": "tides"}).json()["job_id"]

            events = _events(client, job_id)
            status = client.get(f"/jobs/{job_id}").json()
    finally:
        app.dependency_overrides.clear()

    assert events[-1]["done"] is True
    assert events[-1]["status"] == "ERROR"
    assert status["status"] == "ERROR"
    assert status["error"] == "LLM failure"
    assert "outputs" not in status


@pytest.mark.anyio
async def test_two_streams_run_the_job_once(api_store: JobStore) -> None:
    llm = CountingLlm()
    launcher = JobLauncher(api_store, llm=llm, tts=MockTtsProvider())
    app.dependency_overrides[get_job_store] = lambda: api_store
    app.dependency_overrides[get_launcher] = lambda: launcher
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            created = await client.post("/jobs/create", json={"topic": "tides"})
            job_id = created.json()["job_id"]

            first, second = await asyncio.gather(
                client.get(f"/jobs/{job_id}/events"),
                client.get(f"/jobs/{job_id}/events"),
            )
        await launcher.wait_idle()
    finally:
        app.dependency_overrides.clear()

    for response in (first, second):
        assert response.status_code == 200
        assert '"done": true' in response.text
    assert llm.outlines == 1
    state = await api_store.read_state(job_id)
    assert state.status == "DONE"
    assert [log.message for log in state.logs].count("Generating outline") == 1


@pytest.mark.anyio
async def test_cleanup_keeps_jobs_that_are_running(api_store: JobStore) -> None:
    running = await api_store.init_job(JobInput(topic="running"))
    stale = await api_store.init_job(JobInput(topic="stale"))
    for job_id in (running, stale):
        await api_store.set_status(job_id, "RUNNING", "tts", 60, "Synthesizing audio")
        raw = json.loads(api_store.storage.get(f"{job_id}/state.json"))
        raw["created_at"] = "2000-01-01T00:00:00Z"
        api_store.storage.put(f"{job_id}/state.json", json.dumps(raw).encode(), "application/json")
    new = await api_store.init_job(JobInput(topic="new"))

    await main._cleanup_after_create(api_store, new, FixedLauncher({running}))

    ids = await api_store.list_job_ids()
    assert running in ids
    assert new in ids
    assert stale not in ids
