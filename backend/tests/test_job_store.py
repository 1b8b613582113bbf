from __future__ import annotations

from datetime import timedelta

import pytest

from job_store import (
    ArtifactNotFoundError,
    InMemoryObjectStorage,
    JobNotFoundError,
    JobStateError,
    JobStore,
    LocalObjectStorage,
    utc_now,
)
from schemas import JobOutputs

OUTPUTS = JobOutputs(script="s", chapters="c", audio="a", metadata="m")


async def _backdate(store: JobStore, job_id: str, delta: timedelta) -> None:
    state = await store.read_state(job_id)
    metadata = await store.read_metadata(job_id)
    created = utc_now() - delta
    store.storage.put(
        f"{job_id}/state.json",
        state.model_copy(update={"created_at": created}).model_dump_json().encode(),
        "application/json",
    )
    await store.write_metadata(metadata.model_copy(update={"created_at": created}))


@pytest.mark.anyio
async def test_init_job_writes_metadata_and_queued_state(store: JobStore, job_input) -> None:
    job_id = await store.init_job(job_input)

    state = await store.read_state(job_id)
    metadata = await store.read_metadata(job_id)

    assert state.status == "QUEUED"
    assert state.percent == 0
    assert [log.message for log in state.logs] == ["Job queued"]
    assert metadata.input.topic == "history of space exploration"


@pytest.mark.anyio
async def test_unknown_or_malformed_job_is_not_found(store: JobStore) -> None:
    with pytest.raises(JobNotFoundError):
        await store.read_state("missing")
    with pytest.raises(JobNotFoundError):
        await store.read_metadata("../etc")


@pytest.mark.anyio
async def test_percent_never_decreases_and_logs_only_grow(store: JobStore, job_input) -> None:
    job_id = await store.init_job(job_input)
    await store.set_status(job_id, "RUNNING", "outline", 10, "Generating outline")
    before = (await store.read_state(job_id)).logs

    state = await store.set_status(job_id, "RUNNING", "script", 5, "Drafting script")

    assert state.percent == 10
    assert state.logs[: len(before)] == before
    assert len(state.logs) == len(before) + 1


@pytest.mark.anyio
async def test_terminal_jobs_can_not_change(store: JobStore, job_input) -> None:
    job_id = await store.init_job(job_input)
    await store.set_status(job_id, "ERROR", "error", 100, "boom", error="boom")

    with pytest.raises(JobStateError):
        await store.set_status(job_id, "RUNNING", "outline", 100, "again")
    state = await store.read_state(job_id)
    assert state.error == "boom"


@pytest.mark.anyio
async def test_outputs_only_with_done(store: JobStore, job_input) -> None:
    job_id = await store.init_job(job_input)
    await store.set_status(job_id, "RUNNING", "mix", 85, "Mixing audio")

    with pytest.raises(JobStateError):
        await store.set_outputs(job_id, OUTPUTS)

    state = await store.set_status(job_id, "DONE", "finalize", 100, "Job complete", outputs=OUTPUTS)
    assert state.outputs == OUTPUTS
    assert state.error is None
    with pytest.raises(JobStateError):
        await store.set_outputs(job_id, OUTPUTS)


@pytest.mark.anyio
async def test_set_outputs_after_done(store: JobStore, job_input) -> None:
    job_id = await store.init_job(job_input)
    done = await store.set_status(job_id, "DONE", "finalize", 100, "Job complete")
    assert done.outputs is None

    state = await store.set_outputs(job_id, OUTPUTS)

    assert state.status == "DONE"
    assert state.outputs == OUTPUTS
    assert state.logs == done.logs
    assert (await store.read_state(job_id)).outputs == OUTPUTS
    with pytest.raises(JobStateError):
        await store.set_outputs(job_id, OUTPUTS)
    with pytest.raises(JobStateError):
        await store.set_status(job_id, "RUNNING", "mix", 100, "again")


@pytest.mark.anyio
async def test_files_and_locators(store: JobStore, job_input) -> None:
    job_id = await store.init_job(job_input)

    locator = await store.save_file(job_id, "script.md", "# hi", "text/markdown")

    assert locator == f"/files/{job_id}/script.md"
    assert await store.read_file(job_id, "script.md") == b"# hi"
    with pytest.raises(ArtifactNotFoundError):
        await store.read_file(job_id, "audio.wav")
    with pytest.raises(JobNotFoundError):
        await store.read_file("nope", "script.md")


@pytest.mark.anyio
async def test_cleanup_deletes_old_and_stale_jobs(store: JobStore, job_input) -> None:
    old_done = await store.init_job(job_input)
    await store.set_status(old_done, "DONE", "finalize", 100, "Job complete", outputs=OUTPUTS)
    await _backdate(store, old_done, timedelta(hours=25))

    stale_running = await store.init_job(job_input)
    await store.set_status(stale_running, "RUNNING", "tts", 60, "Synthesizing audio")
    await _backdate(store, stale_running, timedelta(minutes=45))

    recent_queued = await store.init_job(job_input)
    await _backdate(store, recent_queued, timedelta(minutes=5))

    excluded = await store.init_job(job_input)
    await _backdate(store, excluded, timedelta(hours=48))

    result = await store.cleanup(
        max_age_hours=24,
        delete_incomplete=True,
        incomplete_threshold_minutes=30,
        exclude_job_ids={excluded},
    )

    assert sorted(result.deleted) == sorted([old_done, stale_running])
    assert result.errors == []
    assert sorted(await store.list_job_ids()) == sorted([recent_queued, excluded])
    with pytest.raises(JobNotFoundError):
        await store.read_state(old_done)


@pytest.mark.anyio
async def test_cleanup_reports_unreadable_jobs(store: JobStore) -> None:
    store.storage.put("broken/notes.txt", b"x", "text/plain")

    result = await store.cleanup()

    assert result.deleted == []
    assert len(result.errors) == 1 and result.errors[0].startswith("broken:")


@pytest.mark.anyio
async def test_local_storage_round_trip(tmp_path, job_input) -> None:
    store = JobStore(LocalObjectStorage(str(tmp_path), base_url="http://cdn.test/files/"))
    job_id = await store.init_job(job_input)

    locator = await store.save_file(job_id, "sections/section_01.wav", b"RIFF", "audio/wav")

    assert locator == f"http://cdn.test/files/{job_id}/sections/section_01.wav"
    assert (tmp_path / job_id / "sections" / "section_01.wav").read_bytes() == b"RIFF"
    assert await store.list_job_ids() == [job_id]
    assert not [p for p in (tmp_path / job_id).rglob(".tmp_*")]

    await store.delete_job(job_id)
    assert await store.list_job_ids() == []


def test_in_memory_list_job_ids() -> None:
    storage = InMemoryObjectStorage()
    storage.put("b/state.json", b"{}", "application/json")
    storage.put("a/sections/section_01.wav", b"", "audio/wav")

    assert storage.list_job_ids() == ["a", "b"]
