from __future__ import annotations

import asyncio
import os
import re
import shutil
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

from pydantic import ValidationError

from schemas import JobInput, JobLog, JobMetadata, JobOutputs, JobState, JobStatus

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_INCOMPLETE_STATUSES = frozenset({"QUEUED", "RUNNING"})
DEFAULT_FILES_BASE_URL = "/files"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotFoundError(LookupError):
    pass


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ArtifactNotFoundError(NotFoundError):
    def __init__(self, job_id: str, filename: str) -> None:
        super().__init__(f"Artifact not found: {job_id}/{filename}")
        self.job_id = job_id
        self.filename = filename


class JobStateError(RuntimeError):
    """Raised when a state update would break the job lifecycle rules."""


@dataclass
class CleanupResult:
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class ObjectStorage(ABC):
    name: str

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        raise NotImplementedError

    @abstractmethod
    def list_job_ids(self) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def delete_prefix(self, prefix: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def url_for(self, key: str) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class InMemoryObjectStorage(ObjectStorage):
    name = "memory"

    def __init__(self, base_url: str = DEFAULT_FILES_BASE_URL) -> None:
        self._lock = Lock()
        self._objects: dict[str, bytes] = {}
        self.base_url = base_url.rstrip("/")

    def put(self, key: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self._objects[key] = bytes(data)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._objects.get(key)

    def list_job_ids(self) -> list[str]:
        with self._lock:
            return sorted({key.split("/", 1)[0] for key in self._objects if "/" in key})

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._objects if k.startswith(prefix)]:
                del self._objects[key]

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"


class LocalObjectStorage(ObjectStorage):
    """Directory tree under ``root``; writes go through a temp file and ``os.replace``."""

    name = "local"

    def __init__(self, root: str, base_url: str = DEFAULT_FILES_BASE_URL) -> None:
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.root, *key.split("/"))

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", dir=os.path.dirname(path))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def list_job_ids(self) -> list[str]:
        return sorted(
            entry.name for entry in os.scandir(self.root) if entry.is_dir() and _JOB_ID_RE.match(entry.name)
        )

    def delete_prefix(self, prefix: str) -> None:
        path = self._path(prefix.rstrip("/"))
        if os.path.isdir(path):
            shutil.rmtree(path)

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"


class GcsObjectStorage(ObjectStorage):
    name = "gcs"

    def __init__(self, bucket: str, *, project: str | None = None, public_base_url: str | None = None) -> None:
        from google.cloud import storage  # type: ignore

        self._client = storage.Client(project=project or None)
        self._bucket = self._client.bucket(bucket)
        self.bucket_name = bucket
        self.public_base_url = (public_base_url or f"https://storage.googleapis.com/{bucket}").rstrip("/")

    def put(self, key: str, data: bytes, content_type: str) -> None:
        blob = self._bucket.blob(key)
        blob.upload_from_string(data, content_type=content_type)

    def get(self, key: str) -> bytes | None:
        from google.api_core.exceptions import NotFound  # type: ignore

        try:
            return self._bucket.blob(key).download_as_bytes()
        except NotFound:
            return None

    def exists(self, key: str) -> bool:
        return bool(self._bucket.blob(key).exists())

    def list_job_ids(self) -> list[str]:
        iterator = self._client.list_blobs(self.bucket_name, delimiter="/")
        for _ in iterator:
            pass
        return sorted(prefix.rstrip("/") for prefix in iterator.prefixes)

    def delete_prefix(self, prefix: str) -> None:
        for blob in self._client.list_blobs(self.bucket_name, prefix=prefix):
            blob.delete()

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"


def default_data_dir() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "job_data")


def create_object_storage() -> ObjectStorage:
    backend = os.environ.get("JOB_STORAGE_BACKEND", "local").strip().lower() or "local"
    base_url = os.environ.get("FILES_BASE_URL", "").strip() or DEFAULT_FILES_BASE_URL
    if backend == "memory":
        return InMemoryObjectStorage(base_url=base_url)
    if backend == "gcs":
        try:
            bucket = os.environ.get("GCS_BUCKET", "").strip()
            if not bucket:
                raise RuntimeError("GCS_BUCKET is not set")
            storage = GcsObjectStorage(
                bucket,
                project=os.environ.get("GCP_PROJECT_ID"),
                public_base_url=os.environ.get("GCS_PUBLIC_BASE_URL", "").strip() or None,
            )
            print(f"[job_store] GCS enabled bucket={bucket}")
            return storage
        except Exception as exc:
            print(f"[job_store] GCS disabled, fallback to local: {exc}")
    root = os.environ.get("JOB_DATA_DIR", "").strip() or default_data_dir()
    return LocalObjectStorage(root, base_url=base_url)


def _key(job_id: str, filename: str) -> str:
    return f"{job_id}/{filename}"


class JobStore:
    """Durable home of job metadata, state and artifacts.

    Every public method is a coroutine; storage calls run in a worker thread.
    State updates are read-modify-write under a process-local lock and enforce
    the lifecycle rules: percent never decreases, DONE and ERROR are final, and
    outputs are written once together with DONE.
    """

    def __init__(self, storage: ObjectStorage) -> None:
        self.storage = storage
        self._lock = Lock()

    @property
    def backend(self) -> str:
        return self.storage.name

    def _check_id(self, job_id: str) -> None:
        if not job_id or not _JOB_ID_RE.match(job_id):
            raise JobNotFoundError(job_id)

    def _put_json(self, key: str, model: Any) -> None:
        self.storage.put(key, model.model_dump_json(indent=2).encode("utf-8"), "application/json")

    def _read_state_sync(self, job_id: str) -> JobState:
        self._check_id(job_id)
        raw = self.storage.get(_key(job_id, "state.json"))
        if raw is None:
            raise JobNotFoundError(job_id)
        return JobState.model_validate_json(raw)

    def _read_metadata_sync(self, job_id: str) -> JobMetadata:
        self._check_id(job_id)
        raw = self.storage.get(_key(job_id, "metadata.json"))
        if raw is None:
            raise JobNotFoundError(job_id)
        return JobMetadata.model_validate_json(raw)

    def _init_job_sync(self, job_input: JobInput, job_id: str) -> str:
        now = utc_now()
        self._put_json(_key(job_id, "metadata.json"), JobMetadata(job_id=job_id, input=job_input, created_at=now))
        state = JobState(
            job_id=job_id,
            status="QUEUED",
            step="queued",
            percent=0,
            message="Job queued",
            logs=[JobLog(step="queued", percent=0, message="Job queued", ts=now)],
            created_at=now,
            updated_at=now,
        )
        self._put_json(_key(job_id, "state.json"), state)
        return job_id

    async def init_job(self, job_input: JobInput, job_id: str | None = None) -> str:
        job_id = job_id or uuid.uuid4().hex
        self._check_id(job_id)
        await asyncio.to_thread(self._init_job_sync, job_input, job_id)
        print(f"[job_store] init job={job_id} backend={self.backend}")
        return job_id

    async def read_state(self, job_id: str) -> JobState:
        return await asyncio.to_thread(self._read_state_sync, job_id)

    async def read_metadata(self, job_id: str) -> JobMetadata:
        return await asyncio.to_thread(self._read_metadata_sync, job_id)

    async def write_metadata(self, metadata: JobMetadata) -> None:
        self._check_id(metadata.job_id)
        await asyncio.to_thread(self._put_json, _key(metadata.job_id, "metadata.json"), metadata)

    def _update_state_sync(self, job_id: str, patch: dict[str, Any], append_log: bool) -> JobState:
        with self._lock:
            current = self._read_state_sync(job_id)
            outputs = patch.get("outputs")
            # a DONE job still accepts its outputs once, as a patch of its own
            attach_outputs = set(patch) == {"outputs"} and current.status == "DONE"
            if current.is_terminal and not attach_outputs:
                raise JobStateError(f"Job {job_id} is {current.status} and can not be updated")

            status: JobStatus = patch.get("status") or current.status
            if outputs is not None:
                if current.outputs is not None:
                    raise JobStateError(f"Outputs for job {job_id} are already set")
                if status != "DONE":
                    raise JobStateError(f"Outputs can only be set when job {job_id} is DONE")

            now = utc_now()
            percent = patch.get("percent")
            updated = current.model_copy(
                update={
                    "status": status,
                    "step": patch.get("step") or current.step,
                    "percent": current.percent if percent is None else max(current.percent, min(100, int(percent))),
                    "message": patch.get("message") if patch.get("message") is not None else current.message,
                    "error": patch.get("error") if status == "ERROR" else None,
                    "outputs": outputs if outputs is not None else current.outputs,
                    "updated_at": now,
                }
            )
            if append_log:
                updated.logs = [
                    *current.logs,
                    JobLog(step=updated.step, percent=updated.percent, message=updated.message, ts=now),
                ]
            self._put_json(_key(job_id, "state.json"), updated)
            return updated

    async def update_state(self, job_id: str, patch: dict[str, Any], *, append_log: bool = True) -> JobState:
        return await asyncio.to_thread(self._update_state_sync, job_id, patch, append_log)

    async def set_status(
        self,
        job_id: str,
        status: JobStatus,
        step: str,
        percent: int,
        message: str,
        *,
        error: str | None = None,
        outputs: JobOutputs | None = None,
    ) -> JobState:
        patch: dict[str, Any] = {"status": status, "step": step, "percent": percent, "message": message}
        if error is not None:
            patch["error"] = error
        if outputs is not None:
            patch["outputs"] = outputs
        return await self.update_state(job_id, patch)

    async def set_outputs(self, job_id: str, outputs: JobOutputs) -> JobState:
        return await self.update_state(job_id, {"outputs": outputs}, append_log=False)

    def _save_file_sync(self, job_id: str, filename: str, content: bytes, content_type: str) -> str:
        key = _key(job_id, filename)
        self.storage.put(key, content, content_type)
        return self.storage.url_for(key)

    def locator(self, job_id: str, filename: str) -> str:
        return self.storage.url_for(_key(job_id, filename))

    async def save_file(self, job_id: str, filename: str, content: bytes | str, content_type: str) -> str:
        self._check_id(job_id)
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        return await asyncio.to_thread(self._save_file_sync, job_id, filename, data, content_type)

    def _read_file_sync(self, job_id: str, filename: str) -> bytes:
        self._check_id(job_id)
        if not self.storage.exists(_key(job_id, "state.json")):
            raise JobNotFoundError(job_id)
        data = self.storage.get(_key(job_id, filename))
        if data is None:
            raise ArtifactNotFoundError(job_id, filename)
        return data

    async def read_file(self, job_id: str, filename: str) -> bytes:
        return await asyncio.to_thread(self._read_file_sync, job_id, filename)

    async def list_job_ids(self) -> list[str]:
        return await asyncio.to_thread(self.storage.list_job_ids)

    async def delete_job(self, job_id: str) -> None:
        self._check_id(job_id)
        await asyncio.to_thread(self.storage.delete_prefix, f"{job_id}/")

    async def _job_age_and_status(self, job_id: str) -> tuple[datetime, str | None]:
        try:
            state = await self.read_state(job_id)
            return state.created_at, state.status
        except (NotFoundError, ValidationError, ValueError):
            pass
        metadata = await self.read_metadata(job_id)
        return metadata.created_at, None

    async def cleanup(
        self,
        *,
        max_age_hours: float = 24,
        delete_incomplete: bool = True,
        incomplete_threshold_minutes: float = 30,
        exclude_job_ids: set[str] | frozenset[str] = frozenset(),
    ) -> CleanupResult:
        result = CleanupResult()
        now = utc_now()
        try:
            job_ids = await self.list_job_ids()
        except Exception as exc:
            result.errors.append(f"list: {exc}")
            return result

        for job_id in job_ids:
            if job_id in exclude_job_ids:
                continue
            try:
                created_at, status = await self._job_age_and_status(job_id)
            except Exception as exc:
                result.errors.append(f"{job_id}: unreadable job ({exc})")
                continue
            age = now - created_at
            expired = age > timedelta(hours=max_age_hours)
            stale = (
                delete_incomplete
                and status in _INCOMPLETE_STATUSES
                and age > timedelta(minutes=incomplete_threshold_minutes)
            )
            if not (expired or stale):
                continue
            try:
                await self.delete_job(job_id)
                result.deleted.append(job_id)
            except Exception as exc:
                result.errors.append(f"{job_id}: {exc}")

        if result.deleted or result.errors:
            print(f"[job_store] cleanup deleted={len(result.deleted)} errors={len(result.errors)}")
        return result
