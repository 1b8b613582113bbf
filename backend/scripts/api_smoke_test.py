from __future__ import annotations

import argparse
import json
from typing import Any

import requests


def _log(title: str, payload: Any) -> None:
    print(f"\n=== {title} ===")
    if isinstance(payload, (dict, list)):
        print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    else:
        print(payload)


def _follow_events(session: requests.Session, base: str, job_id: str, timeout: float) -> dict[str, Any] | None:
    final: dict[str, Any] | None = None
    with session.get(f"{base}/jobs/{job_id}/events", stream=True, timeout=timeout) as r:
        r.raise_for_status()
        for raw in r.iter_lines(decode_unicode=True):
            if not raw or not raw.startswith("data: "):
                continue
            event = json.loads(raw[len("data: "):])
            print(f"[event] status={event.get('status')} step={event.get('step')} "
                  f"percent={event.get('percent')} message={event.get('message')}")
            if event.get("done") or event.get("message") == "Job not found":
                final = event
                break
    return final


def run(
    base_url: str,
    topic: str,
    duration: int,
    language: str,
    voice: str | None,
    with_job: bool,
    stream_timeout: float,
) -> int:
    base = base_url.rstrip("/")
    session = requests.Session()
    ok = True

    # 1) health
    r = session.get(f"{base}/health", timeout=15)
    _log("GET /health", {"status_code": r.status_code, "body": r.json()})
    ok = ok and r.status_code == 200

    # 2) validation errors come back as 400 with field details
    r = session.post(f"{base}/jobs/create", json={"topic": "  "}, timeout=20)
    _log("POST /jobs/create (invalid)", {"status_code": r.status_code, "body": r.json()})
    ok = ok and r.status_code == 400

    # 3) voice preview
    r = session.post(f"{base}/preview", json={"voice": voice, "language": language}, timeout=60)
    _log("POST /preview", {"status_code": r.status_code, "content_type": r.headers.get("content-type"),
                           "bytes": len(r.content)})
    ok = ok and r.status_code == 200

    # 4) optional job flow
    if with_job:
        job_payload: dict[str, Any] = {"topic": topic, "duration_minutes": duration, "language": language}
        if voice:
            job_payload["voice"] = voice
        r = session.post(f"{base}/jobs/create", json=job_payload, timeout=20)
        body = r.json()
        _log("POST /jobs/create", {"status_code": r.status_code, "body": body})
        ok = ok and r.status_code == 200

        if r.status_code == 200 and body.get("job_id"):
            job_id = body["job_id"]
            final_event = _follow_events(session, base, job_id, stream_timeout)
            _log("events (final)", final_event)
            rr = session.get(f"{base}/jobs/{job_id}", timeout=20)
            final = rr.json()
            _log("GET /jobs/{job_id} (final)", final)
            ok = ok and final.get("status") == "DONE"
            if final.get("status") == "DONE":
                for name in ("script", "chapters", "audio", "metadata"):
                    ar = session.get(f"{base}/jobs/{job_id}/{name}", timeout=60)
                    _log(f"GET /jobs/{{job_id}}/{name}", {"status_code": ar.status_code, "bytes": len(ar.content)})
                    ok = ok and ar.status_code == 200

    return 0 if ok else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Topicast API smoke test")
    parser.add_argument(
        "--base-url", default="http://127.0.0.1:8000", help="API base URL"
    )
    parser.add_argument("--topic", default="history of space exploration", help="Topic used for job test")
    parser.add_argument("--duration", type=int, default=1, help="Episode length in minutes (1-20).")
    parser.add_argument("--language", default="en", help="Language tag for the episode and preview.")
    parser.add_argument("--voice", default=None, help="Optional voice override.")
    parser.add_argument(
        "--with-job",
        action="store_true",
        help="Create a job and follow its progress stream (can take long).",
    )
    parser.add_argument(
        "--stream-timeout",
        type=float,
        default=900.0,
        help="Read timeout seconds for the progress stream.",
    )
    args = parser.parse_args()
    return run(
        base_url=args.base_url,
        topic=args.topic,
        duration=args.duration,
        language=args.language,
        voice=args.voice,
        with_job=args.with_job,
        stream_timeout=args.stream_timeout,
    )


if __name__ == "__main__":
    raise SystemExit(main())
