"""In-memory background job store.

Used for call-id reconciliation: the request returns a job id at once
and the client polls `GET /api/jobs/{job_id}`. Jobs live only in this
process and are forgotten `ttl_seconds` after they finish.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Job:
    job_id: str
    kind: str
    owner: str
    request_id: str
    status: str = QUEUED
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    # monotonic finish time, used for expiry and eviction order
    finished_mono: Optional[float] = field(default=None, repr=False)

    def snapshot(self) -> dict:
        out = asdict(self)
        out.pop("finished_mono")
        return out


class JobStore:
    def __init__(self, max_jobs: int = 500, ttl_seconds: int = 24 * 3600, clock=time.monotonic):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def submit(self, *, kind: str, owner: str, request_id: str, worker: Callable[[], Any]) -> dict:
        """Register a job and start `worker` on a daemon thread."""
        job = Job(job_id=uuid.uuid4().hex, kind=kind, owner=owner, request_id=request_id)
        with self._lock:
            self._expire_locked()
            self._jobs[job.job_id] = job
            self._evict_locked()
        threading.Thread(target=self._run, args=(job.job_id, worker), daemon=True).start()
        return {"job_id": job.job_id, "status": QUEUED}

    def get(self, job_id: str, owner: Optional[str] = None) -> Optional[dict]:
        """Return a snapshot of the job, or `None` if unknown or owned by someone else."""
        with self._lock:
            self._expire_locked()
            job = self._jobs.get(job_id)
            if job is None or (owner is not None and job.owner != owner):
                return None
            return job.snapshot()

    def _run(self, job_id: str, worker: Callable[[], Any]) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = RUNNING
            job.started_at = _now_iso()
        try:
            result = worker()
        except Exception as exc:
            self._finish(job_id, FAILED, error=str(exc))
        else:
            self._finish(job_id, SUCCEEDED, result=result)

    def _finish(self, job_id: str, status: str, result: Any = None, error: Optional[str] = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = status
            job.result = result
            job.error = error
            job.finished_at = _now_iso()
            job.finished_mono = self._clock()

    def _expire_locked(self) -> None:
        cutoff = self._clock() - self._ttl_seconds
        expired = [j.job_id for j in self._jobs.values() if j.finished_mono is not None and j.finished_mono < cutoff]
        for job_id in expired:
            del self._jobs[job_id]

    def _evict_locked(self) -> None:
        """Drop the oldest finished jobs while over capacity; running jobs stay."""
        overflow = len(self._jobs) - self._max_jobs
        if overflow <= 0:
            return
        finished = sorted((j for j in self._jobs.values() if j.finished_mono is not None),
                          key=lambda j: j.finished_mono)
        for job in finished[:overflow]:
            del self._jobs[job.job_id]
