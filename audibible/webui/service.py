from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from audibible.bible_books import DEFAULT_VERSION
from audibible.errors import ValidationError
from audibible.tts_fish import FishCredentials

DEFAULT_MAX_COMPLETED_JOBS = 50
RECENT_HISTORY_LIMIT = 5


_JOB_LOGGER = logging.getLogger("audibible.jobs")
if not _JOB_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _JOB_LOGGER.addHandler(handler)
    _JOB_LOGGER.propagate = False
_JOB_LOGGER.setLevel(logging.DEBUG)

_JOB_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
}


def _emit_job_log(job_id: str, level: str, message: str) -> None:
    normalized = (level or "info").lower()
    log_level = _JOB_LEVEL_MAP.get(normalized, logging.INFO)
    try:
        _JOB_LOGGER.log(log_level, "[job %s] %s", job_id, message)
    except Exception:
        # Logging failures should never disrupt job processing.
        try:
            sys.stderr.write(f"Logging failed for job {job_id}: {message}\n")
        except OSError:
            pass


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class JobLog:
    timestamp: float
    message: str
    level: str = "info"


@dataclass
class TranscriptionParams:
    book: str
    chapter: Optional[int] = None
    version: str = DEFAULT_VERSION
    max_sentences: Optional[int] = None
    create_video: bool = False
    background_image_path: Optional[str] = None
    credentials: FishCredentials = field(default_factory=lambda: FishCredentials("", ""))
    transcribe_full_book: bool = False

    def public_dict(self) -> Dict[str, Any]:
        return {
            "book": self.book,
            "chapter": self.chapter,
            "version": self.version,
            "createVideo": self.create_video,
        }


@dataclass
class Job:
    id: str
    params: TranscriptionParams
    status: JobStatus = JobStatus.QUEUED
    position: Optional[int] = None
    queued_at: str = field(default_factory=_utcnow_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    logs: List[JobLog] = field(default_factory=list)

    def add_log(self, message: str, level: str = "info") -> None:
        entry = JobLog(timestamp=time.time(), message=message, level=level)
        self.logs.append(entry)
        _emit_job_log(self.id, level, message)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "queuedAt": self.queued_at,
            "position": self.position,
            "params": self.params.public_dict(),
        }
        if self.started_at:
            payload["startedAt"] = self.started_at
        if self.completed_at:
            payload["completedAt"] = self.completed_at
        if self.cancelled_at:
            payload["cancelledAt"] = self.cancelled_at
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class SubmitReceipt:
    job_id: str
    position: int
    queue_length: int


@dataclass(frozen=True)
class CancelResult:
    success: bool
    job: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def generate_job_id(params: TranscriptionParams, now_ms: Optional[int] = None) -> str:
    millis = now_ms if now_ms is not None else int(time.time() * 1000)
    segment = "FullBook" if params.transcribe_full_book else str(params.chapter)
    return f"{params.book}_{segment}_{millis}"


def job_epoch_millis(job_id: str) -> Optional[int]:
    suffix = job_id.rsplit("_", 1)[-1]
    try:
        return int(suffix)
    except ValueError:
        return None


class TranscriptionQueue:
    """Single-slot FIFO scheduler that runs one transcription at a time."""

    def __init__(
        self,
        runner: Callable[[Job], None],
        *,
        max_completed_jobs: int = DEFAULT_MAX_COMPLETED_JOBS,
        poll_interval: float = 0.5,
    ) -> None:
        self._runner = runner
        self._poll_interval = poll_interval
        self._max_completed_jobs = max(1, int(max_completed_jobs))
        self._jobs: Dict[str, Job] = {}
        self._queue: List[str] = []
        self._current: Optional[Job] = None
        self._history: Deque[Job] = deque(maxlen=self._max_completed_jobs)
        self._lock = threading.RLock()
        self._worker_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    # Public API ---------------------------------------------------------
    @property
    def max_completed_jobs(self) -> int:
        return self._max_completed_jobs

    def submit(self, params: TranscriptionParams, job_id: Optional[str] = None) -> SubmitReceipt:
        with self._lock:
            if job_id is None:
                job_id = self._unique_job_id(params)
            elif self._is_known_locked(job_id):
                raise ValidationError(f"Job id already in use: {job_id}")

            job = Job(id=job_id, params=params)
            self._jobs[job_id] = job
            self._queue.append(job_id)
            self._update_queue_positions_locked()
            receipt = SubmitReceipt(job_id=job_id, position=job.position or 1, queue_length=len(self._queue))
            job.add_log(f"Job queued at position {receipt.position}")

        self._ensure_worker()
        self._wake_event.set()
        return receipt

    def status(self) -> Dict[str, Any]:
        with self._lock:
            current = self._current
            queued = [self._jobs[job_id] for job_id in self._queue]
            recent = list(self._history)[-RECENT_HISTORY_LIMIT:]
            return {
                "processing": current is not None,
                "currentJob": current.as_dict() if current else None,
                "queueLength": len(queued),
                "queue": [job.as_dict() for job in queued],
                "recentCompleted": [job.as_dict() for job in recent],
            }

    def cancel(self, job_id: str) -> CancelResult:
        with self._lock:
            if job_id not in self._queue:
                return CancelResult(success=False, error="Job not found in queue")
            self._queue.remove(job_id)
            job = self._jobs.pop(job_id)
            job.status = JobStatus.CANCELLED
            job.position = None
            job.cancelled_at = _utcnow_iso()
            job.add_log("Job cancelled before start", level="warning")
            self._history.append(job)
            self._update_queue_positions_locked()
            return CancelResult(success=True, job=job.as_dict())

    def clear_history(self) -> int:
        with self._lock:
            removed = len(self._history)
            self._history.clear()
            return removed

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                return job
            for entry in self._history:
                if entry.id == job_id:
                    return entry
            return None

    def history(self) -> List[Job]:
        """Retained finished jobs, newest first."""
        with self._lock:
            return list(reversed(self._history))

    def is_processing(self) -> bool:
        with self._lock:
            return self._current is not None

    def shutdown(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5)
            self._worker_thread = None

    # Internal -----------------------------------------------------------
    def _is_known_locked(self, job_id: str) -> bool:
        return job_id in self._jobs or any(entry.id == job_id for entry in self._history)

    def _unique_job_id(self, params: TranscriptionParams) -> str:
        millis = int(time.time() * 1000)
        job_id = generate_job_id(params, millis)
        while self._is_known_locked(job_id):
            millis += 1
            job_id = generate_job_id(params, millis)
        return job_id

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker_thread and self._worker_thread.is_alive():
                return
            self._stop_event.clear()
            self._worker_thread = threading.Thread(
                target=self._worker_loop,
                name="audibible-transcription-worker",
                daemon=True,
            )
            self._worker_thread.start()

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            job = None
            with self._lock:
                self._wake_event.clear()
                if self._queue:
                    job = self._jobs[self._queue.pop(0)]
                    job.status = JobStatus.PROCESSING
                    job.position = None
                    job.started_at = _utcnow_iso()
                    self._current = job
                    self._update_queue_positions_locked()
            if job is None:
                self._wake_event.wait(timeout=self._poll_interval)
                continue
            self._run_job(job)

    def _run_job(self, job: Job) -> None:
        job.add_log("Job started", level="info")
        try:
            self._runner(job)
        except Exception as exc:
            job.error = str(exc)
            job.status = JobStatus.FAILED
            exc_type = exc.__class__.__name__
            job.add_log(f"Job failed ({exc_type}): {exc}", level="error")
            tb_lines = traceback.format_exception(exc.__class__, exc, exc.__traceback__)
            for line in tb_lines[:20]:
                trimmed = line.rstrip()
                if trimmed:
                    for snippet in trimmed.splitlines():
                        job.add_log(f"TRACE: {snippet}", level="debug")
        else:
            job.status = JobStatus.COMPLETED
            job.add_log("Job completed", level="success")
        finally:
            job.completed_at = _utcnow_iso()
            with self._lock:
                self._jobs.pop(job.id, None)
                self._history.append(job)
                self._current = None
                self._update_queue_positions_locked()

    def _update_queue_positions_locked(self) -> None:
        for index, job_id in enumerate(self._queue, start=1):
            job = self._jobs.get(job_id)
            if job:
                job.position = index


def build_service(
    runner: Callable[[Job], None],
    *,
    max_completed_jobs: int = DEFAULT_MAX_COMPLETED_JOBS,
    poll_interval: float = 0.5,
) -> TranscriptionQueue:
    return TranscriptionQueue(
        runner=runner,
        max_completed_jobs=max_completed_jobs,
        poll_interval=poll_interval,
    )
