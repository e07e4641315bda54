"""
Background job queue for scan jobs.

A small thread-based queue: the CLI (or a scheduler calling `scan-auto`)
enqueues a scan and returns immediately, while worker threads run it inside
a Flask app context. Failed jobs are retried with exponential backoff unless
the error says it is not retryable (e.g. the account no longer exists).
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Job execution status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """Represents a background job."""

    job_id: str
    job_type: str
    account_id: int
    max_attempts: int = 3
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    not_before: float = 0.0  # time.monotonic() value before which the job must not start
    error: Optional[str] = None
    result: Any = None

    def __post_init__(self) -> None:
        """Store execute function separately (not in dataclass fields)."""
        self._execute_fn: Optional[Callable[[], Any]] = None

    def set_execute_fn(self, fn: Callable[[], Any]) -> None:
        self._execute_fn = fn

    def execute(self) -> Any:
        if not self._execute_fn:
            raise ValueError(f"Job {self.job_id} has no execute function")
        return self._execute_fn()


def _is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True) is not False


class JobQueue:
    """
    Thread-based job queue for background processing.

    Args:
        app: Flask app; every job runs inside `app.app_context()`
        max_workers: number of worker threads (jobs running at the same time)
        max_attempts: attempts per job before it is marked failed
        backoff_seconds: delay before the first retry, doubled on each further retry
    """

    def __init__(
        self,
        app: Any,
        max_workers: int = 2,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ) -> None:
        self._app = app
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._queue: List[Job] = []
        self._max_workers = max_workers
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._active_workers = 0
        self._shutdown = False
        self._worker_threads: List[threading.Thread] = []

        for i in range(max_workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"JobQueue-Worker-{i}",
                daemon=True,
            )
            thread.start()
            self._worker_threads.append(thread)

        logger.info(f"JobQueue initialized with {max_workers} workers")

    def enqueue(
        self,
        job_type: str,
        account_id: int,
        execute_fn: Callable[[], Any],
        job_id: Optional[str] = None,
    ) -> str:
        """Enqueue a new job and return its id."""
        if self._shutdown:
            raise RuntimeError("JobQueue is shut down")
        if job_id is None:
            job_id = str(uuid.uuid4())

        job = Job(
            job_id=job_id,
            job_type=job_type,
            account_id=account_id,
            max_attempts=self._max_attempts,
        )
        job.set_execute_fn(execute_fn)

        with self._lock:
            self._jobs[job_id] = job
            self._queue.append(job)

        logger.info(f"Enqueued job {job_id} (type: {job_type}, account: {account_id})")
        return job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt: backoff, 2x backoff, 4x backoff, ..."""
        return self._backoff_seconds * (2 ** (attempt - 1))

    def _next_ready_job(self) -> Optional[Job]:
        now = time.monotonic()
        for index, job in enumerate(self._queue):
            if job.not_before <= now:
                return self._queue.pop(index)
        return None

    def _worker_loop(self) -> None:
        """Worker thread main loop."""
        while not self._shutdown:
            job = None
            try:
                with self._lock:
                    job = self._next_ready_job()
                    if job:
                        self._active_workers += 1

                if job:
                    self._execute_job(job)
                else:
                    time.sleep(0.1)

            except Exception:
                logger.exception("Error in worker thread")
            finally:
                if job:
                    with self._lock:
                        self._active_workers -= 1

    def _execute_job(self, job: Job) -> None:
        """Run one attempt of a job and either complete, reschedule or fail it."""
        job.attempts += 1
        job.status = JobStatus.RUNNING
        job.started_at = _utcnow()
        logger.info(f"Starting job {job.job_id} (type: {job.job_type}, attempt {job.attempts}/{job.max_attempts})")

        try:
            # DB connections live on `g`; the app context teardown closes them
            with self._app.app_context():
                result = job.execute()
        except Exception as exc:
            job.error = str(exc)
            if _is_retryable(exc) and job.attempts < job.max_attempts:
                delay = self.backoff_delay(job.attempts)
                retry_after = getattr(exc, "retry_after", None)
                if retry_after:
                    delay = max(delay, float(retry_after))
                job.status = JobStatus.QUEUED
                job.not_before = time.monotonic() + delay
                with self._lock:
                    self._queue.append(job)
                logger.warning(f"Job {job.job_id} failed ({exc}); retrying in {delay:.1f}s")
                return

            job.status = JobStatus.FAILED
            job.completed_at = _utcnow()
            logger.exception(f"Job {job.job_id} failed after {job.attempts} attempt(s): {exc}")
            return

        job.status = JobStatus.COMPLETE
        job.completed_at = _utcnow()
        job.result = result
        logger.info(
            f"Completed job {job.job_id} in "
            f"{(job.completed_at - job.started_at).total_seconds():.2f}s"
        )

    def wait_until_idle(self, timeout: float = 10.0) -> bool:
        """Block until no job is queued or running. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._queue and self._active_workers == 0:
                    return True
            time.sleep(0.05)
        return False

    def shutdown(self) -> None:
        """Stop the workers and wait for running jobs to finish."""
        if self._shutdown:
            return
        self._shutdown = True
        for thread in self._worker_threads:
            thread.join(timeout=5.0)
        logger.info("JobQueue shut down")
