"""Client-side job poller.

Tracks the caller's queued/processing jobs, re-fetches their status on an
interval, and fires completion callbacks once per job when it reaches
completed or failed. Status comes from a JobStatusSource, so a push-based
source can replace HTTP polling without touching callers.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
ACTIVE_STATUSES = ("queued", "processing")
TERMINAL_STATUSES = ("completed", "failed")

JobCallback = Callable[[dict], None]


class JobStatusSource(Protocol):
    def list_active_jobs(self) -> list[dict]: ...

    def get_job(self, job_id: str) -> dict | None: ...

    def cancel_job(self, job_id: str) -> bool: ...


class JobPoller:
    def __init__(self, source: JobStatusSource, interval: float = DEFAULT_INTERVAL):
        self.source = source
        self.interval = interval
        self._jobs: dict[str, dict] = {}
        self._callbacks: dict[str, JobCallback] = {}
        self._lock = threading.RLock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def active_jobs(self) -> list[dict]:
        with self._lock:
            return [dict(job) for job in self._jobs.values()]

    @property
    def is_polling(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def on_complete(self, key: str, callback: JobCallback) -> None:
        """Register a callback under key; re-registering a key replaces it."""
        with self._lock:
            self._callbacks[key] = callback

    def remove_callback(self, key: str) -> None:
        with self._lock:
            self._callbacks.pop(key, None)

    def track(self, job: dict) -> None:
        """Add a freshly dispatched job and make sure polling is running."""
        if job.get("status", "queued") not in ACTIVE_STATUSES:
            return
        job = {**job, "status": job.get("status", "queued")}
        with self._lock:
            self._jobs[job["id"]] = job
        self._ensure_running()

    def start(self) -> None:
        """Reconcile with the server's active jobs and (re)start the timer.

        Safe to call repeatedly; a running timer is stopped first.
        """
        self.stop()
        try:
            server_jobs = self.source.list_active_jobs()
        except Exception:
            logger.exception("Could not fetch active jobs")
            server_jobs = []
        with self._lock:
            for job in server_jobs:
                if job.get("status") in ACTIVE_STATUSES:
                    self._jobs[job["id"]] = dict(job)
        self._ensure_running()

    def stop(self) -> None:
        with self._lock:
            event, thread = self._stop_event, self._thread
            self._stop_event = None
            self._thread = None
        if event:
            event.set()
        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)

    def cancel(self, job_id: str) -> bool:
        """Ask the server to cancel a queued job; drop it locally on success."""
        if not self.source.cancel_job(job_id):
            return False
        with self._lock:
            self._jobs.pop(job_id, None)
            empty = not self._jobs
        if empty:
            self.stop()
        return True

    def poll_once(self) -> list[dict]:
        """Fetch every tracked job once. Returns the jobs that finished."""
        with self._lock:
            job_ids = list(self._jobs)

        finished = []
        for job_id in job_ids:
            try:
                job = self.source.get_job(job_id)
            except Exception:
                logger.warning("Status check failed for job %s", job_id, exc_info=True)
                continue
            with self._lock:
                if job_id not in self._jobs:
                    continue
                if job is None:
                    logger.info("Job %s no longer exists, dropping it", job_id)
                    del self._jobs[job_id]
                elif job.get("status") in TERMINAL_STATUSES:
                    del self._jobs[job_id]
                    finished.append(job)
                else:
                    self._jobs[job_id] = job

        for job in finished:
            self._fire(job)
        return finished

    def _fire(self, job: dict) -> None:
        with self._lock:
            callbacks = list(self._callbacks.items())
        for key, callback in callbacks:
            try:
                callback(job)
            except Exception:
                logger.exception("Completion callback %r failed for job %s", key, job.get("id"))

    def _ensure_running(self) -> None:
        with self._lock:
            if not self._jobs or (self._thread is not None and self._thread.is_alive()):
                return
            event = threading.Event()
            thread = threading.Thread(target=self._run, args=(event,), daemon=True, name="job-poller")
            self._stop_event = event
            self._thread = thread
        thread.start()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            self.poll_once()
            with self._lock:
                if not self._jobs:
                    if self._stop_event is stop_event:
                        self._stop_event = None
                        self._thread = None
                    return
