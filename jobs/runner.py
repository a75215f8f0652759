"""Background execution of platform jobs on a small worker pool."""
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from config import RUNNER_WORKERS
from observability.logger import get_logger, job_context, log_job_event
from observability.metrics import get_registry

from .errors import JobConflict, JobNotFound
from .executors import ExecutionOutcome, ExecutorRegistry
from .models import Job, JobStatus, JobType, job_label
from .store import JobStore

LOGGER = get_logger("portal.jobs.runner")
REGISTRY = get_registry()
QUEUE_GAUGE = REGISTRY.gauge("jobs.queue_length")
ACTIVE_GAUGE = REGISTRY.gauge("jobs.active")

_SHUTDOWN = "__shutdown__"


@dataclass
class RunnerTask:
    job_id: str
    attempt: int


class JobRunner:
    """Dispatches pending jobs to their executors off the request path.

    Callers get the job back immediately; executors run on worker threads and
    record their outcome in the store. At most one executor runs per job id.
    """

    def __init__(
        self,
        store: JobStore,
        executors: ExecutorRegistry,
        *,
        workers: int = RUNNER_WORKERS,
    ) -> None:
        self._store = store
        self._executors = executors
        self._workers = max(1, int(workers))
        self._tasks: "queue.Queue[RunnerTask]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._active: Set[str] = set()
        self._active_lock = threading.Lock()
        self._events: Dict[Tuple[str, int], threading.Event] = {}
        self._events_lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._started = False
        self._shutdown = False

    @property
    def executors(self) -> ExecutorRegistry:
        return self._executors

    def start(self) -> None:
        with self._start_lock:
            if self._started or self._shutdown:
                return
            for index in range(self._workers):
                thread = threading.Thread(target=self._worker, name=f"job-runner-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)
            self._started = True

    def stop(self, timeout: float = 5.0) -> None:
        with self._start_lock:
            self._shutdown = True
            threads = list(self._threads)
        for _ in threads:
            self._tasks.put(RunnerTask(job_id=_SHUTDOWN, attempt=0))
        for thread in threads:
            thread.join(timeout=timeout)
        LOGGER.info("runner_stopped", extra={"pending_tasks": self._tasks.qsize()})

    def submit(
        self,
        job_type: JobType | str,
        owner: str,
        meta: Optional[Mapping[str, Any]] = None,
        *,
        exclusive=None,
    ) -> Job:
        """Create a job and schedule it; returns the ``pending`` record."""

        self._executors.get(job_type)
        job = self._store.create(job_type, owner, meta, exclusive=exclusive)
        self._enqueue(job)
        return job

    def retry(self, job_id: str) -> Job:
        job = self._store.require(job_id)
        self._executors.get(job.type)
        job = self._store.requeue(job_id)
        self._enqueue(job)
        return job

    def dispatch(self, job_id: str) -> Job:
        """Schedule an existing ``pending`` job, e.g. one found at start-up."""

        job = self._store.require(job_id)
        if job.status != JobStatus.PENDING:
            raise JobConflict(
                f"Job is in '{job.status.value}' status and cannot be dispatched",
                job_id=job_id,
                status=job.status.value,
            )
        self._executors.get(job.type)
        self._enqueue(job)
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the scheduled attempt of ``job_id`` has finished."""

        job = self._store.get(job_id)
        if job is None:
            return True
        with self._events_lock:
            event = self._events.get((job_id, job.attempt))
        if event is None:
            return job.is_terminal
        return event.wait(timeout)

    def is_active(self, job_id: str) -> bool:
        with self._active_lock:
            return job_id in self._active

    def queue_length(self) -> int:
        return self._tasks.qsize()

    def _enqueue(self, job: Job) -> None:
        with self._events_lock:
            self._events.setdefault((job.id, job.attempt), threading.Event())
        self._tasks.put(RunnerTask(job_id=job.id, attempt=job.attempt))
        QUEUE_GAUGE.set(float(self._tasks.qsize()))
        self.start()
        log_job_event(LOGGER, job_id=job.id, event="enqueued", attempt=job.attempt)

    def _worker(self) -> None:
        while True:
            task = self._tasks.get()
            QUEUE_GAUGE.set(float(self._tasks.qsize()))
            if task.job_id == _SHUTDOWN:
                break
            try:
                with job_context(task.job_id):
                    self._run_job(task)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("job_runner_error", extra={"job_id": task.job_id, "error": str(exc)})
            finally:
                with self._events_lock:
                    event = self._events.pop((task.job_id, task.attempt), None)
                if event:
                    event.set()

    def _claim(self, job_id: str) -> bool:
        with self._active_lock:
            if job_id in self._active:
                return False
            self._active.add(job_id)
            ACTIVE_GAUGE.set(float(len(self._active)))
            return True

    def _release(self, job_id: str) -> None:
        with self._active_lock:
            self._active.discard(job_id)
            ACTIVE_GAUGE.set(float(len(self._active)))

    def _run_job(self, task: RunnerTask) -> None:
        if not self._claim(task.job_id):
            LOGGER.warning("job_already_active", extra={"job_id": task.job_id})
            return
        try:
            job = self._start(task)
            if job is None:
                return
            started = time.monotonic()
            error = self._execute(job)
            REGISTRY.summary("jobs.duration_seconds", type=job.type.value).observe(time.monotonic() - started)
        finally:
            # A retry may claim the id as soon as the terminal status is visible.
            self._release(task.job_id)

        target = JobStatus.DONE if error is None else JobStatus.FAILED
        try:
            self._store.transition(job.id, target, error=error)
        except JobNotFound:
            LOGGER.warning("job_removed_during_execution", extra={"job_id": job.id})
            return
        REGISTRY.counter("jobs.processed_total", type=job.type.value).inc()
        if error is not None:
            REGISTRY.counter("jobs.failed_total", type=job.type.value).inc()

    def _start(self, task: RunnerTask) -> Optional[Job]:
        current = self._store.get(task.job_id)
        if current is not None and current.attempt != task.attempt:
            LOGGER.info(
                "job_attempt_superseded",
                extra={"job_id": task.job_id, "queued_attempt": task.attempt, "attempt": current.attempt},
            )
            return None
        try:
            job = self._store.transition(task.job_id, JobStatus.RUNNING)
        except JobNotFound:
            LOGGER.warning("job_missing", extra={"job_id": task.job_id})
            return None
        except JobConflict as exc:
            LOGGER.warning("job_not_startable", extra={"job_id": task.job_id, "status": exc.status})
            return None
        LOGGER.info("job_started", extra={"label": job_label(job), "attempt": job.attempt})
        return job

    def _execute(self, job: Job) -> Optional[str]:
        """Run the executor; returns the failure message or ``None``."""

        def _log(line: str) -> None:
            self._store.append_log(job.id, line)

        try:
            executor = self._executors.get(job.type)
            outcome = executor.execute(job, _log)
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
            LOGGER.warning("job_executor_raised", extra={"job_id": job.id, "error": error})
            return error
        if isinstance(outcome, ExecutionOutcome) and not outcome.ok:
            return outcome.error or "Execution failed"
        return None


__all__ = ["JobRunner", "RunnerTask"]
