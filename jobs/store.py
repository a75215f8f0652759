"""Authoritative job registry with per-job serialisation and file persistence."""
from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from config import JOB_LOG_FLUSH_S, JOB_MAX_LOG_LINES, JOB_RETENTION_S
from observability.logger import get_logger, log_job_event

from .errors import InvalidJobMeta, JobConflict, JobNotFound
from .hub import BroadcastHub, Subscription, log_event, status_event
from .models import (
    RETRYABLE_STATUSES,
    Job,
    JobStatus,
    JobType,
    can_transition,
    utcnow,
)

LOGGER = get_logger("portal.jobs.store")

STORE_VERSION = 1
INTERRUPTED_ERROR = "Interrupted by server restart"
INTERRUPTED_LOG_LINE = "[system] server restarted while this job was running; outcome unknown"

Clock = Callable[[], datetime]


@dataclass
class RecoveryReport:
    interrupted: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


@dataclass
class StreamHandle:
    """Atomic view handed to a new stream viewer.

    ``subscription`` is ``None`` when the job was already terminal; the
    backlog and ``job.status`` are then the whole story.
    """

    job: Job
    backlog: List[str]
    subscription: Optional[Subscription]


class JobStore:
    """Thread-safe storage for jobs and their log buffers.

    Mutations of one job are serialised by that job's lock; different jobs
    proceed concurrently. Readers always receive copies.

    Status changes, creations and removals are written to disk immediately.
    Log appends only mark the file stale; they are flushed by a timer at most
    every ``flush_interval_s`` seconds, or with the next status change.
    """

    def __init__(
        self,
        *,
        path: str | Path | None = None,
        hub: Optional[BroadcastHub] = None,
        clock: Clock = utcnow,
        retention_s: int = JOB_RETENTION_S,
        max_log_lines: int = JOB_MAX_LOG_LINES,
        flush_interval_s: float = JOB_LOG_FLUSH_S,
    ) -> None:
        self._path = Path(path) if path else None
        self.hub = hub or BroadcastHub()
        self._clock = clock
        self._retention = timedelta(seconds=max(1, int(retention_s)))
        self._max_log_lines = max(0, int(max_log_lines))
        self._jobs: Dict[str, Job] = {}
        self._job_locks: Dict[str, threading.RLock] = {}
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()
        self._flush_interval = max(0.0, float(flush_interval_s))
        self._flush_lock = threading.Lock()
        self._flush_timer: Optional[threading.Timer] = None
        self._dirty = False
        self._recovered = False
        self._load()

    # -- queries -----------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            lock = self._job_locks.get(job_id)
        if job is None or lock is None:
            return None
        with lock:
            return job.copy()

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_by_owner(self, owner: Optional[str], *, include_all: bool = False) -> List[Job]:
        """Active jobs first (newest first), then recent terminal jobs."""

        with self._lock:
            self._purge_expired_locked()
            candidates = [
                (job, self._job_locks[job_id])
                for job_id, job in self._jobs.items()
                if include_all or job.owner == owner
            ]
        snapshots: List[Job] = []
        for job, lock in candidates:
            with lock:
                snapshots.append(job.copy())
        active = sorted(
            (job for job in snapshots if job.is_active),
            key=lambda job: job.created_at,
            reverse=True,
        )
        finished = sorted(
            (job for job in snapshots if job.is_terminal),
            key=lambda job: job.updated_at,
            reverse=True,
        )
        return active + finished

    # -- mutations ---------------------------------------------------------

    def create(
        self,
        job_type: JobType | str,
        owner: str,
        meta: Optional[Mapping[str, Any]] = None,
        *,
        exclusive: Optional[Callable[[Job], bool]] = None,
    ) -> Job:
        """Register a new ``pending`` job.

        ``exclusive`` rejects the creation with a conflict when an active job
        already matches it; the check and insert happen under one lock.
        """

        job_type = JobType(job_type)
        meta = dict(meta or {})
        try:
            json.dumps(meta)
        except (TypeError, ValueError) as exc:
            raise InvalidJobMeta(f"Job metadata must be JSON serialisable: {exc}") from exc
        now = self._clock()
        with self._lock:
            self._purge_expired_locked()
            if exclusive is not None:
                for existing in self._jobs.values():
                    if existing.is_active and exclusive(existing):
                        raise JobConflict(
                            "Another job is already in progress for this target",
                            job_id=existing.id,
                            status=existing.status.value,
                        )
            job_id = self._new_id()
            job = Job(
                id=job_id,
                type=job_type,
                owner=owner,
                meta=meta,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = job
            self._job_locks[job_id] = threading.RLock()
            snapshot = job.copy()
        log_job_event(LOGGER, job_id=job_id, event="created", type=job_type.value, owner=owner)
        self._persist()
        return snapshot

    def append_log(self, job_id: str, line: str) -> bool:
        """Append one line and publish it; ``False`` if the job is gone."""

        text = str(line).rstrip("\r\n")
        try:
            with self._locked(job_id) as job:
                job.logs.append(text)
                if self._max_log_lines and len(job.logs) > self._max_log_lines:
                    del job.logs[: len(job.logs) - self._max_log_lines]
                job.updated_at = self._clock()
                self.hub.publish(job_id, log_event(text))
        except JobNotFound:
            return False
        self._mark_dirty()
        return True

    def transition(self, job_id: str, status: JobStatus | str, *, error: Optional[str] = None) -> Job:
        target = JobStatus(status)
        if target == JobStatus.INTERRUPTED:
            raise JobConflict(
                "Jobs are only marked interrupted by startup recovery",
                job_id=job_id,
            )
        with self._locked(job_id) as job:
            self._transition_locked(job, target, error=error)
            snapshot = job.copy()
        self._persist()
        return snapshot

    def requeue(self, job_id: str) -> Job:
        """Start a new attempt of a failed or interrupted job."""

        with self._locked(job_id) as job:
            if job.status not in RETRYABLE_STATUSES:
                raise JobConflict(
                    f"Job is in '{job.status.value}' status and cannot be retried",
                    job_id=job_id,
                    status=job.status.value,
                )
            self._transition_locked(job, JobStatus.PENDING)
            snapshot = job.copy()
        self._persist()
        return snapshot

    def remove(self, job_id: str) -> Job:
        """Cancel a failed or interrupted job by deleting its record."""

        with self._locked(job_id) as job:
            if job.status not in RETRYABLE_STATUSES:
                raise JobConflict(
                    f"Job is in '{job.status.value}' status and cannot be cancelled",
                    job_id=job_id,
                    status=job.status.value,
                )
            with self._lock:
                self._jobs.pop(job_id, None)
                self._job_locks.pop(job_id, None)
            snapshot = job.copy()
        self.hub.close(job_id)
        log_job_event(LOGGER, job_id=job_id, event="cancelled", status=snapshot.status.value)
        self._persist()
        return snapshot

    def open_stream(self, job_id: str) -> StreamHandle:
        """Snapshot the current attempt's backlog and subscribe atomically."""

        with self._locked(job_id) as job:
            snapshot = job.copy()
            if job.is_terminal:
                return StreamHandle(job=snapshot, backlog=list(job.logs), subscription=None)
            subscription = self.hub.subscribe(job_id)
            return StreamHandle(job=snapshot, backlog=list(job.logs), subscription=subscription)

    def recover_on_startup(self) -> RecoveryReport:
        """Reclassify jobs left ``running`` by a previous process.

        Runs once; later calls return an empty report.
        """

        report = RecoveryReport()
        with self._lock:
            if self._recovered:
                return report
            self._recovered = True
            job_ids = list(self._jobs)
        for job_id in job_ids:
            try:
                with self._locked(job_id) as job:
                    if job.status == JobStatus.RUNNING:
                        job.logs.append(INTERRUPTED_LOG_LINE)
                        self._transition_locked(job, JobStatus.INTERRUPTED, error=INTERRUPTED_ERROR)
                        report.interrupted.append(job_id)
                    elif job.status == JobStatus.PENDING:
                        report.pending.append(job_id)
            except JobNotFound:
                continue
        if report.interrupted or report.pending:
            LOGGER.warning(
                "jobs_recovered",
                extra={"interrupted": report.interrupted, "pending": report.pending},
            )
            self._persist()
        return report

    def flush(self) -> None:
        """Write pending log appends to disk now."""

        with self._flush_lock:
            self._flush_timer = None
            dirty = self._dirty
        if dirty:
            self._persist()

    def close(self) -> None:
        with self._flush_lock:
            timer, self._flush_timer = self._flush_timer, None
        if timer is not None:
            timer.cancel()
        self.hub.close_all()
        self._persist()

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            lock = self._job_locks.get(job_id)
        if job is None or lock is None:
            raise JobNotFound(job_id)
        with lock:
            # Re-check: the record may have been removed while we waited.
            with self._lock:
                if self._jobs.get(job_id) is not job:
                    raise JobNotFound(job_id)
            yield job

    def _transition_locked(self, job: Job, target: JobStatus, *, error: Optional[str] = None) -> None:
        if not can_transition(job.status, target):
            raise JobConflict(
                f"Illegal transition {job.status.value} -> {target.value}",
                job_id=job.id,
                status=job.status.value,
            )
        previous = job.status
        job.apply_transition(target, self._clock(), error=error)
        event = status_event(target.value, job.attempt)
        if target.is_terminal:
            self.hub.close(job.id, event)
        else:
            self.hub.publish(job.id, event)
        log_job_event(
            LOGGER,
            job_id=job.id,
            event="transition",
            previous=previous.value,
            status=target.value,
            attempt=job.attempt,
            error=error,
        )

    def _mark_dirty(self) -> None:
        if self._path is None:
            return
        if not self._flush_interval:
            self._persist()
            return
        with self._flush_lock:
            self._dirty = True
            if self._flush_timer is not None:
                return
            timer = threading.Timer(self._flush_interval, self.flush)
            timer.daemon = True
            self._flush_timer = timer
        timer.start()

    def _purge_expired_locked(self) -> None:
        cutoff = self._clock() - self._retention
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.updated_at <= cutoff
        ]
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._job_locks.pop(job_id, None)
        if expired:
            LOGGER.info("jobs_purged", extra={"count": len(expired)})

    def _new_id(self) -> str:
        while True:
            job_id = uuid.uuid4().hex
            if job_id not in self._jobs:
                return job_id

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("job_store_unreadable", extra={"path": str(self._path), "error": str(exc)})
            return
        entries = raw.get("jobs") if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            LOGGER.warning("job_store_malformed", extra={"path": str(self._path)})
            return
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                job = Job.from_dict(entry)
            except (KeyError, ValueError, TypeError) as exc:
                LOGGER.warning("job_record_skipped", extra={"error": str(exc)})
                continue
            self._jobs[job.id] = job
            self._job_locks[job.id] = threading.RLock()
        LOGGER.info("job_store_loaded", extra={"path": str(self._path), "count": len(self._jobs)})

    def _persist(self) -> None:
        if self._path is None:
            return
        with self._persist_lock:
            with self._flush_lock:
                self._dirty = False
            with self._lock:
                self._purge_expired_locked()
                items = [(job, self._job_locks[job_id]) for job_id, job in self._jobs.items()]
            records = []
            for job, lock in items:
                with lock:
                    records.append(job.to_dict())
            payload = {"version": STORE_VERSION, "jobs": records}
            tmp_name: Optional[str] = None
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=".jobs-", suffix=".tmp", dir=str(self._path.parent))
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, ensure_ascii=False)
                os.replace(tmp_name, self._path)
                tmp_name = None
            except (OSError, TypeError, ValueError):
                LOGGER.exception("job_store_persist_failed", extra={"path": str(self._path)})
            finally:
                if tmp_name is not None:
                    with suppress(OSError):
                        os.unlink(tmp_name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


__all__ = ["JobStore", "RecoveryReport", "StreamHandle", "INTERRUPTED_ERROR"]
