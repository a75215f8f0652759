"""Data models describing tracked platform jobs and their lifecycle."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.strptime(str(value), ISO_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle states for a background job."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class JobType(str, Enum):
    """Kinds of work a job can carry; each maps to one registered executor."""

    CREATE = "create"
    DEPLOY = "deploy"
    DELETE = "delete"
    START = "start"
    STOP = "stop"
    ENV_RESTART = "env-restart"


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.DONE, JobStatus.FAILED, JobStatus.INTERRUPTED}
)
ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.RUNNING})
RETRYABLE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.FAILED, JobStatus.INTERRUPTED})

# running -> interrupted is only taken by start-up recovery.
TRANSITIONS: Mapping[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.INTERRUPTED}),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.INTERRUPTED: frozenset({JobStatus.PENDING}),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass
class Job:
    """Representation of one tracked unit of asynchronous platform work."""

    id: str
    type: JobType
    owner: str
    status: JobStatus = JobStatus.PENDING
    meta: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    attempt: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def apply_transition(self, target: JobStatus, now: datetime, *, error: Optional[str] = None) -> None:
        """Move to ``target``; callers validate the edge beforehand."""

        if target == JobStatus.PENDING:
            # New attempt under the same id.
            self.attempt += 1
            self.logs = []
            self.error = None
            self.started_at = None
            self.finished_at = None
        elif target == JobStatus.RUNNING:
            self.started_at = now
        elif target in TERMINAL_STATUSES:
            self.finished_at = now
            self.error = error if target != JobStatus.DONE else None
        self.status = target
        self.updated_at = now

    def copy(self) -> "Job":
        return Job(
            id=self.id,
            type=self.type,
            owner=self.owner,
            status=self.status,
            meta=dict(self.meta),
            logs=list(self.logs),
            error=self.error,
            attempt=self.attempt,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )

    def to_dict(self, *, include_logs: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "owner": self.owner,
            "meta": dict(self.meta),
            "error": self.error,
            "attempt": self.attempt,
            "createdAt": format_ts(self.created_at),
            "updatedAt": format_ts(self.updated_at),
            "startedAt": format_ts(self.started_at),
            "finishedAt": format_ts(self.finished_at),
        }
        if include_logs:
            payload["logs"] = list(self.logs)
        else:
            payload["logCount"] = len(self.logs)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Job":
        meta = payload.get("meta")
        logs = payload.get("logs")
        return cls(
            id=str(payload["id"]),
            type=JobType(payload["type"]),
            owner=str(payload["owner"]),
            status=JobStatus(payload.get("status", JobStatus.PENDING.value)),
            meta=dict(meta) if isinstance(meta, dict) else {},
            logs=[str(line) for line in logs] if isinstance(logs, list) else [],
            error=payload.get("error"),
            attempt=max(1, int(payload.get("attempt") or 1)),
            created_at=parse_ts(payload.get("createdAt")) or utcnow(),
            updated_at=parse_ts(payload.get("updatedAt")) or utcnow(),
            started_at=parse_ts(payload.get("startedAt")),
            finished_at=parse_ts(payload.get("finishedAt")),
        )


def job_label(job: Job) -> str:
    """Human readable label such as ``deploy alice/blog``."""

    userid = job.meta.get("userid") or job.owner
    appname = job.meta.get("appname")
    target = f"{userid}/{appname}" if appname else str(userid)
    return f"{job.type.value} {target}"


__all__ = [
    "ACTIVE_STATUSES",
    "ISO_FORMAT",
    "Job",
    "JobStatus",
    "JobType",
    "RETRYABLE_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "can_transition",
    "format_ts",
    "job_label",
    "parse_ts",
    "utcnow",
]
