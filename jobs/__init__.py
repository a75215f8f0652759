"""Job orchestration and live log streaming for the hosting portal."""

from .errors import (  # noqa: F401
    ExecutionFailure,
    ExecutorNotRegistered,
    Forbidden,
    InvalidJobMeta,
    JobConflict,
    JobError,
    JobNotFound,
    Unauthorized,
)
from .executors import ExecutionOutcome, ExecutorRegistry, FunctionExecutor, ShellCommandExecutor  # noqa: F401
from .hub import BroadcastHub, Subscription  # noqa: F401
from .models import Job, JobStatus, JobType  # noqa: F401
from .runner import JobRunner  # noqa: F401
from .store import JobStore  # noqa: F401

__all__ = [
    "BroadcastHub",
    "ExecutionFailure",
    "ExecutionOutcome",
    "ExecutorNotRegistered",
    "ExecutorRegistry",
    "Forbidden",
    "FunctionExecutor",
    "InvalidJobMeta",
    "Job",
    "JobConflict",
    "JobError",
    "JobNotFound",
    "JobRunner",
    "JobStatus",
    "JobStore",
    "JobType",
    "ShellCommandExecutor",
    "Subscription",
    "Unauthorized",
]
