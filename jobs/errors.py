"""Exceptions raised by the job engine.

Each error carries the HTTP status the API layer answers with. Failures that
happen while an executor runs are never raised to callers; they are recorded
on the job instead.
"""
from __future__ import annotations


class JobError(Exception):
    """Base class for job engine errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class JobNotFound(JobError):
    status_code = 404

    def __init__(self, job_id: str) -> None:
        super().__init__("Job not found")
        self.job_id = job_id


class Unauthorized(JobError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class Forbidden(JobError):
    status_code = 403

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class InvalidJobMeta(JobError):
    """Job metadata cannot be stored as JSON."""

    status_code = 400


class JobConflict(JobError):
    """An illegal state transition was requested."""

    status_code = 409

    def __init__(self, message: str, *, job_id: str | None = None, status: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.status = status


class ExecutorNotRegistered(JobError):
    """No executor is configured for a job type."""

    status_code = 500

    def __init__(self, job_type: str) -> None:
        super().__init__(f"No executor registered for job type '{job_type}'")
        self.job_type = job_type


class ExecutionFailure(JobError):
    """Raised by executors to signal a failed attempt."""

    status_code = 500


__all__ = [
    "ExecutionFailure",
    "ExecutorNotRegistered",
    "Forbidden",
    "InvalidJobMeta",
    "JobConflict",
    "JobError",
    "JobNotFound",
    "Unauthorized",
]
