"""Executor capabilities invoked by the runner, one per job type."""
from __future__ import annotations

import os
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, Sequence

from observability.logger import get_logger

from .errors import ExecutionFailure, ExecutorNotRegistered
from .models import Job, JobType

LOGGER = get_logger("portal.jobs.executors")

LogSink = Callable[[str], None]


@dataclass
class ExecutionOutcome:
    ok: bool = True
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "ExecutionOutcome":
        return cls(ok=False, error=error)


class JobExecutor(Protocol):
    """Performs the work behind a job, reporting progress through ``log``.

    Returning ``None`` counts as success; raising counts as failure.
    """

    def execute(self, job: Job, log: LogSink) -> Optional[ExecutionOutcome]:
        ...


class FunctionExecutor:
    """Adapts a plain callable to the executor interface."""

    def __init__(self, func: Callable[[Job, LogSink], Optional[ExecutionOutcome]]) -> None:
        self._func = func

    def execute(self, job: Job, log: LogSink) -> Optional[ExecutionOutcome]:
        return self._func(job, log)


class ExecutorRegistry:
    """Type-to-executor mapping populated once at start-up."""

    def __init__(self, executors: Optional[Mapping[JobType | str, JobExecutor]] = None) -> None:
        self._executors: Dict[JobType, JobExecutor] = {}
        self._lock = threading.Lock()
        for job_type, executor in (executors or {}).items():
            self.register(job_type, executor)

    def register(self, job_type: JobType | str, executor: JobExecutor) -> None:
        resolved = JobType(job_type)
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"Executor for '{resolved.value}' has no execute() method")
        with self._lock:
            self._executors[resolved] = executor

    def get(self, job_type: JobType | str) -> JobExecutor:
        try:
            resolved = JobType(job_type)
        except ValueError as exc:
            raise ExecutorNotRegistered(str(job_type)) from exc
        with self._lock:
            executor = self._executors.get(resolved)
        if executor is None:
            raise ExecutorNotRegistered(resolved.value)
        return executor

    def types(self) -> Sequence[JobType]:
        with self._lock:
            return tuple(self._executors)

    def __contains__(self, job_type: object) -> bool:
        try:
            resolved = JobType(job_type)  # type: ignore[arg-type]
        except ValueError:
            return False
        with self._lock:
            return resolved in self._executors


class _SafeMeta(dict):
    def __missing__(self, key: str) -> str:
        raise ExecutionFailure(f"Job meta is missing '{key}' required by the command template")


class ShellCommandExecutor:
    """Runs a shell command built from the job meta, streaming its output."""

    def __init__(
        self,
        template: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._template = template
        self._cwd = cwd
        self._env = dict(env) if env else None

    def render(self, job: Job) -> str:
        values = _SafeMeta({key: shlex.quote(str(value)) for key, value in job.meta.items()})
        values.setdefault("job_id", job.id)
        values.setdefault("owner", shlex.quote(job.owner))
        return self._template.format_map(values)

    def execute(self, job: Job, log: LogSink) -> ExecutionOutcome:
        cmd = self.render(job)
        env = None
        if self._env:
            env = dict(os.environ)
            env.update(self._env)
        LOGGER.info("command_started", extra={"job_id": job.id, "cmd": cmd})
        log(f"$ {cmd}")
        with subprocess.Popen(
            cmd,
            shell=True,
            cwd=self._cwd or None,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        ) as proc:
            try:
                for line in proc.stdout or ():
                    log(line.rstrip("\n"))
            except BaseException:
                proc.kill()
                raise
            exit_code = proc.wait()
        LOGGER.info("command_finished", extra={"job_id": job.id, "exit_code": exit_code})
        if exit_code != 0:
            return ExecutionOutcome.failure(f"exit code {exit_code}")
        return ExecutionOutcome()


def registry_from_commands(commands: Mapping[str, str], **kwargs) -> ExecutorRegistry:
    """Build a registry of shell executors; unknown job types are skipped."""

    registry = ExecutorRegistry()
    for job_type, template in commands.items():
        try:
            registry.register(job_type, ShellCommandExecutor(template, **kwargs))
        except ValueError:
            LOGGER.warning("unknown_job_type_command", extra={"job_type": job_type})
    return registry


__all__ = [
    "ExecutionOutcome",
    "ExecutorRegistry",
    "FunctionExecutor",
    "JobExecutor",
    "LogSink",
    "ShellCommandExecutor",
    "registry_from_commands",
]
