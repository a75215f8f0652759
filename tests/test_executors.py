from __future__ import annotations

import time

import pytest

from jobs.errors import ExecutionFailure, ExecutorNotRegistered
from jobs.executors import (
    ExecutorRegistry,
    FunctionExecutor,
    ShellCommandExecutor,
    registry_from_commands,
)
from jobs.models import Job, JobType


def _job(**meta) -> Job:
    return Job(id="job-1", type=JobType.DEPLOY, owner="alice", meta=meta)


def test_shell_executor_streams_output_lines():
    lines = []
    executor = ShellCommandExecutor("echo building {appname} && echo started")

    outcome = executor.execute(_job(appname="blog"), lines.append)

    assert outcome.ok is True
    assert lines == ["$ echo building blog && echo started", "building blog", "started"]


def test_shell_executor_reports_non_zero_exit():
    lines = []
    outcome = ShellCommandExecutor("echo failing; exit 3").execute(_job(), lines.append)

    assert outcome.ok is False
    assert outcome.error == "exit code 3"
    assert "failing" in lines


def test_shell_executor_replaces_undecodable_output():
    lines = []
    outcome = ShellCommandExecutor("printf 'ok\\n\\377\\376 bad\\n'; echo done").execute(_job(), lines.append)

    assert outcome.ok is True
    assert lines[1:] == ["ok", "\ufffd\ufffd bad", "done"]


def test_shell_executor_kills_command_when_log_sink_fails():
    def sink(line):
        if not line.startswith("$ "):
            raise RuntimeError("sink closed")

    started = time.monotonic()
    with pytest.raises(RuntimeError):
        ShellCommandExecutor("echo one; sleep 30").execute(_job(), sink)

    assert time.monotonic() - started < 10


def test_shell_executor_quotes_meta_values():
    executor = ShellCommandExecutor("echo {appname}")
    assert executor.render(_job(appname="blog; rm -rf /")) == "echo 'blog; rm -rf /'"


def test_shell_executor_requires_template_fields():
    with pytest.raises(ExecutionFailure):
        ShellCommandExecutor("deploy {appname}").execute(_job(), lambda line: None)


def test_registry_resolves_by_type_and_rejects_unknown():
    executor = FunctionExecutor(lambda job, log: None)
    registry = ExecutorRegistry({"deploy": executor})

    assert registry.get(JobType.DEPLOY) is executor
    assert "deploy" in registry
    assert "bogus" not in registry
    with pytest.raises(ExecutorNotRegistered):
        registry.get(JobType.STOP)
    with pytest.raises(ExecutorNotRegistered):
        registry.get("bogus")


def test_registry_rejects_objects_without_execute():
    with pytest.raises(TypeError):
        ExecutorRegistry().register(JobType.START, object())  # type: ignore[arg-type]


def test_registry_from_commands_skips_unknown_types():
    registry = registry_from_commands({"deploy": "echo deploy", "env-restart": "echo env", "bogus": "echo"})
    assert set(registry.types()) == {JobType.DEPLOY, JobType.ENV_RESTART}
