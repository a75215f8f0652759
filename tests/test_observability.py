import json
import logging

import pytest

from observability.logger import (
    JsonFormatter,
    TextFormatter,
    bind_trace_id,
    clear_trace_id,
    job_context,
    log_job_event,
)
from observability.metrics import MetricsRegistry


def _record(message="job_event", **extra):
    record = logging.LogRecord("portal.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_includes_trace_and_job_context():
    bind_trace_id("trace-1")
    try:
        with job_context("job-7"):
            payload = json.loads(JsonFormatter().format(_record(attempt=2)))
    finally:
        clear_trace_id()

    assert payload["trace_id"] == "trace-1"
    assert payload["job_id"] == "job-7"
    assert payload["attempt"] == 2
    assert payload["message"] == "job_event"
    assert payload["timestamp"].endswith("Z")


def test_job_context_is_restored_after_block():
    with job_context("outer"):
        with job_context("inner"):
            assert json.loads(JsonFormatter().format(_record()))["job_id"] == "inner"
        assert json.loads(JsonFormatter().format(_record()))["job_id"] == "outer"
    assert "job_id" not in json.loads(JsonFormatter().format(_record()))


def test_text_formatter_appends_context_fields():
    with job_context("job-7"):
        line = TextFormatter().format(_record("job_started", label="deploy alice/blog"))

    assert " INFO portal.test job_started " in line
    assert "job_id=job-7" in line
    assert "label=deploy alice/blog" in line


def test_log_job_event_drops_empty_details(caplog):
    logger = logging.getLogger("portal.test.events")
    logger.propagate = True
    with caplog.at_level(logging.INFO, logger="portal.test.events"):
        log_job_event(logger, job_id="job-1", event="transition", status="done", error=None)

    record = caplog.records[-1]
    assert record.job_id == "job-1"
    assert record.job_event == "transition"
    assert record.details == {"status": "done"}


def test_registry_keeps_labelled_series_apart():
    registry = MetricsRegistry()
    registry.counter("jobs.processed_total", type="deploy").inc()
    registry.counter("jobs.processed_total", type="deploy").inc()
    registry.counter("jobs.processed_total", type="stop").inc()
    registry.gauge("sse.subscribers").set(3)

    snapshot = registry.snapshot("jobs.")

    assert snapshot == {
        'jobs.processed_total{type="deploy"}': 2.0,
        'jobs.processed_total{type="stop"}': 1.0,
    }
    assert registry.snapshot()["sse.subscribers"] == 3.0


def test_summary_tracks_count_sum_and_max():
    registry = MetricsRegistry()
    summary = registry.summary("jobs.duration_seconds", type="deploy")
    for value in (0.5, 2.0, 1.0):
        summary.observe(value)

    snapshot = registry.snapshot()

    assert snapshot['jobs.duration_seconds_count{type="deploy"}'] == 3.0
    assert snapshot['jobs.duration_seconds_sum{type="deploy"}'] == 3.5
    assert snapshot['jobs.duration_seconds_max{type="deploy"}'] == 2.0


def test_registry_rejects_kind_mismatch_and_negative_counts():
    registry = MetricsRegistry()
    counter = registry.counter("jobs.failed_total")
    with pytest.raises(TypeError):
        registry.gauge("jobs.failed_total")
    with pytest.raises(ValueError):
        counter.inc(-1)
