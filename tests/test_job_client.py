import threading
import time

import httpx
import pytest

from jobs.client import ApiRequestError, JobReconciler, JobsApiClient


def _wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakePortal:
    """Scripted ``/jobs`` backend; each job id maps to a queue of poll responses."""

    def __init__(self, jobs):
        self.jobs = list(jobs)
        self.scripts = {}
        self.calls = []
        self._lock = threading.Lock()

    def script(self, job_id, *steps):
        self.scripts[job_id] = list(steps)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        with self._lock:
            self.calls.append((request.method, path))
            if request.method == "GET" and path == "/jobs":
                return httpx.Response(200, json={"ok": True, "data": {"jobs": self.jobs}})
            parts = path.strip("/").split("/")
            job_id = parts[1]
            if request.method == "POST" and parts[-1] == "retry":
                return httpx.Response(200, json={"ok": True, "data": {"jobId": job_id, "status": "pending"}})
            if request.method == "POST" and parts[-1] == "cancel":
                return httpx.Response(200, json={"ok": True, "data": {"jobId": job_id, "cancelled": True}})
            steps = self.scripts.get(job_id) or [("running", 200)]
            status, code = steps.pop(0) if len(steps) > 1 else steps[0]
        if code >= 400:
            return httpx.Response(code, json={"ok": False, "error": "nope"})
        return httpx.Response(200, json={"ok": True, "data": {"job": {"id": job_id, "status": status}}})

    def poll_count(self, job_id):
        with self._lock:
            return sum(1 for method, path in self.calls if method == "GET" and path == f"/jobs/{job_id}")


@pytest.fixture()
def portal():
    return FakePortal(
        [
            {"id": "j1", "status": "running"},
            {"id": "j2", "status": "pending"},
            {"id": "j3", "status": "done"},
        ]
    )


@pytest.fixture()
def api(portal):
    client = httpx.Client(transport=httpx.MockTransport(portal.handler), base_url="http://portal")
    api = JobsApiClient(client=client)
    yield api
    api.close()


@pytest.fixture()
def refreshes():
    return []


@pytest.fixture()
def reconciler(api, refreshes):
    reconciler = JobReconciler(api, interval_s=0.01, on_refresh=lambda: refreshes.append(True))
    yield reconciler
    reconciler.shutdown()


def test_bootstrap_polls_each_active_job_once(portal, reconciler):
    portal.script("j1", ("running", 200))
    portal.script("j2", ("running", 200))

    assert reconciler.bootstrap() == 2
    assert reconciler.bootstrap() == 0
    assert sorted(reconciler.active_ids()) == ["j1", "j2"]
    assert [job["id"] for job in reconciler.jobs] == ["j1", "j2", "j3"]
    assert reconciler.poll("j1") is False


def test_terminal_status_invokes_callback_and_refresh(portal, reconciler, refreshes):
    portal.script("j1", ("running", 200), ("done", 200))
    portal.script("j2", ("running", 200), ("failed", 200))
    done, failed = [], []

    reconciler.bootstrap(on_done=done.append, on_fail=failed.append)

    assert _wait_until(lambda: len(refreshes) == 2)
    assert reconciler.active_ids() == []
    assert [job["id"] for job in done] == ["j1"]
    assert [job["id"] for job in failed] == ["j2"]
    statuses = {job["id"]: job["status"] for job in reconciler.jobs}
    assert statuses == {"j1": "done", "j2": "failed", "j3": "done"}


def test_transient_errors_do_not_stop_polling(portal, reconciler):
    portal.script("j1", ("", 502), ("", 500), ("done", 200))
    done = []

    reconciler.poll("j1", on_done=done.append)

    assert _wait_until(lambda: done)
    assert portal.poll_count("j1") >= 3


def test_unauthorized_stops_polling_without_callback(portal, reconciler):
    portal.script("j1", ("", 401))
    done, failed = [], []

    reconciler.poll("j1", on_done=done.append, on_fail=failed.append)

    assert _wait_until(lambda: "j1" not in reconciler.active_ids())
    calls = portal.poll_count("j1")
    time.sleep(0.05)
    assert portal.poll_count("j1") == calls
    assert done == [] and failed == []


def test_interrupted_job_reports_failure(portal, reconciler):
    portal.script("j2", ("interrupted", 200))
    failed = []

    reconciler.poll("j2", on_fail=failed.append)

    assert _wait_until(lambda: failed)
    assert failed[0]["status"] == "interrupted"


def test_poll_can_restart_after_loop_finished(portal, reconciler):
    portal.script("j1", ("done", 200))
    done = []
    reconciler.poll("j1", on_done=done.append)
    assert _wait_until(lambda: len(done) == 1)

    assert reconciler.poll("j1", on_done=done.append) is True
    assert _wait_until(lambda: len(done) == 2)


def test_track_records_new_job_and_polls_it(portal, reconciler):
    portal.script("j9", ("done", 200))
    done = []

    assert reconciler.track("j9", on_done=done.append, type="deploy") is True

    assert reconciler.jobs[0]["id"] == "j9"
    assert _wait_until(lambda: done)


def test_retry_and_cancel_go_through_api(portal, reconciler, refreshes):
    portal.jobs = [{"id": "j1", "status": "failed"}]
    portal.script("j1", ("done", 200))
    reconciler.bootstrap()
    done = []

    data = reconciler.retry_job("j1", on_done=done.append)
    assert data == {"jobId": "j1", "status": "pending"}
    assert _wait_until(lambda: done)

    reconciler.cancel_job("j1")
    assert reconciler.jobs == []
    assert ("POST", "/jobs/j1/cancel") in portal.calls
    assert refreshes


def test_shutdown_rejects_new_loops(reconciler):
    reconciler.shutdown()
    assert reconciler.poll("j1") is False


def test_envelope_errors_raise_api_error():
    def handler(request):
        return httpx.Response(409, json={"ok": False, "error": "Job is in 'running' status and cannot be retried"})

    api = JobsApiClient(client=httpx.Client(transport=httpx.MockTransport(handler), base_url="http://portal"))
    with pytest.raises(ApiRequestError) as excinfo:
        api.retry("j1")
    assert excinfo.value.status == 409
    assert "cannot be retried" in excinfo.value.message
    api.close()


def test_bootstrap_failure_starts_nothing():
    def handler(request):
        return httpx.Response(401, json={"ok": False, "error": "Unauthorized"})

    api = JobsApiClient(client=httpx.Client(transport=httpx.MockTransport(handler), base_url="http://portal"))
    reconciler = JobReconciler(api, interval_s=0.01)
    assert reconciler.bootstrap() == 0
    assert reconciler.active_ids() == []
    api.close()
