"""Client-side reconciliation of in-flight jobs over the HTTP API.

A freshly started (or reconnected) client calls :meth:`JobReconciler.bootstrap`
to rediscover the caller's jobs and resume observing every active one. Polling
is the fallback path; the event stream remains the primary live channel.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from config import JOB_POLL_INTERVAL_S
from observability.logger import get_logger

from .models import TERMINAL_STATUSES, JobStatus

LOGGER = get_logger("portal.jobs.client")

TERMINAL_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)

JobPayload = Dict[str, Any]
JobCallback = Callable[[JobPayload], None]


class ApiRequestError(Exception):
    """HTTP or envelope-level failure; ``status`` is ``None`` for transport errors."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


class JobsApiClient:
    """Thin wrapper over the ``/jobs`` endpoints unwrapping the response envelope."""

    def __init__(
        self,
        base_url: str = "",
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = client or httpx.Client(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=httpx.Timeout(timeout),
        )

    def close(self) -> None:
        self._client.close()

    def get_jobs(self, *, include_all: bool = False) -> List[JobPayload]:
        params = {"all": "1"} if include_all else None
        data = self._request("GET", "/jobs", params=params)
        jobs = data.get("jobs") if isinstance(data, dict) else None
        return list(jobs or [])

    def get_job(self, job_id: str) -> JobPayload:
        data = self._request("GET", f"/jobs/{job_id}")
        return dict(data.get("job") or {})

    def retry(self, job_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/retry")

    def cancel(self, job_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/cancel")

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiRequestError(f"{method} {path} failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.is_error or payload.get("ok") is False:
            message = payload.get("error") or f"Request failed ({response.status_code})"
            raise ApiRequestError(str(message), status=response.status_code)
        data = payload.get("data")
        return data if isinstance(data, dict) else {}


@dataclass
class _PollHandle:
    job_id: str
    stop: threading.Event
    thread: threading.Thread


def _noop(_job: JobPayload) -> None:
    return None


class JobReconciler:
    """Keeps at most one polling loop per job id and a cached job list."""

    def __init__(
        self,
        api: JobsApiClient,
        *,
        interval_s: float = JOB_POLL_INTERVAL_S,
        on_refresh: Optional[Callable[[], None]] = None,
    ) -> None:
        self._api = api
        self._interval = max(0.0, float(interval_s))
        self._on_refresh = on_refresh
        self._pollers: Dict[str, _PollHandle] = {}
        self._jobs: List[JobPayload] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def jobs(self) -> List[JobPayload]:
        with self._lock:
            return [dict(job) for job in self._jobs]

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._pollers)

    def bootstrap(
        self,
        on_done: Optional[JobCallback] = None,
        on_fail: Optional[JobCallback] = None,
    ) -> int:
        """Load the caller's jobs and start polling every non-terminal one.

        Returns the number of loops started by this call.
        """

        try:
            jobs = self._api.get_jobs()
        except ApiRequestError as exc:
            LOGGER.warning("job_bootstrap_failed", extra={"error": exc.message, "status": exc.status})
            return 0
        with self._lock:
            self._jobs = [dict(job) for job in jobs]
        started = 0
        for job in jobs:
            if job.get("status") in TERMINAL_VALUES:
                continue
            if self.poll(str(job.get("id")), on_done=on_done, on_fail=on_fail):
                started += 1
        return started

    def track(
        self,
        job_id: str,
        on_done: Optional[JobCallback] = None,
        on_fail: Optional[JobCallback] = None,
        **fields: Any,
    ) -> bool:
        """Record a job just returned by an action endpoint and poll it."""

        with self._lock:
            if not any(job.get("id") == job_id for job in self._jobs):
                entry: JobPayload = {"id": job_id, "status": JobStatus.PENDING.value}
                entry.update(fields)
                self._jobs.insert(0, entry)
        return self.poll(job_id, on_done=on_done, on_fail=on_fail)

    def poll(
        self,
        job_id: str,
        on_done: Optional[JobCallback] = None,
        on_fail: Optional[JobCallback] = None,
    ) -> bool:
        """Start a polling loop; ``False`` when one already runs for ``job_id``."""

        stop = threading.Event()
        thread = threading.Thread(
            target=self._loop,
            args=(job_id, stop, on_done or _noop, on_fail or _noop),
            name=f"job-poll-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            if self._closed or job_id in self._pollers:
                return False
            self._pollers[job_id] = _PollHandle(job_id=job_id, stop=stop, thread=thread)
        thread.start()
        return True

    def stop(self, job_id: str) -> None:
        with self._lock:
            handle = self._pollers.pop(job_id, None)
        if handle is not None:
            handle.stop.set()

    def retry_job(
        self,
        job_id: str,
        on_done: Optional[JobCallback] = None,
        on_fail: Optional[JobCallback] = None,
    ) -> Dict[str, Any]:
        data = self._api.retry(job_id)
        self._replace(job_id, {"status": data.get("status", JobStatus.PENDING.value)})
        self.poll(job_id, on_done=on_done, on_fail=on_fail)
        return data

    def cancel_job(self, job_id: str) -> Dict[str, Any]:
        data = self._api.cancel(job_id)
        self.stop(job_id)
        with self._lock:
            self._jobs = [job for job in self._jobs if job.get("id") != job_id]
        self._refresh()
        return data

    def shutdown(self, timeout: float = 2.0) -> None:
        """Stop every loop and wait for the threads to exit."""

        with self._lock:
            self._closed = True
            handles = list(self._pollers.values())
            self._pollers.clear()
        for handle in handles:
            handle.stop.set()
        current = threading.current_thread()
        for handle in handles:
            if handle.thread is not current and handle.thread.is_alive():
                handle.thread.join(timeout=timeout)

    def _loop(self, job_id: str, stop: threading.Event, on_done: JobCallback, on_fail: JobCallback) -> None:
        try:
            while not stop.wait(self._interval):
                try:
                    job = self._api.get_job(job_id)
                except ApiRequestError as exc:
                    if exc.is_unauthorized:
                        LOGGER.info("job_poll_unauthorized", extra={"job_id": job_id})
                        return
                    LOGGER.debug("job_poll_retry", extra={"job_id": job_id, "error": exc.message})
                    continue
                self._replace(job_id, job, insert=True)
                status = job.get("status")
                if status not in TERMINAL_VALUES:
                    continue
                self._release(job_id, stop)
                callback = on_done if status == JobStatus.DONE.value else on_fail
                try:
                    callback(job)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("job_poll_callback_failed", extra={"job_id": job_id})
                self._refresh()
                return
        finally:
            self._release(job_id, stop)

    def _release(self, job_id: str, stop: threading.Event) -> None:
        with self._lock:
            handle = self._pollers.get(job_id)
            if handle is not None and handle.stop is stop:
                del self._pollers[job_id]

    def _replace(self, job_id: str, payload: Mapping[str, Any], *, insert: bool = False) -> None:
        with self._lock:
            for index, job in enumerate(self._jobs):
                if job.get("id") == job_id:
                    updated = dict(job)
                    updated.update(payload)
                    self._jobs[index] = updated
                    return
            if insert:
                self._jobs.insert(0, dict(payload))

    def _refresh(self) -> None:
        if self._on_refresh is None:
            return
        try:
            self._on_refresh()
        except Exception:  # noqa: BLE001
            LOGGER.exception("job_refresh_failed")


__all__ = ["ApiRequestError", "JobReconciler", "JobsApiClient", "TERMINAL_VALUES"]
