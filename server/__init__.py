"""Flask application exposing the job engine and app actions via HTTP."""
from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as JSONSchemaValidationError
from werkzeug.exceptions import HTTPException

from config import (
    ADMIN_ROLE,
    AUTH_ROLE_HEADER,
    AUTH_USER_HEADER,
    CORS_ORIGINS,
    ENFORCE_SINGLE_ACTIVE_JOB,
    JOB_STORE_PATH,
    SSE_KEEPALIVE_S,
    job_commands,
)
from jobs import (
    ExecutorRegistry,
    Forbidden,
    Job,
    JobError,
    JobRunner,
    JobStore,
    JobType,
    Unauthorized,
)
from jobs.executors import registry_from_commands
from jobs.hub import Event, log_event, status_event
from observability.logger import bind_trace_id, clear_trace_id, get_logger
from observability.metrics import get_registry

from .schemas import CREATE_APP_SCHEMA, DELETE_APP_SCHEMA, ENV_UPDATE_SCHEMA

load_dotenv()

LOGGER = get_logger("portal.api")

APPNAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
APP_ACTIONS = {
    "deploy": JobType.DEPLOY,
    "start": JobType.START,
    "stop": JobType.STOP,
}
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as reported by the fronting auth layer."""

    user: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


IdentityLoader = Callable[[], Optional[Identity]]


def header_identity() -> Optional[Identity]:
    user = str(request.headers.get(AUTH_USER_HEADER, "")).strip()
    if not user:
        return None
    role = str(request.headers.get(AUTH_ROLE_HEADER, "")).strip().lower() or "user"
    return Identity(user=user, role=role)


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass
class Engine:
    store: JobStore
    runner: JobRunner

    def shutdown(self) -> None:
        self.runner.stop()
        self.store.close()


def build_engine(
    *,
    store_path: Optional[str] = JOB_STORE_PATH,
    executors: Optional[ExecutorRegistry] = None,
) -> Engine:
    """Open the store, recover interrupted work and start the runner."""

    store = JobStore(path=store_path or None)
    report = store.recover_on_startup()
    runner = JobRunner(store, executors or registry_from_commands(job_commands()))
    for job_id in report.pending:
        try:
            runner.dispatch(job_id)
        except JobError as exc:
            LOGGER.warning("recovered_job_not_dispatched", extra={"job_id": job_id, "error": exc.message})
    LOGGER.info(
        "engine_ready",
        extra={
            "executors": [job_type.value for job_type in runner.executors.types()],
            "interrupted": len(report.interrupted),
            "redispatched": len(report.pending),
        },
    )
    return Engine(store=store, runner=runner)


def create_app(
    engine: Optional[Engine] = None,
    *,
    identity_loader: IdentityLoader = header_identity,
    keepalive_s: float = SSE_KEEPALIVE_S,
) -> Flask:
    engine = engine or build_engine()
    store = engine.store
    runner = engine.runner

    app = Flask(__name__)
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    CORS(app, resources={r"/*": {"origins": list(CORS_ORIGINS)}})
    app.extensions["portal_engine"] = engine

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        g.trace_id = trace_id
        bind_trace_id(trace_id)
        g.identity = identity_loader()

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault("X-Trace-Id", trace_id)
        clear_trace_id()
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        clear_trace_id()

    @app.errorhandler(JobError)
    def _handle_job_error(exc: JobError):  # type: ignore[override]
        if exc.status_code >= 500:
            LOGGER.error("Job engine error", extra={"message": exc.message, "code": exc.status_code})
        else:
            LOGGER.info("Job request rejected", extra={"message": exc.message, "code": exc.status_code})
        return _error(exc.message, exc.status_code)

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("API error", extra={"message": exc.message, "code": exc.status_code})
        return _error(exc.message, exc.status_code)

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):  # type: ignore[override]
        return _error(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        LOGGER.exception("Unhandled error")
        return _error("Internal server error", 500)

    def _identity() -> Identity:
        identity = getattr(g, "identity", None)
        if identity is None:
            raise Unauthorized()
        return identity

    def _authorized_job(job_id: str) -> Job:
        identity = _identity()
        job = store.require(job_id)
        if not identity.is_admin and job.owner != identity.user:
            raise Forbidden()
        return job

    # -- jobs ----------------------------------------------------------------

    @app.get("/jobs")
    def list_jobs():
        identity = _identity()
        include_all = identity.is_admin and _truthy(request.args.get("all"))
        jobs = store.list_by_owner(identity.user, include_all=include_all)
        return _ok({"jobs": [job.to_dict(include_logs=False) for job in jobs]})

    @app.get("/jobs/<job_id>")
    def get_job(job_id: str):
        job = _authorized_job(job_id)
        return _ok({"job": job.to_dict()})

    @app.get("/jobs/<job_id>/stream")
    def stream_job(job_id: str):
        _authorized_job(job_id)
        handle = store.open_stream(job_id)
        if handle.subscription is None:
            events = [log_event(line) for line in handle.backlog]
            events.append(status_event(handle.job.status.value, handle.job.attempt))
            body = "".join(format_sse(event) for event in events)
            return Response(body, mimetype="text/event-stream", headers=SSE_HEADERS)

        subscription = handle.subscription

        def _generate() -> Iterator[str]:
            try:
                yield ": connected\n\n"
                for line in handle.backlog:
                    yield format_sse(log_event(line))
                for event in subscription.iter_events(keepalive_s):
                    if event is None:
                        yield ": ping\n\n"
                        continue
                    yield format_sse(event)
            finally:
                store.hub.unsubscribe(subscription)

        return Response(_generate(), mimetype="text/event-stream", headers=SSE_HEADERS)

    @app.post("/jobs/<job_id>/retry")
    def retry_job(job_id: str):
        _authorized_job(job_id)
        job = runner.retry(job_id)
        return _ok({"jobId": job.id, "status": job.status.value, "attempt": job.attempt})

    @app.post("/jobs/<job_id>/cancel")
    def cancel_job(job_id: str):
        _authorized_job(job_id)
        store.remove(job_id)
        return _ok({"jobId": job_id, "cancelled": True})

    # -- app actions -----------------------------------------------------------

    def _submit(job_type: JobType, appname: str, extra: Optional[Dict[str, Any]] = None):
        identity = _identity()
        if not APPNAME_PATTERN.match(appname):
            raise ApiError("Invalid app name")
        userid = identity.user
        requested_owner = str(request.args.get("userid", "")).strip()
        if requested_owner and requested_owner != identity.user:
            if not identity.is_admin:
                raise Forbidden()
            userid = requested_owner
        meta: Dict[str, Any] = dict(extra or {})
        meta.update({"userid": userid, "appname": appname})
        if userid != identity.user:
            meta["requestedBy"] = identity.user

        exclusive = None
        if ENFORCE_SINGLE_ACTIVE_JOB:
            def exclusive(existing: Job) -> bool:
                return (
                    existing.meta.get("userid") == userid
                    and existing.meta.get("appname") == appname
                )

        job = runner.submit(job_type, userid, meta, exclusive=exclusive)
        return _ok({"jobId": job.id}, 202)

    @app.post("/apps")
    def create_app_job():
        payload = _validate(CREATE_APP_SCHEMA, _require_json(request))
        appname = str(payload.pop("appname")).strip().lower()
        return _submit(JobType.CREATE, appname, payload)

    @app.post("/apps/<appname>/<action>")
    def app_action(appname: str, action: str):
        job_type = APP_ACTIONS.get(action)
        if job_type is None:
            raise ApiError(f"Unknown action '{action}'", status_code=404)
        return _submit(job_type, appname)

    @app.delete("/apps/<appname>")
    def delete_app(appname: str):
        payload = _validate(DELETE_APP_SCHEMA, _optional_json(request))
        keep_data = _truthy(payload.get("keepData", request.args.get("keepData")))
        return _submit(JobType.DELETE, appname, {"keepData": keep_data})

    @app.put("/apps/<appname>/env")
    def update_app_env(appname: str):
        payload = _validate(ENV_UPDATE_SCHEMA, _require_json(request))
        normalized = {key: str(value) for key, value in payload["env"].items()}
        return _submit(JobType.ENV_RESTART, appname, {"env": normalized})

    @app.get("/health")
    def health():
        registered = [job_type.value for job_type in runner.executors.types()]
        return _ok(
            {
                "jobs": len(store),
                "queue": runner.queue_length(),
                "subscribers": store.hub.subscriber_count(),
                "executors": registered,
                "metrics": get_registry().snapshot(),
            }
        )

    return app


def format_sse(event: Event) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def _ok(data: Any, status_code: int = 200) -> Tuple[Response, int]:
    return jsonify({"ok": True, "data": data}), status_code


def _error(message: str, status_code: int) -> Tuple[Response, int]:
    return jsonify({"ok": False, "error": message}), status_code


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _require_json(req) -> Dict[str, Any]:
    try:
        data = req.get_json(force=True)  # type: ignore[no-any-return]
    except Exception as exc:  # noqa: BLE001
        raise ApiError("Malformed JSON body") from exc
    if not isinstance(data, dict):
        raise ApiError("Expected a JSON object")
    return data


def _optional_json(req) -> Dict[str, Any]:
    data = req.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _validate(schema: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        Draft7Validator(schema).validate(payload)
    except JSONSchemaValidationError as exc:
        raise ApiError(exc.message) from exc
    return payload


__all__ = [
    "ApiError",
    "Engine",
    "Identity",
    "build_engine",
    "create_app",
    "format_sse",
    "header_identity",
]
