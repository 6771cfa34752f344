from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .connector import Dispatcher, NullConnector, SourceConnector
from .errors import LeadScoutError, ValidationError
from .lifecycle import cancel, describe_runs, list_runs, mark_completed, mark_failed, mark_started, require_run
from .rotation import (
    advance,
    create_rotation_config,
    delete_rotation_config,
    list_rotation_configs,
    require_rotation_config,
    update_rotation_config,
)
from .scheduler import retry_run, trigger_job
from .services.jobs_service import (
    create_job,
    delete_job,
    get_job_stats,
    list_jobs_with_latest_run,
    require_job,
    set_job_active,
    update_job,
)
from .services.source_configs_service import (
    get_source_config,
    list_source_configs,
    update_source_config,
    validate_source_config,
)
from .storage import (
    get_schema_version,
    get_state_db_path,
    init_db,
    list_audit_events,
    set_audit_actor,
)
from .stuck import StuckThresholds, find_stuck_runs
from .suggestions import list_suggestions
from .utils import configure_logging, log_event

app = FastAPI(title="LeadScout Admin API")

_DISPATCHER: Dispatcher | None = None
_DISPATCHER_LOCK = threading.Lock()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("LS_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


async def _audit_context(request: Request) -> None:
    # Async so the actor is set in the request context the sync handlers copy.
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip_address = forwarded.split(",")[0].strip() or request.headers.get("X-Real-IP")
    if not ip_address and request.client:
        ip_address = request.client.host
    set_audit_actor(request.headers.get("X-Admin-User") or "admin", ip_address or None)


_ADMIN_DEPENDENCIES = [Depends(_require_admin_token), Depends(_audit_context)]


def _ok(data: object) -> dict[str, object]:
    return {"success": True, "data": data}


def _error(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"kind": kind, "message": message}},
    )


@app.exception_handler(LeadScoutError)
async def _leadscout_error_handler(request: Request, exc: LeadScoutError) -> JSONResponse:
    log_event(
        _logger,
        logging.WARNING,
        "request_rejected",
        path=request.url.path,
        kind=exc.kind,
        error=exc.message,
    )
    return _error(exc.status_code, exc.kind, exc.message)


@app.exception_handler(ConfigError)
async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    return _error(ConfigError.status_code, ConfigError.kind, str(exc))


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}")
    return _error(400, ValidationError.kind, "; ".join(problems) or "invalid request")


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = exc.detail if isinstance(exc.detail, str) else "http_error"
    return _error(exc.status_code, kind, str(exc.detail))


class JobCreateRequest(BaseModel):
    name: str
    source_platform: str
    schedule_type: str = "manual"
    params: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    rotation_config_id: str | None = None
    interval_minutes: int | None = None


class JobUpdateRequest(BaseModel):
    name: str | None = None
    source_platform: str | None = None
    schedule_type: str | None = None
    params: dict[str, Any] | None = None
    is_active: bool | None = None
    rotation_config_id: str | None = None
    interval_minutes: int | None = None


class JobActiveRequest(BaseModel):
    is_active: bool


class RunCompleteRequest(BaseModel):
    found: int
    imported: int
    skipped: int


class RunFailRequest(BaseModel):
    error_message: str


class RotationCreateRequest(BaseModel):
    name: str
    source_platform: str
    countries: list[Union[str, int]] = Field(default_factory=list)
    industries: list[Union[str, int]] = Field(default_factory=list)
    current_country_index: int = 0
    current_industry_index: int = 0
    runs_per_day: int = 3
    is_active: bool = True


class RotationUpdateRequest(BaseModel):
    name: str | None = None
    source_platform: str | None = None
    countries: list[Union[str, int]] | None = None
    industries: list[Union[str, int]] | None = None
    current_country_index: int | None = None
    current_industry_index: int | None = None
    runs_per_day: int | None = None
    is_active: bool | None = None


class SourceConfigRequest(BaseModel):
    field_key: str
    value: str | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/health")
def health() -> dict[str, object]:
    conn = _get_conn()
    return _ok(
        {
            "ok": True,
            "name": load_runtime_config(conn).app.name,
            "version": _get_version(),
            "schema_version": get_schema_version(conn),
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }
    )


@app.get("/admin/config/runtime", dependencies=_ADMIN_DEPENDENCIES)
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    return _ok({"config": get_runtime_config(conn)})


@app.put("/admin/config/runtime", dependencies=_ADMIN_DEPENDENCIES)
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    set_runtime_config(conn, payload.config)
    return _ok({"config": get_runtime_config(conn)})


jobs_router = APIRouter(prefix="/jobs", dependencies=_ADMIN_DEPENDENCIES)


@jobs_router.get("")
def jobs_list() -> dict[str, object]:
    conn = _get_conn()
    return _ok({"jobs": list_jobs_with_latest_run(conn), "stats": get_job_stats(conn)})


@jobs_router.post("")
def jobs_create(payload: JobCreateRequest) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(create_job(conn, payload.model_dump())))


@jobs_router.get("/{job_id}")
def jobs_get(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(require_job(conn, job_id)))


@jobs_router.put("/{job_id}")
@jobs_router.patch("/{job_id}")
def jobs_update(job_id: str, payload: JobUpdateRequest) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(update_job(conn, job_id, payload.model_dump(exclude_unset=True))))


@jobs_router.delete("/{job_id}")
def jobs_delete(job_id: str, confirm: bool = False) -> dict[str, object]:
    conn = _get_conn()
    removed = delete_job(conn, job_id, confirm=confirm)
    return _ok({"deleted": job_id, "runs_deleted": removed})


@jobs_router.post("/{job_id}/active")
def jobs_set_active(job_id: str, payload: JobActiveRequest) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(set_job_active(conn, job_id, payload.is_active)))


@jobs_router.post("/{job_id}/trigger")
def jobs_trigger(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    run = trigger_job(conn, job_id, "manual", dispatcher=get_dispatcher(), config=config)
    return _ok(describe_runs(conn, [run], StuckThresholds.from_config(config))[0])


runs_router = APIRouter(prefix="/runs", dependencies=_ADMIN_DEPENDENCIES)


@runs_router.get("")
def runs_list(
    job_id: str | None = None,
    status: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> dict[str, object]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    statuses = [item.strip() for item in (status or "").split(",") if item.strip()]
    limit = limit or config.runs.list_limit
    runs, total = list_runs(conn, job_id=job_id, statuses=statuses, limit=limit, offset=offset)
    return _ok(
        {
            "runs": describe_runs(conn, runs, StuckThresholds.from_config(config)),
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@runs_router.get("/stuck")
def runs_stuck() -> dict[str, object]:
    conn = _get_conn()
    thresholds = StuckThresholds.from_config(load_runtime_config(conn))
    return _ok({"runs": describe_runs(conn, find_stuck_runs(conn, thresholds), thresholds)})


@runs_router.get("/{run_id}")
def runs_get(run_id: str) -> dict[str, object]:
    conn = _get_conn()
    return _ok(_describe(conn, require_run(conn, run_id)))


@runs_router.post("/{run_id}/cancel")
def runs_cancel(run_id: str, confirm: bool = False) -> dict[str, object]:
    if not confirm:
        raise ValidationError("cancelling a run needs confirm=true")
    conn = _get_conn()
    return _ok(_describe(conn, cancel(conn, run_id)))


@runs_router.post("/{run_id}/retry")
def runs_retry(run_id: str, confirm: bool = False) -> dict[str, object]:
    if not confirm:
        raise ValidationError("retrying a run cancels it first; pass confirm=true")
    conn = _get_conn()
    config = load_runtime_config(conn)
    run = retry_run(conn, run_id, dispatcher=get_dispatcher(), config=config)
    return _ok(_describe(conn, run))


@runs_router.post("/{run_id}/start")
def runs_start(run_id: str) -> dict[str, object]:
    conn = _get_conn()
    return _ok(_describe(conn, mark_started(conn, run_id)))


@runs_router.post("/{run_id}/complete")
def runs_complete(run_id: str, payload: RunCompleteRequest) -> dict[str, object]:
    conn = _get_conn()
    run = mark_completed(conn, run_id, payload.found, payload.imported, payload.skipped)
    return _ok(_describe(conn, run))


@runs_router.post("/{run_id}/fail")
def runs_fail(run_id: str, payload: RunFailRequest) -> dict[str, object]:
    conn = _get_conn()
    return _ok(_describe(conn, mark_failed(conn, run_id, payload.error_message)))


rotation_router = APIRouter(prefix="/rotation-configs", dependencies=_ADMIN_DEPENDENCIES)


@rotation_router.get("")
def rotation_list(source_platform: str | None = None) -> dict[str, object]:
    conn = _get_conn()
    configs = list_rotation_configs(conn, source_platform=source_platform)
    return _ok({"configs": [asdict(config) for config in configs]})


@rotation_router.post("")
def rotation_create(payload: RotationCreateRequest) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(create_rotation_config(conn, payload.model_dump())))


@rotation_router.get("/{config_id}")
def rotation_get(config_id: str) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(require_rotation_config(conn, config_id)))


@rotation_router.put("/{config_id}")
@rotation_router.patch("/{config_id}")
def rotation_update(config_id: str, payload: RotationUpdateRequest) -> dict[str, object]:
    conn = _get_conn()
    patch = payload.model_dump(exclude_unset=True)
    return _ok(asdict(update_rotation_config(conn, config_id, patch)))


@rotation_router.delete("/{config_id}")
def rotation_delete(config_id: str, confirm: bool = False) -> dict[str, object]:
    conn = _get_conn()
    detached = delete_rotation_config(conn, config_id, confirm=confirm)
    return _ok({"deleted": config_id, "jobs_detached": detached})


@rotation_router.post("/{config_id}/advance")
def rotation_advance(config_id: str) -> dict[str, object]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    country, industry = advance(conn, config_id, config.rotation.max_cas_retries)
    return _ok(
        {
            "country": country,
            "industry": industry,
            "config": asdict(require_rotation_config(conn, config_id)),
        }
    )


sources_router = APIRouter(prefix="/source-configs", dependencies=_ADMIN_DEPENDENCIES)


@sources_router.get("")
def sources_list() -> dict[str, object]:
    conn = _get_conn()
    return _ok({"configs": [asdict(item) for item in list_source_configs(conn)]})


@sources_router.get("/{platform}")
def sources_get(platform: str) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(get_source_config(conn, platform)))


@sources_router.put("/{platform}")
def sources_update(platform: str, payload: SourceConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        config = update_source_config(conn, platform, payload.field_key, payload.value)
    except ValueError as exc:
        # Missing or malformed master key.
        raise ConfigError(str(exc)) from exc
    return _ok(asdict(config))


@sources_router.post("/{platform}/validate")
def sources_validate(platform: str) -> dict[str, object]:
    conn = _get_conn()
    return _ok(asdict(validate_source_config(conn, platform, get_dispatcher().connector)))


@app.get("/suggestions", dependencies=_ADMIN_DEPENDENCIES)
def suggestions_list(source_platform: str | None = None, limit: int | None = None) -> dict[str, object]:
    conn = _get_conn()
    limit = limit or load_runtime_config(conn).suggestions.limit
    items = list_suggestions(conn, limit=limit, source_platform=source_platform)
    return _ok({"suggestions": [asdict(item) for item in items]})


@app.get("/audit-log", dependencies=_ADMIN_DEPENDENCIES)
def audit_log_list(
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
) -> dict[str, object]:
    conn = _get_conn()
    events = list_audit_events(conn, entity_type=entity_type, entity_id=entity_id, limit=limit)
    return _ok({"events": [asdict(event) for event in events]})


app.include_router(jobs_router)
app.include_router(runs_router)
app.include_router(rotation_router)
app.include_router(sources_router)


def get_dispatcher() -> Dispatcher:
    global _DISPATCHER
    with _DISPATCHER_LOCK:
        if _DISPATCHER is None:
            workers = load_runtime_config(_get_conn()).scheduler.dispatch_workers
            _DISPATCHER = Dispatcher(NullConnector(), conn_factory=_get_conn, max_workers=workers)
        return _DISPATCHER


def set_connector(connector: SourceConnector) -> Dispatcher:
    """Swap the connector used for dispatch and credential probes."""
    global _DISPATCHER
    with _DISPATCHER_LOCK:
        previous = _DISPATCHER
        workers = previous.max_workers if previous else 4
        _DISPATCHER = Dispatcher(connector, conn_factory=_get_conn, max_workers=workers)
    if previous is not None:
        previous.shutdown(wait=False)
    return _DISPATCHER


def _describe(conn: Any, run) -> dict[str, object]:
    thresholds = StuckThresholds.from_config(load_runtime_config(conn))
    return describe_runs(conn, [run], thresholds)[0]


def _setup_logging():
    return configure_logging("leadscout.admin")


_logger = _setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("leadscout")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn
