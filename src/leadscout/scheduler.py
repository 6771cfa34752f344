from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .config import Config, load_runtime_config
from .connector import DispatchRequest, Dispatcher
from .errors import (
    ConfigIncompleteError,
    ConflictError,
    LeadScoutError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import cancel, get_active_run, require_run
from .models import RUN_TRIGGERS, Job, Run
from .rotation import advance, get_rotation_config, peek
from .services.jobs_service import list_jobs, require_job
from .services.source_configs_service import load_credentials
from .storage import new_id, record_audit
from .utils import json_dumps, log_event, parse_iso, utc_now

logger = logging.getLogger("leadscout.scheduler")

RETRY_CANCEL_REASON = "cancelled_for_retry"


def trigger_job(
    conn: Any,
    job_id: str,
    triggered_by: str = "manual",
    dispatcher: Dispatcher | None = None,
    config: Config | None = None,
    now: datetime | None = None,
) -> Run:
    """Create a pending run for a job and hand it to the connector.

    The active-run check, the rotation step and the insert share one write
    transaction. A job that already has a pending or running run raises
    ``ConflictError``; the partial unique index on ``job_runs`` catches the
    same case if two processes race past the check.
    """
    if triggered_by not in RUN_TRIGGERS:
        raise ValidationError(f"unknown trigger: {triggered_by}")
    config = config or load_runtime_config(conn)
    job = require_job(conn, job_id)
    _ensure_triggerable(conn, job, triggered_by)

    run_id = new_id("run")
    created_at = (now or utc_now()).isoformat()
    try:
        with conn.transaction():
            active = get_active_run(conn, job_id)
            if active is not None:
                raise ConflictError(f"job {job_id} already has an active run: {active.id}")
            run_params = _resolve_params(conn, job, config.rotation.max_cas_retries)
            conn.execute(
                """
                INSERT INTO job_runs
                    (id, job_id, status, triggered_by, run_params_json, created_at)
                VALUES (?, ?, 'pending', ?, ?, ?)
                """,
                (run_id, job_id, triggered_by, json_dumps(run_params), created_at),
            )
            conn.execute(
                "UPDATE jobs SET last_run_at = ? WHERE id = ?",
                (created_at, job_id),
            )
            record_audit(
                conn, "run.trigger", "run", run_id, {"job_id": job_id, "triggered_by": triggered_by}
            )
    except Exception as exc:
        if conn.is_integrity_error(exc):
            raise ConflictError(f"job {job_id} already has an active run") from exc
        if isinstance(exc, ConflictError):
            log_event(logger, logging.INFO, "trigger_conflict", job_id=job_id, triggered_by=triggered_by)
        raise

    log_event(
        logger,
        logging.INFO,
        "run_triggered",
        run_id=run_id,
        job_id=job_id,
        triggered_by=triggered_by,
    )
    if dispatcher is not None:
        _dispatch(conn, dispatcher, job, run_id, run_params)
    return require_run(conn, run_id)


def retry_run(
    conn: Any,
    run_id: str,
    dispatcher: Dispatcher | None = None,
    config: Config | None = None,
) -> Run:
    """Cancel a run if it is still active, then trigger its job again.

    The job is checked before anything is cancelled, so a retry that cannot
    start leaves the original run as it was.
    """
    run = require_run(conn, run_id)
    _ensure_triggerable(conn, require_job(conn, run.job_id), "retry")
    if not run.is_terminal:
        cancel(conn, run_id, reason=RETRY_CANCEL_REASON)
    log_event(logger, logging.INFO, "run_retry", run_id=run_id, job_id=run.job_id)
    retried = trigger_job(conn, run.job_id, "retry", dispatcher=dispatcher, config=config)
    record_audit(conn, "run.retry", "run", retried.id, {"retried_from": run_id})
    return retried


def list_due_jobs(
    conn: Any, now: datetime | None = None, config: Config | None = None
) -> list[Job]:
    config = config or load_runtime_config(conn)
    now = now or utc_now()
    due: list[Job] = []
    for job in list_jobs(conn):
        if not job.is_active or job.schedule_type == "manual":
            continue
        interval = _interval_minutes(conn, job, config)
        if job.last_run_at is None:
            due.append(job)
            continue
        if now - parse_iso(job.last_run_at) >= timedelta(minutes=interval):
            due.append(job)
    due.sort(key=lambda job: (job.last_run_at or "", job.id))
    return due


def trigger_due_jobs(
    conn: Any,
    dispatcher: Dispatcher | None = None,
    now: datetime | None = None,
    config: Config | None = None,
) -> list[Run]:
    config = config or load_runtime_config(conn)
    runs: list[Run] = []
    for job in list_due_jobs(conn, now=now, config=config):
        try:
            runs.append(
                trigger_job(conn, job.id, "scheduled", dispatcher=dispatcher, config=config, now=now)
            )
        except ConflictError:
            log_event(logger, logging.INFO, "scheduled_job_skipped", job_id=job.id, reason="active_run")
        except LeadScoutError as exc:
            log_event(
                logger,
                logging.WARNING,
                "scheduled_job_skipped",
                job_id=job.id,
                reason=exc.kind,
                error=exc.message,
            )
    log_event(logger, logging.INFO, "scheduler_tick", triggered=len(runs))
    return runs


def _ensure_triggerable(conn: Any, job: Job, triggered_by: str) -> None:
    if not job.is_active and triggered_by != "manual":
        raise NotFoundError(f"job {job.id} is inactive")
    if job.params or not job.rotation_config_id:
        return
    rotation = get_rotation_config(conn, job.rotation_config_id)
    if rotation is not None and rotation.is_active:
        # Raises ConfigIncompleteError when either list is empty.
        peek(rotation)


def _resolve_params(conn: Any, job: Job, max_retries: int) -> dict[str, Any]:
    static = dict(job.params)
    if not job.rotation_config_id:
        return static
    rotation = get_rotation_config(conn, job.rotation_config_id)
    if rotation is None or not rotation.is_active:
        return static
    try:
        country, industry = advance(conn, rotation.id, max_retries, commit=False)
    except ConfigIncompleteError:
        if not static:
            raise
        log_event(
            logger,
            logging.WARNING,
            "rotation_incomplete_fallback",
            job_id=job.id,
            config_id=rotation.id,
        )
        return static
    merged: dict[str, Any] = {"country": country, "industry": industry}
    merged.update(static)
    return merged


def _interval_minutes(conn: Any, job: Job, config: Config) -> int:
    if job.schedule_type == "daily":
        return config.scheduler.daily_interval_minutes
    if job.interval_minutes:
        return job.interval_minutes
    if job.rotation_config_id:
        rotation = get_rotation_config(conn, job.rotation_config_id)
        if rotation is not None and rotation.runs_per_day > 0:
            return max(1, 1440 // rotation.runs_per_day)
    return config.scheduler.default_interval_minutes


def _dispatch(
    conn: Any, dispatcher: Dispatcher, job: Job, run_id: str, params: dict[str, Any]
) -> None:
    try:
        credentials = load_credentials(conn, job.source_platform)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "credentials_unavailable", run_id=run_id, error=str(exc))
        dispatcher.record_failure(run_id, f"dispatch_failed: credentials unavailable ({exc})")
        return
    dispatcher.submit(
        DispatchRequest(
            run_id=run_id,
            job_id=job.id,
            source_platform=job.source_platform,
            params=params,
            credentials=credentials,
        )
    )
