from __future__ import annotations

import logging
from dataclasses import asdict, replace
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..lifecycle import RUN_COLUMNS, row_to_run
from ..models import SCHEDULE_TYPES, SOURCE_PLATFORMS, Job
from ..params import validate_params
from ..rotation import get_rotation_config
from ..storage import new_id, record_audit
from ..utils import json_dumps, json_loads_or, log_event, utc_now_iso

logger = logging.getLogger("leadscout.jobs")

JOB_COLUMNS = (
    "id, name, source_platform, schedule_type, params_json, is_active, "
    "rotation_config_id, interval_minutes, last_run_at, created_at, updated_at"
)

_EDITABLE_FIELDS = (
    "name",
    "source_platform",
    "schedule_type",
    "params",
    "is_active",
    "rotation_config_id",
    "interval_minutes",
)


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return row_to_job(row)


def require_job(conn: Any, job_id: str) -> Job:
    job = get_job(conn, job_id)
    if job is None:
        raise NotFoundError(f"job not found: {job_id}")
    return job


def list_jobs(conn: Any) -> list[Job]:
    cursor = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs ORDER BY created_at DESC, id")
    return [row_to_job(row) for row in cursor.fetchall()]


def list_jobs_with_latest_run(conn: Any) -> list[dict[str, Any]]:
    latest: dict[str, dict[str, Any]] = {}
    cursor = conn.execute(
        f"""
        SELECT {RUN_COLUMNS}
        FROM job_runs r
        WHERE r.created_at = (
            SELECT MAX(created_at) FROM job_runs WHERE job_id = r.job_id
        )
        ORDER BY r.created_at DESC
        """
    )
    for row in cursor.fetchall():
        run = row_to_run(row)
        latest.setdefault(run.job_id, asdict(run))
    rows = []
    for job in list_jobs(conn):
        data = asdict(job)
        data["latest_run"] = latest.get(job.id)
        rows.append(data)
    return rows


def get_job_stats(conn: Any) -> dict[str, int]:
    total_jobs, active_jobs = conn.execute(
        "SELECT COUNT(*), COALESCE(SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END), 0) FROM jobs"
    ).fetchone()
    total_runs, total_imported = conn.execute(
        "SELECT COUNT(*), COALESCE(SUM(contacts_imported), 0) FROM job_runs"
    ).fetchone()
    return {
        "total_jobs": int(total_jobs or 0),
        "active_jobs": int(active_jobs or 0),
        "total_runs": int(total_runs or 0),
        "total_contacts_imported": int(total_imported or 0),
    }


def create_job(conn: Any, payload: dict[str, Any]) -> Job:
    now = utc_now_iso()
    draft = Job(
        id=str(payload.get("id") or new_id("job")),
        name=str(payload.get("name") or ""),
        source_platform=str(payload.get("source_platform") or ""),
        schedule_type=str(payload.get("schedule_type") or "manual"),
        params=payload.get("params") or {},
        is_active=bool(payload.get("is_active", True)),
        rotation_config_id=payload.get("rotation_config_id") or None,
        interval_minutes=payload.get("interval_minutes"),
        last_run_at=None,
        created_at=now,
        updated_at=now,
    )
    job = _validate_job(conn, draft)
    with conn.transaction():
        conn.execute(
            f"""
            INSERT INTO jobs ({JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            _job_values(job),
        )
        record_audit(
            conn,
            "job.create",
            "job",
            job.id,
            {"name": job.name, "source_platform": job.source_platform},
        )
    log_event(
        logger,
        logging.INFO,
        "job_created",
        job_id=job.id,
        source_platform=job.source_platform,
        schedule_type=job.schedule_type,
    )
    return job


def update_job(conn: Any, job_id: str, patch: dict[str, Any]) -> Job:
    current = require_job(conn, job_id)
    unknown = set(patch) - set(_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("unknown job fields: " + ", ".join(sorted(unknown)))
    changes: dict[str, Any] = {key: patch[key] for key in _EDITABLE_FIELDS if key in patch}
    for key in ("name", "source_platform", "schedule_type", "is_active"):
        if key in changes and changes[key] is None:
            raise ValidationError(f"{key} cannot be null")
    if "is_active" in changes:
        changes["is_active"] = bool(changes["is_active"])
    if "rotation_config_id" in changes:
        changes["rotation_config_id"] = changes["rotation_config_id"] or None
    if "params" in changes and changes["params"] is None:
        changes["params"] = {}
    job = _validate_job(conn, replace(current, updated_at=utc_now_iso(), **changes))
    with conn.transaction():
        conn.execute(
            """
            UPDATE jobs
            SET name = ?, source_platform = ?, schedule_type = ?, params_json = ?,
                is_active = ?, rotation_config_id = ?, interval_minutes = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                job.name,
                job.source_platform,
                job.schedule_type,
                json_dumps(job.params),
                1 if job.is_active else 0,
                job.rotation_config_id,
                job.interval_minutes,
                job.updated_at,
                job.id,
            ),
        )
        record_audit(conn, "job.update", "job", job.id, {"fields": sorted(changes)})
    log_event(logger, logging.INFO, "job_updated", job_id=job.id, fields=",".join(sorted(changes)))
    return job


def set_job_active(conn: Any, job_id: str, active: bool) -> Job:
    return update_job(conn, job_id, {"is_active": bool(active)})


def delete_job(conn: Any, job_id: str, confirm: bool = False) -> int:
    """Delete a job together with its whole run history.

    Returns the number of runs removed. ``confirm`` must be passed explicitly
    because the cascade cannot be undone.
    """
    if not confirm:
        raise ValidationError("deleting a job removes its run history; pass confirm=true")
    require_job(conn, job_id)
    with conn.transaction():
        cursor = conn.execute("DELETE FROM job_runs WHERE job_id = ?", (job_id,))
        removed_runs = int(cursor.rowcount or 0)
        conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        record_audit(conn, "job.delete", "job", job_id, {"runs_deleted": removed_runs})
    log_event(logger, logging.WARNING, "job_deleted", job_id=job_id, runs_deleted=removed_runs)
    return removed_runs


def row_to_job(row: tuple) -> Job:
    (
        job_id,
        name,
        source_platform,
        schedule_type,
        params_json,
        is_active,
        rotation_config_id,
        interval_minutes,
        last_run_at,
        created_at,
        updated_at,
    ) = row
    return Job(
        id=job_id,
        name=name,
        source_platform=source_platform,
        schedule_type=schedule_type,
        params=json_loads_or(params_json, {}),
        is_active=bool(is_active),
        rotation_config_id=rotation_config_id,
        interval_minutes=int(interval_minutes) if interval_minutes is not None else None,
        last_run_at=last_run_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _validate_job(conn: Any, job: Job) -> Job:
    name = job.name.strip()
    if not name:
        raise ValidationError("name is required")
    if job.source_platform not in SOURCE_PLATFORMS:
        raise ValidationError(f"unknown source_platform: {job.source_platform or '<empty>'}")
    if job.schedule_type not in SCHEDULE_TYPES:
        raise ValidationError(f"unknown schedule_type: {job.schedule_type}")
    params = validate_params(job.source_platform, job.params)
    interval = job.interval_minutes
    if interval is not None:
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            raise ValidationError("interval_minutes must be a positive integer")
    if job.rotation_config_id:
        rotation = get_rotation_config(conn, job.rotation_config_id)
        if rotation is None:
            raise ValidationError(f"rotation config not found: {job.rotation_config_id}")
        if rotation.source_platform != job.source_platform:
            raise ValidationError(
                "rotation config targets "
                f"{rotation.source_platform}, job targets {job.source_platform}"
            )
    return replace(job, name=name, params=params)


def _job_values(job: Job) -> tuple:
    return (
        job.id,
        job.name,
        job.source_platform,
        job.schedule_type,
        json_dumps(job.params),
        1 if job.is_active else 0,
        job.rotation_config_id,
        job.interval_minutes,
        job.last_run_at,
        job.created_at,
        job.updated_at,
    )
