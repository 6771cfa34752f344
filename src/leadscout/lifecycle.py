"""Run state machine.

    pending -> running -> completed | failed
    pending | running -> cancelled

Terminal states never change. Every transition is a single conditional
UPDATE guarded on the status it expects, so duplicate or late reports from a
connector fail with an error instead of overwriting the recorded outcome.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Iterable

from .errors import AlreadyTerminalError, InvalidTransition, NotFoundError, ValidationError
from .models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PENDING,
    RUN_RUNNING,
    RUN_STATUSES,
    Run,
)
from .stuck import StuckThresholds, is_stuck
from .storage import record_audit
from .utils import json_loads_or, log_event, parse_iso, utc_now

logger = logging.getLogger("leadscout.lifecycle")

RUN_COLUMNS = (
    "id, job_id, status, triggered_by, run_params_json, started_at, completed_at, "
    "duration_seconds, contacts_found, contacts_imported, contacts_skipped, "
    "error_message, created_at"
)

CANCEL_REASON = "cancelled_by_operator"


def get_run(conn: Any, run_id: str) -> Run | None:
    row = conn.execute(f"SELECT {RUN_COLUMNS} FROM job_runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return row_to_run(row)


def require_run(conn: Any, run_id: str) -> Run:
    run = get_run(conn, run_id)
    if run is None:
        raise NotFoundError(f"run not found: {run_id}")
    return run


def get_active_run(conn: Any, job_id: str) -> Run | None:
    row = conn.execute(
        f"""
        SELECT {RUN_COLUMNS} FROM job_runs
        WHERE job_id = ? AND status IN ('pending', 'running')
        LIMIT 1
        """,
        (job_id,),
    ).fetchone()
    return row_to_run(row) if row else None


def list_runs(
    conn: Any,
    job_id: str | None = None,
    statuses: Iterable[str] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Run], int]:
    clauses: list[str] = []
    params: list[object] = []
    if job_id:
        clauses.append("job_id = ?")
        params.append(job_id)
    wanted = [status for status in (statuses or []) if status]
    if wanted:
        unknown = [status for status in wanted if status not in RUN_STATUSES]
        if unknown:
            raise ValidationError("unknown run status: " + ", ".join(unknown))
        clauses.append(f"status IN ({','.join(['?'] * len(wanted))})")
        params.extend(wanted)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    total = conn.execute(f"SELECT COUNT(*) FROM job_runs {where}", tuple(params)).fetchone()[0]
    cursor = conn.execute(
        f"""
        SELECT {RUN_COLUMNS} FROM job_runs
        {where}
        ORDER BY created_at DESC, id
        LIMIT ? OFFSET ?
        """,
        tuple(params + [max(1, int(limit)), max(0, int(offset))]),
    )
    return [row_to_run(row) for row in cursor.fetchall()], int(total or 0)


def describe_runs(
    conn: Any,
    runs: list[Run],
    thresholds: StuckThresholds,
    now: datetime | None = None,
) -> list[dict[str, object]]:
    """Shape runs for display: job name/platform plus the stuck flag."""
    now = now or utc_now()
    labels: dict[str, tuple[str, str]] = {}
    job_ids = sorted({run.job_id for run in runs})
    if job_ids:
        cursor = conn.execute(
            f"SELECT id, name, source_platform FROM jobs WHERE id IN ({','.join(['?'] * len(job_ids))})",
            tuple(job_ids),
        )
        labels = {row[0]: (row[1], row[2]) for row in cursor.fetchall()}
    rows = []
    for run in runs:
        data = asdict(run)
        name, platform = labels.get(run.job_id, (None, None))
        data["job_name"] = name
        data["job_source_platform"] = platform
        data["is_stuck"] = is_stuck(run, now, thresholds)
        rows.append(data)
    return rows


def mark_started(conn: Any, run_id: str, now: datetime | None = None) -> Run:
    started_at = (now or utc_now()).isoformat()
    cursor = conn.execute(
        """
        UPDATE job_runs
        SET status = 'running', started_at = ?
        WHERE id = ? AND status = 'pending'
        """,
        (started_at, run_id),
    )
    conn.commit()
    if cursor.rowcount != 1:
        _reject(conn, run_id, RUN_RUNNING)
    log_event(logger, logging.INFO, "run_started", run_id=run_id)
    return require_run(conn, run_id)


def mark_completed(
    conn: Any,
    run_id: str,
    found: int,
    imported: int,
    skipped: int,
    now: datetime | None = None,
) -> Run:
    for label, value in (("found", found), ("imported", imported), ("skipped", skipped)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{label} must be a non-negative integer")
    run = require_run(conn, run_id)
    if run.status != RUN_RUNNING:
        _reject(conn, run_id, RUN_COMPLETED)
    completed = now or utc_now()
    cursor = conn.execute(
        """
        UPDATE job_runs
        SET status = 'completed', completed_at = ?, duration_seconds = ?,
            contacts_found = ?, contacts_imported = ?, contacts_skipped = ?
        WHERE id = ? AND status = 'running'
        """,
        (
            completed.isoformat(),
            _duration_seconds(run.started_at, completed),
            found,
            imported,
            skipped,
            run_id,
        ),
    )
    conn.commit()
    if cursor.rowcount != 1:
        _reject(conn, run_id, RUN_COMPLETED)
    log_event(
        logger,
        logging.INFO,
        "run_completed",
        run_id=run_id,
        found=found,
        imported=imported,
        skipped=skipped,
    )
    return require_run(conn, run_id)


def mark_failed(
    conn: Any, run_id: str, error_message: str, now: datetime | None = None
) -> Run:
    run = require_run(conn, run_id)
    if run.status != RUN_RUNNING:
        _reject(conn, run_id, RUN_FAILED)
    completed = now or utc_now()
    cursor = conn.execute(
        """
        UPDATE job_runs
        SET status = 'failed', completed_at = ?, duration_seconds = ?, error_message = ?
        WHERE id = ? AND status = 'running'
        """,
        (
            completed.isoformat(),
            _duration_seconds(run.started_at, completed),
            str(error_message or "unknown_error"),
            run_id,
        ),
    )
    conn.commit()
    if cursor.rowcount != 1:
        _reject(conn, run_id, RUN_FAILED)
    log_event(logger, logging.WARNING, "run_failed", run_id=run_id, error=error_message)
    return require_run(conn, run_id)


def cancel(
    conn: Any,
    run_id: str,
    reason: str = CANCEL_REASON,
    now: datetime | None = None,
) -> Run:
    """Cancel a pending or running run.

    Cancelling only records the outcome; a connector that is already working
    on the run is not stopped, and its later reports are rejected. A run that
    already reached a terminal state raises ``AlreadyTerminalError``.
    """
    # A pending run may start between the read and the update; re-read and
    # retry against the new status.
    for _ in range(3):
        run = require_run(conn, run_id)
        if run.is_terminal:
            raise AlreadyTerminalError(f"run {run_id} is already {run.status}")
        completed = now or utc_now()
        duration = _duration_seconds(run.started_at, completed) if run.started_at else None
        cursor = conn.execute(
            """
            UPDATE job_runs
            SET status = 'cancelled', completed_at = ?, duration_seconds = ?, error_message = ?
            WHERE id = ? AND status = ?
            """,
            (completed.isoformat(), duration, reason, run_id, run.status),
        )
        conn.commit()
        if cursor.rowcount == 1:
            record_audit(
                conn,
                "run.cancel",
                "run",
                run_id,
                {"previous_status": run.status, "reason": reason},
            )
            log_event(
                logger,
                logging.INFO,
                "run_cancelled",
                run_id=run_id,
                previous_status=run.status,
            )
            return require_run(conn, run_id)
    run = require_run(conn, run_id)
    if run.is_terminal:
        raise AlreadyTerminalError(f"run {run_id} is already {run.status}")
    raise InvalidTransition(f"run {run_id} changed state while cancelling")


def row_to_run(row: tuple) -> Run:
    (
        run_id,
        job_id,
        status,
        triggered_by,
        run_params_json,
        started_at,
        completed_at,
        duration_seconds,
        contacts_found,
        contacts_imported,
        contacts_skipped,
        error_message,
        created_at,
    ) = row
    return Run(
        id=run_id,
        job_id=job_id,
        status=status,
        triggered_by=triggered_by,
        run_params=json_loads_or(run_params_json, {}),
        started_at=started_at,
        completed_at=completed_at,
        duration_seconds=int(duration_seconds) if duration_seconds is not None else None,
        contacts_found=int(contacts_found or 0),
        contacts_imported=int(contacts_imported or 0),
        contacts_skipped=int(contacts_skipped or 0),
        error_message=error_message,
        created_at=created_at,
    )


def _reject(conn: Any, run_id: str, target: str) -> None:
    run = require_run(conn, run_id)
    log_event(
        logger,
        logging.WARNING,
        "run_transition_rejected",
        run_id=run_id,
        status=run.status,
        target=target,
    )
    raise InvalidTransition(f"run {run_id} cannot move from {run.status} to {target}")


def _duration_seconds(started_at: str | None, completed: datetime) -> int:
    if not started_at:
        return 0
    delta = completed - parse_iso(started_at)
    return max(0, int(round(delta.total_seconds())))


__all__ = [
    "RUN_CANCELLED",
    "RUN_PENDING",
    "cancel",
    "describe_runs",
    "get_active_run",
    "get_run",
    "list_runs",
    "mark_completed",
    "mark_failed",
    "mark_started",
    "require_run",
    "row_to_run",
]
