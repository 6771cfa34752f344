from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import RUN_PENDING, RUN_RUNNING, Run
from .utils import parse_iso, utc_now


@dataclass(frozen=True)
class StuckThresholds:
    pending_seconds: int = 300
    running_seconds: int = 600

    @classmethod
    def from_config(cls, config: Any) -> "StuckThresholds":
        return cls(
            pending_seconds=config.runs.pending_stuck_seconds,
            running_seconds=config.runs.running_stuck_seconds,
        )


def is_stuck(run: Run, now: datetime, thresholds: StuckThresholds) -> bool:
    """Flag runs that have sat in a non-terminal state for too long.

    Pending runs are measured from creation, running runs from their start.
    The threshold itself is not stuck; only time strictly beyond it is. This
    is a display hint and never changes the run.
    """
    if run.status == RUN_PENDING:
        anchor, limit = run.created_at, thresholds.pending_seconds
    elif run.status == RUN_RUNNING:
        anchor, limit = run.started_at or run.created_at, thresholds.running_seconds
    else:
        return False
    if not anchor:
        return False
    return (now - parse_iso(anchor)).total_seconds() > limit


def find_stuck_runs(
    conn: Any, thresholds: StuckThresholds, now: datetime | None = None
) -> list[Run]:
    from .lifecycle import RUN_COLUMNS, row_to_run

    now = now or utc_now()
    cursor = conn.execute(
        f"""
        SELECT {RUN_COLUMNS} FROM job_runs
        WHERE status IN ('pending', 'running')
        ORDER BY created_at
        """
    )
    runs = [row_to_run(row) for row in cursor.fetchall()]
    return [run for run in runs if is_stuck(run, now, thresholds)]
