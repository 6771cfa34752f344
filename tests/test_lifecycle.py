from datetime import datetime, timedelta, timezone

import pytest

from leadscout.config import default_config
from leadscout.errors import AlreadyTerminalError, InvalidTransition, NotFoundError, ValidationError
from leadscout.lifecycle import (
    cancel,
    describe_runs,
    get_run,
    list_runs,
    mark_completed,
    mark_failed,
    mark_started,
)
from leadscout.scheduler import trigger_job
from leadscout.services.jobs_service import create_job
from leadscout.storage import init_db
from leadscout.stuck import StuckThresholds

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _pending_run(conn, name="Maps: dentists"):
    job = create_job(
        conn,
        {"name": name, "source_platform": "map_listings", "params": {"search_terms": ["dentist"]}},
    )
    return trigger_job(conn, job.id, config=default_config(), now=T0)


def test_happy_path_records_counts_and_duration(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn)
    assert run.status == "pending"
    assert run.started_at is None

    started = mark_started(conn, run.id, now=T0 + timedelta(seconds=5))
    assert started.status == "running"

    done = mark_completed(conn, run.id, 20, 12, 8, now=T0 + timedelta(seconds=95))
    assert done.status == "completed"
    assert (done.contacts_found, done.contacts_imported, done.contacts_skipped) == (20, 12, 8)
    assert done.duration_seconds == 90
    assert done.completed_at is not None


def test_failed_run_keeps_message(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn)
    mark_started(conn, run.id, now=T0)

    failed = mark_failed(conn, run.id, "http 429", now=T0 + timedelta(seconds=30))

    assert failed.status == "failed"
    assert failed.error_message == "http 429"
    assert failed.duration_seconds == 30


@pytest.mark.parametrize("finish", ["completed", "failed", "cancelled"])
def test_terminal_runs_never_change(tmp_path, finish):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn)
    mark_started(conn, run.id)
    if finish == "completed":
        mark_completed(conn, run.id, 1, 1, 0)
    elif finish == "failed":
        mark_failed(conn, run.id, "boom")
    else:
        cancel(conn, run.id)
    before = get_run(conn, run.id)

    with pytest.raises(InvalidTransition):
        mark_started(conn, run.id)
    with pytest.raises(InvalidTransition):
        mark_completed(conn, run.id, 5, 5, 0)
    with pytest.raises(InvalidTransition):
        mark_failed(conn, run.id, "late report")
    with pytest.raises(AlreadyTerminalError):
        cancel(conn, run.id)

    assert get_run(conn, run.id) == before


def test_completing_a_pending_run_is_rejected(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn)

    with pytest.raises(InvalidTransition):
        mark_completed(conn, run.id, 1, 1, 0)
    with pytest.raises(InvalidTransition):
        mark_failed(conn, run.id, "nope")
    assert get_run(conn, run.id).status == "pending"


def test_duplicate_start_is_rejected(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn)
    mark_started(conn, run.id)

    with pytest.raises(InvalidTransition):
        mark_started(conn, run.id)


def test_negative_counts_are_rejected(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn)
    mark_started(conn, run.id)

    with pytest.raises(ValidationError):
        mark_completed(conn, run.id, 5, -1, 0)
    with pytest.raises(ValidationError):
        mark_completed(conn, run.id, 5, 2.5, 0)
    assert get_run(conn, run.id).status == "running"


def test_cancel_pending_and_running(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    pending = _pending_run(conn, name="first")
    cancelled = cancel(conn, pending.id, now=T0 + timedelta(seconds=10))
    assert cancelled.status == "cancelled"
    assert cancelled.duration_seconds is None
    assert cancelled.error_message == "cancelled_by_operator"

    running = _pending_run(conn, name="second")
    mark_started(conn, running.id, now=T0)
    cancelled = cancel(conn, running.id, now=T0 + timedelta(seconds=40))
    assert cancelled.status == "cancelled"
    assert cancelled.duration_seconds == 40


def test_unknown_run(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    with pytest.raises(NotFoundError):
        mark_started(conn, "run_missing")
    with pytest.raises(NotFoundError):
        cancel(conn, "run_missing")


def test_list_runs_filters_and_counts(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    first = _pending_run(conn, name="first")
    mark_started(conn, first.id)
    mark_completed(conn, first.id, 3, 2, 1)
    second = _pending_run(conn, name="second")

    runs, total = list_runs(conn)
    assert total == 2
    assert {run.id for run in runs} == {first.id, second.id}

    runs, total = list_runs(conn, statuses=["pending", "running"])
    assert total == 1
    assert [run.id for run in runs] == [second.id]

    runs, total = list_runs(conn, job_id=first.job_id, limit=1)
    assert total == 1
    assert runs[0].id == first.id

    with pytest.raises(ValidationError):
        list_runs(conn, statuses=["exploded"])


def test_describe_runs_adds_job_and_stuck_flag(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    run = _pending_run(conn, name="Maps: plumbers")

    rows = describe_runs(conn, [run], StuckThresholds(), now=T0 + timedelta(seconds=301))

    assert rows[0]["job_name"] == "Maps: plumbers"
    assert rows[0]["job_source_platform"] == "map_listings"
    assert rows[0]["is_stuck"] is True
    assert rows[0]["run_params"] == {"search_terms": ["dentist"]}
