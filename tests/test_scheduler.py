import base64
import threading
from datetime import datetime, timedelta, timezone

import pytest

from leadscout.config import default_config, load_runtime_config
from leadscout.connector import Dispatcher, NullConnector
from leadscout.errors import ConfigIncompleteError, ConflictError, NotFoundError
from leadscout.lifecycle import get_run, list_runs, mark_completed, mark_started
from leadscout.rotation import (
    create_rotation_config,
    get_rotation_config,
    peek,
    update_rotation_config,
)
from leadscout.scheduler import list_due_jobs, retry_run, trigger_due_jobs, trigger_job
from leadscout.services.jobs_service import create_job, get_job, set_job_active
from leadscout.services.source_configs_service import update_source_config
from leadscout.storage import init_db

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _RecordingConnector(NullConnector):
    def __init__(self) -> None:
        self.requests = []

    def dispatch(self, request) -> None:
        self.requests.append(request)


class _BrokenConnector(NullConnector):
    def dispatch(self, request) -> None:
        raise RuntimeError("boom")


def _set_master_env(monkeypatch):
    key = base64.urlsafe_b64encode(b"k" * 32).decode("utf-8")
    monkeypatch.setenv("LEADSCOUT_MASTER_KEY", key)
    monkeypatch.setenv("LEADSCOUT_KEY_ID", "v1")


def _job(conn, **overrides):
    payload = {
        "name": "Directory: accountants",
        "source_platform": "directory",
        "params": {"category_ids": [12]},
    }
    payload.update(overrides)
    return create_job(conn, payload)


def test_trigger_complete_trigger_again(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job = _job(conn)

    first = trigger_job(conn, job.id)
    assert first.status == "pending"
    assert first.triggered_by == "manual"
    assert first.run_params == {"category_ids": [12]}
    assert get_job(conn, job.id).last_run_at == first.created_at

    with pytest.raises(ConflictError):
        trigger_job(conn, job.id)

    mark_started(conn, first.id)
    with pytest.raises(ConflictError):
        trigger_job(conn, job.id)
    mark_completed(conn, first.id, 20, 12, 8)

    second = trigger_job(conn, job.id)
    assert second.id != first.id
    assert second.status == "pending"
    runs, total = list_runs(conn, job_id=job.id)
    assert total == 2


def test_concurrent_triggers_create_one_run(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    job = _job(conn)
    config = load_runtime_config(conn)

    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def _trigger():
        own = init_db(db_path)
        barrier.wait()
        try:
            run = trigger_job(own, job.id, config=config)
            result = ("ok", run.id)
        except ConflictError:
            result = ("conflict", None)
        finally:
            own.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_trigger) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len([item for item in outcomes if item[0] == "ok"]) == 1
    assert len([item for item in outcomes if item[0] == "conflict"]) == workers - 1
    runs, total = list_runs(conn, job_id=job.id)
    assert total == 1


def test_rotation_params_merge_under_job_params(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    rotation = create_rotation_config(
        conn,
        {
            "name": "Directory rotation",
            "source_platform": "directory",
            "countries": ["US", "UK"],
            "industries": [10, 20],
        },
    )
    job = _job(conn, params={"category_ids": [12], "industry": 99}, rotation_config_id=rotation.id)

    run = trigger_job(conn, job.id)

    assert run.run_params == {"category_ids": [12], "country": "US", "industry": 99}
    assert peek(get_rotation_config(conn, rotation.id)) == ("US", "20")


def test_conflict_does_not_consume_rotation_position(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    rotation = create_rotation_config(
        conn,
        {
            "name": "Directory rotation",
            "source_platform": "directory",
            "countries": ["US"],
            "industries": ["a", "b", "c"],
        },
    )
    job = _job(conn, params={}, rotation_config_id=rotation.id)

    first = trigger_job(conn, job.id)
    with pytest.raises(ConflictError):
        trigger_job(conn, job.id)
    mark_started(conn, first.id)
    mark_completed(conn, first.id, 1, 1, 0)
    second = trigger_job(conn, job.id)

    assert first.run_params == {"country": "US", "industry": "a"}
    assert second.run_params == {"country": "US", "industry": "b"}


def test_incomplete_rotation_falls_back_to_static_params(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    rotation = create_rotation_config(
        conn,
        {"name": "Half done", "source_platform": "directory", "countries": ["US"], "industries": []},
    )
    with_params = _job(conn, name="with params", rotation_config_id=rotation.id)
    without_params = _job(conn, name="bare", params={}, rotation_config_id=rotation.id)

    run = trigger_job(conn, with_params.id)
    assert run.run_params == {"category_ids": [12]}

    with pytest.raises(ConfigIncompleteError):
        trigger_job(conn, without_params.id)
    runs, total = list_runs(conn, job_id=without_params.id)
    assert total == 0
    assert get_job(conn, without_params.id).last_run_at is None


def test_inactive_rotation_is_ignored(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    rotation = create_rotation_config(
        conn,
        {
            "name": "Paused",
            "source_platform": "directory",
            "countries": ["US"],
            "industries": ["a"],
            "is_active": False,
        },
    )
    job = _job(conn, rotation_config_id=rotation.id)

    run = trigger_job(conn, job.id)

    assert run.run_params == {"category_ids": [12]}
    assert get_rotation_config(conn, rotation.id).version == 0


def test_inactive_job_only_runs_manually(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job = _job(conn, schedule_type="daily")
    set_job_active(conn, job.id, False)

    with pytest.raises(NotFoundError):
        trigger_job(conn, job.id, "scheduled")
    run = trigger_job(conn, job.id, "manual")
    assert run.status == "pending"

    with pytest.raises(NotFoundError):
        trigger_job(conn, "job_missing")


def test_retry_cancels_active_run_first(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job = _job(conn)
    first = trigger_job(conn, job.id)

    second = retry_run(conn, first.id)

    cancelled = get_run(conn, first.id)
    assert cancelled.status == "cancelled"
    assert cancelled.error_message == "cancelled_for_retry"
    assert second.status == "pending"
    assert second.triggered_by == "retry"

    mark_started(conn, second.id)
    mark_completed(conn, second.id, 0, 0, 0)
    third = retry_run(conn, second.id)
    assert get_run(conn, second.id).status == "completed"
    assert third.triggered_by == "retry"


def test_retry_that_cannot_trigger_leaves_run_alone(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job = _job(conn)
    run = trigger_job(conn, job.id)
    set_job_active(conn, job.id, False)

    with pytest.raises(NotFoundError):
        retry_run(conn, run.id)

    kept = get_run(conn, run.id)
    assert kept.status == "pending"
    assert kept.error_message is None


def test_retry_with_emptied_rotation_leaves_run_alone(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    rotation = create_rotation_config(
        conn,
        {"name": "Shrinking", "source_platform": "directory", "countries": ["US"], "industries": ["5"]},
    )
    job = _job(conn, params={}, rotation_config_id=rotation.id)
    run = trigger_job(conn, job.id)
    mark_started(conn, run.id)
    update_rotation_config(conn, rotation.id, {"industries": []})

    with pytest.raises(ConfigIncompleteError):
        retry_run(conn, run.id)

    assert get_run(conn, run.id).status == "running"
    assert list_runs(conn, job_id=job.id)[1] == 1


def test_due_jobs_follow_schedule(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = default_config()
    rotation = create_rotation_config(
        conn,
        {
            "name": "Four a day",
            "source_platform": "directory",
            "countries": ["US"],
            "industries": ["a"],
            "runs_per_day": 4,
        },
    )
    daily = _job(conn, name="daily", schedule_type="daily")
    interval = _job(conn, name="interval", schedule_type="interval", interval_minutes=30)
    rotated = _job(conn, name="rotated", schedule_type="interval", rotation_config_id=rotation.id)
    fallback = _job(conn, name="fallback", schedule_type="interval")
    _job(conn, name="manual")

    due = {job.name for job in list_due_jobs(conn, now=T0, config=config)}
    assert due == {"daily", "interval", "rotated", "fallback"}

    for job in (daily, interval, rotated, fallback):
        run = trigger_job(conn, job.id, "scheduled", config=config, now=T0)
        mark_started(conn, run.id)
        mark_completed(conn, run.id, 0, 0, 0)

    def _due_at(minutes):
        return {job.name for job in list_due_jobs(conn, now=T0 + timedelta(minutes=minutes), config=config)}

    assert _due_at(29) == set()
    assert _due_at(30) == {"interval"}
    assert _due_at(60) == {"interval", "fallback"}
    assert _due_at(360) == {"interval", "fallback", "rotated"}
    assert _due_at(1439) == {"interval", "fallback", "rotated"}
    assert _due_at(1440) == {"interval", "fallback", "rotated", "daily"}


def test_tick_skips_jobs_with_active_runs(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = default_config()
    busy = _job(conn, name="busy", schedule_type="daily")
    idle = _job(conn, name="idle", schedule_type="daily")
    trigger_job(conn, busy.id, config=config, now=T0 - timedelta(days=2))

    runs = trigger_due_jobs(conn, now=T0, config=config)

    assert [run.job_id for run in runs] == [idle.id]
    assert runs[0].triggered_by == "scheduled"


def test_dispatch_receives_decrypted_credentials(tmp_path, monkeypatch):
    _set_master_env(monkeypatch)
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    update_source_config(conn, "directory", "bearer_token", "tok-1234567890-abcd")
    connector = _RecordingConnector()
    dispatcher = Dispatcher(connector, conn_factory=lambda: init_db(db_path), max_workers=1)
    job = _job(conn)

    run = trigger_job(conn, job.id, dispatcher=dispatcher)
    dispatcher.shutdown(wait=True)

    assert len(connector.requests) == 1
    request = connector.requests[0]
    assert request.run_id == run.id
    assert request.params == {"category_ids": [12]}
    assert request.credentials == {"bearer_token": "tok-1234567890-abcd"}
    assert "tok-1234567890-abcd" not in repr(request)
    assert get_run(conn, run.id).status == "pending"


def test_dispatch_failure_is_recorded_on_the_run(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    dispatcher = Dispatcher(_BrokenConnector(), conn_factory=lambda: init_db(db_path), max_workers=1)
    job = _job(conn)

    run = trigger_job(conn, job.id, dispatcher=dispatcher)
    dispatcher.shutdown(wait=True)

    failed = get_run(conn, run.id)
    assert failed.status == "failed"
    assert failed.error_message == "dispatch_failed: boom"
    assert trigger_job(conn, job.id).status == "pending"
