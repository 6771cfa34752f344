from datetime import timedelta

from leadscout.cli import main
from leadscout.lifecycle import list_runs
from leadscout.rotation import list_rotation_configs
from leadscout.scheduler import trigger_job
from leadscout.services.jobs_service import create_job, list_jobs
from leadscout.storage import get_schema_version, init_db, list_audit_events
from leadscout.utils import utc_now

SEED = """
rotation_configs:
  - name: Directory rotation
    source_platform: directory
    countries: [US, UK]
    industries: [10, 20]
jobs:
  - name: Directory accountants
    source_platform: directory
    schedule_type: daily
    params:
      category_ids: [12]
    rotation: Directory rotation
  - name: Manual maps
    source_platform: map_listings
    params:
      search_terms: [roofer]
"""


def _seed(tmp_path):
    seed_path = tmp_path / "seed.yml"
    seed_path.write_text(SEED, encoding="utf-8")
    return str(seed_path)


def test_db_migrate(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")

    assert main(["--db", db_path, "db", "migrate"]) == 0
    assert get_schema_version(init_db(db_path)) == "003_audit_log"


def test_import_is_repeatable(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    seed_path = _seed(tmp_path)

    assert main(["--db", db_path, "import", seed_path]) == 0
    assert main(["--db", db_path, "import", seed_path]) == 0

    conn = init_db(db_path)
    jobs = {job.name: job for job in list_jobs(conn)}
    configs = list_rotation_configs(conn)
    assert sorted(jobs) == ["Directory accountants", "Manual maps"]
    assert len(configs) == 1
    assert configs[0].industries == ["10", "20"]
    assert jobs["Directory accountants"].rotation_config_id == configs[0].id


def test_import_unknown_rotation_fails(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    seed_path = tmp_path / "seed.yml"
    seed_path.write_text(
        "jobs:\n  - name: x\n    source_platform: directory\n    rotation: nope\n",
        encoding="utf-8",
    )

    assert main(["--db", db_path, "import", str(seed_path)]) == 1
    assert list_jobs(init_db(db_path)) == []


def test_tick_triggers_due_jobs(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    main(["--db", db_path, "import", _seed(tmp_path)])

    assert main(["--db", db_path, "tick"]) == 0
    assert main(["--db", db_path, "tick"]) == 0

    conn = init_db(db_path)
    runs, total = list_runs(conn)
    assert total == 1
    assert runs[0].triggered_by == "scheduled"
    assert runs[0].run_params == {"category_ids": [12], "country": "US", "industry": "10"}
    assert main(["--db", db_path, "jobs", "list"]) == 0
    assert main(["--db", db_path, "runs", "list", "--status", "pending"]) == 0


def test_trigger_missing_job_returns_error(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")

    assert main(["--db", db_path, "jobs", "trigger", "job_missing"]) == 1


def test_sources_validate_reports_missing_credentials(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")

    assert main(["--db", db_path, "sources", "validate", "other"]) == 0
    assert main(["--db", db_path, "sources", "validate", "directory"]) == 1


def test_stuck_and_suggestions_commands(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    job = create_job(conn, {"name": "old", "source_platform": "other", "params": {"country": "IE"}})
    trigger_job(conn, job.id, now=utc_now() - timedelta(hours=1))

    assert main(["--db", db_path, "runs", "stuck"]) == 0
    assert main(["--db", db_path, "suggestions", "--limit", "5"]) == 0


def test_cli_changes_are_audited_as_cli(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    assert main(["--db", db_path, "import", _seed(tmp_path)]) == 0

    conn = init_db(db_path)
    events = list_audit_events(conn)
    assert {event.action for event in events} == {"rotation.create", "job.create"}
    assert {event.actor for event in events} == {"cli"}

    later = create_job(conn, {"name": "after cli", "source_platform": "other"})
    assert [event.actor for event in list_audit_events(conn, entity_id=later.id)] == ["system"]
    assert main(["--db", db_path, "audit", "--entity-type", "job"]) == 0
