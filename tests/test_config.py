import pytest

from leadscout.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    load_seed_file,
    set_runtime_config,
    validate_runtime_config,
)
from leadscout.storage import init_db


def _copy_defaults():
    return {section: dict(values) for section, values in DEFAULT_CONFIG.items()}


def test_bootstrap_writes_defaults_once(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    assert bootstrap_runtime_config(conn) == DEFAULT_CONFIG
    cfg = _copy_defaults()
    cfg["scheduler"]["dispatch_workers"] = 2
    set_runtime_config(conn, cfg)

    assert bootstrap_runtime_config(conn)["scheduler"]["dispatch_workers"] == 2
    assert load_runtime_config(conn).scheduler.dispatch_workers == 2


def test_invalid_config_is_rejected(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    cfg = _copy_defaults()
    cfg["runs"]["pending_stuck_seconds"] = "300"
    cfg["extra"] = {}

    with pytest.raises(ConfigError):
        set_runtime_config(conn, cfg)
    assert get_runtime_config(conn) == DEFAULT_CONFIG


def test_booleans_are_not_integers():
    cfg = _copy_defaults()
    cfg["rotation"]["max_cas_retries"] = 0
    cfg["runs"]["list_limit"] = True

    errors = validate_runtime_config(cfg)

    assert "config.runtime.runs.list_limit must be an integer" in errors


def test_zero_retries_rejected():
    cfg = _copy_defaults()
    cfg["rotation"]["max_cas_retries"] = 0

    assert validate_runtime_config(cfg) == ["config.runtime.rotation.max_cas_retries must be >= 1"]


def test_load_seed_file(tmp_path):
    path = tmp_path / "seed.yml"
    path.write_text(
        "rotation_configs:\n"
        "  - name: Directory rotation\n"
        "    source_platform: directory\n"
        "    countries: [US, UK]\n"
        "    industries: [10, 20]\n"
        "jobs:\n"
        "  - name: Directory accountants\n"
        "    source_platform: directory\n"
        "    rotation: Directory rotation\n",
        encoding="utf-8",
    )

    seed = load_seed_file(str(path))

    assert seed["rotation_configs"][0]["industries"] == [10, 20]
    assert seed["jobs"][0]["rotation"] == "Directory rotation"


@pytest.mark.parametrize(
    "content",
    ["- just\n- a list\n", "jobs: {name: x}\n", "sources: []\n", "jobs: [\n"],
)
def test_load_seed_file_rejects_bad_shapes(tmp_path, content):
    path = tmp_path / "seed.yml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_seed_file(str(path))


def test_load_seed_file_missing(tmp_path):
    with pytest.raises(ConfigError):
        load_seed_file(str(tmp_path / "absent.yml"))
