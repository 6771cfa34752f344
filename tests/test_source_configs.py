import base64
import json

import pytest

from leadscout.connector import NullConnector
from leadscout.errors import CredentialInvalidError, NotFoundError, ValidationError
from leadscout.services.source_configs_service import (
    get_source_config,
    list_source_configs,
    load_credentials,
    update_source_config,
    validate_source_config,
)
from leadscout.storage import init_db


def _set_master_env(monkeypatch):
    key = base64.urlsafe_b64encode(b"m" * 32).decode("utf-8")
    monkeypatch.setenv("LEADSCOUT_MASTER_KEY", key)
    monkeypatch.setenv("LEADSCOUT_KEY_ID", "v1")


class _ExplodingConnector(NullConnector):
    def probe(self, platform, credentials):
        raise TimeoutError("probe timed out")


class _RejectingConnector(NullConnector):
    def probe(self, platform, credentials):
        raise CredentialInvalidError("401 from upstream")


def test_platforms_are_seeded(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    platforms = [item.source_platform for item in list_source_configs(conn)]

    assert platforms == sorted(["directory", "map_listings", "professional_network", "other"])
    assert all(item.is_valid is None for item in list_source_configs(conn))


def test_write_stores_ciphertext_and_mask_only(tmp_path, monkeypatch):
    _set_master_env(monkeypatch)
    conn = init_db(str(tmp_path / "state.sqlite3"))

    config = update_source_config(conn, "directory", "bearer_token", "abcd1234efgh5678")

    assert config.fields == {"bearer_token": "abcd...5678"}
    assert config.is_valid is None
    raw = conn.execute(
        "SELECT config_json FROM source_configs WHERE source_platform = 'directory'"
    ).fetchone()[0]
    assert "abcd1234efgh5678" not in raw
    stored = json.loads(raw)["bearer_token"]
    assert stored["key_id"] == "v1"
    assert stored["masked"] == "abcd...5678"
    assert load_credentials(conn, "directory") == {"bearer_token": "abcd1234efgh5678"}


def test_short_values_are_fully_masked(tmp_path, monkeypatch):
    _set_master_env(monkeypatch)
    conn = init_db(str(tmp_path / "state.sqlite3"))

    config = update_source_config(conn, "map_listings", "api_key", "short")

    assert config.fields == {"api_key": "****"}


def test_validate_records_result_and_write_resets_it(tmp_path, monkeypatch):
    _set_master_env(monkeypatch)
    conn = init_db(str(tmp_path / "state.sqlite3"))

    missing = validate_source_config(conn, "directory", NullConnector())
    assert missing.is_valid is False
    assert missing.validation_error == "missing credential field(s): bearer_token"
    assert missing.last_validated_at is not None

    update_source_config(conn, "directory", "bearer_token", "abcd1234efgh5678")
    assert get_source_config(conn, "directory").is_valid is None

    valid = validate_source_config(conn, "directory", NullConnector())
    assert valid.is_valid is True
    assert valid.validation_error is None

    removed = update_source_config(conn, "directory", "bearer_token", "")
    assert removed.fields == {}
    assert removed.is_valid is None
    assert load_credentials(conn, "directory") == {}


def test_probe_errors_are_recorded_not_raised(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    rejected = validate_source_config(conn, "other", _RejectingConnector())
    assert rejected.is_valid is False
    assert rejected.validation_error == "401 from upstream"

    exploded = validate_source_config(conn, "other", _ExplodingConnector())
    assert exploded.is_valid is False
    assert exploded.validation_error == "probe_error: probe timed out"


def test_unknown_platform_and_bad_field(tmp_path, monkeypatch):
    _set_master_env(monkeypatch)
    conn = init_db(str(tmp_path / "state.sqlite3"))

    with pytest.raises(NotFoundError):
        get_source_config(conn, "fax")
    with pytest.raises(NotFoundError):
        update_source_config(conn, "fax", "api_key", "value")
    with pytest.raises(ValidationError):
        update_source_config(conn, "directory", "Bearer Token", "value")


def test_write_without_master_key_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("LEADSCOUT_MASTER_KEY", raising=False)
    conn = init_db(str(tmp_path / "state.sqlite3"))

    with pytest.raises(ValueError):
        update_source_config(conn, "directory", "bearer_token", "abcd1234efgh5678")
    assert get_source_config(conn, "directory").fields == {}
