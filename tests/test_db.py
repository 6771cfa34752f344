import pytest

from leadscout.db import _normalize_sql, is_postgres_url
from leadscout.storage import init_db


def test_sqlite_sql_is_untouched():
    sql = "INSERT OR IGNORE INTO jobs (id) VALUES (?)"
    assert _normalize_sql(sql, "sqlite") == sql


def test_postgres_placeholders_and_upserts():
    sql = "INSERT OR IGNORE INTO source_configs (id, source_platform) VALUES (?, ?)"
    assert _normalize_sql(sql, "postgres") == (
        "INSERT INTO source_configs (id, source_platform) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    )


def test_postgres_keeps_quoted_question_marks():
    sql = "SELECT id FROM jobs WHERE name = '?' AND id = ?"
    assert _normalize_sql(sql, "postgres") == "SELECT id FROM jobs WHERE name = '?' AND id = %s"


def test_postgres_url_detection():
    assert is_postgres_url("postgresql://user@db/leadscout")
    assert is_postgres_url("postgres://db/leadscout")
    assert not is_postgres_url("sqlite:///tmp/x")
    assert not is_postgres_url(None)


def test_transaction_rolls_back_on_error(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    with pytest.raises(RuntimeError):
        with conn.transaction():
            conn.execute(
                "INSERT INTO settings (key, value, updated_at) VALUES ('k', '1', 'now')"
            )
            raise RuntimeError("abort")

    assert conn.execute("SELECT COUNT(*) FROM settings WHERE key = 'k'").fetchone()[0] == 0
