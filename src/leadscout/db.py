from __future__ import annotations

import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

_MIGRATED: set[str] = set()
_MIGRATION_LOCK = threading.Lock()

SQLITE_BUSY_TIMEOUT_MS = 5000

_INSERT_OR_IGNORE_RE = re.compile(r"\bINSERT\s+OR\s+IGNORE\b", re.IGNORECASE)
_PLACEHOLDER_RE = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")|\?")


def get_db_url() -> str | None:
    url = os.environ.get("LS_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        """Run the block as one write transaction.

        SQLite takes the write lock up front (``BEGIN IMMEDIATE``) so that a
        read followed by a write inside the block cannot interleave with
        another writer.
        """
        if self.backend == "postgres":
            with self._conn.transaction():
                yield self
            return
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        self._conn.commit()

    def is_integrity_error(self, exc: BaseException) -> bool:
        if isinstance(exc, sqlite3.IntegrityError):
            return True
        if self.backend == "postgres":
            import psycopg

            return isinstance(exc, psycopg.IntegrityError)
        return False

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        raw = psycopg.connect(url, autocommit=True)
        conn = DBConn(raw, "postgres")
        _migrate_once(url, lambda: apply_migrations_pg(conn))
        return conn

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    # Autocommit; multi-statement writes go through DBConn.transaction().
    raw = sqlite3.connect(
        path,
        timeout=SQLITE_BUSY_TIMEOUT_MS / 1000,
        isolation_level=None,
        check_same_thread=False,
    )
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    raw.execute("PRAGMA foreign_keys=ON")
    _migrate_once(os.path.abspath(path), lambda: apply_migrations(raw))
    return DBConn(raw, "sqlite")


def _migrate_once(key: str, migrate) -> None:
    with _MIGRATION_LOCK:
        if key in _MIGRATED:
            return
        migrate()
        _MIGRATED.add(key)


def _normalize_sql(sql: str, backend: str) -> str:
    """Rewrite SQLite-flavoured statements for psycopg.

    ``INSERT OR IGNORE`` becomes ``INSERT ... ON CONFLICT DO NOTHING`` and
    ``?`` placeholders become ``%s``; question marks inside quoted literals
    are left alone.
    """
    if backend != "postgres":
        return sql
    sql, ignored = _INSERT_OR_IGNORE_RE.subn("INSERT", sql, count=1)
    if ignored and "ON CONFLICT" not in sql.upper():
        sql = sql.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    sql = sql.replace("BEGIN IMMEDIATE", "BEGIN")
    return _PLACEHOLDER_RE.sub(lambda match: match.group(1) or "%s", sql)

