from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Callable

from .models import SOURCE_PLATFORMS
from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("leadscout.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rotation_configs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            source_platform TEXT NOT NULL,
            countries_json TEXT NOT NULL DEFAULT '[]',
            industries_json TEXT NOT NULL DEFAULT '[]',
            current_country_index INTEGER NOT NULL DEFAULT 0,
            current_industry_index INTEGER NOT NULL DEFAULT 0,
            runs_per_day INTEGER NOT NULL DEFAULT 3,
            is_active INTEGER NOT NULL DEFAULT 1,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            source_platform TEXT NOT NULL,
            schedule_type TEXT NOT NULL DEFAULT 'manual',
            params_json TEXT NOT NULL DEFAULT '{}',
            is_active INTEGER NOT NULL DEFAULT 1,
            rotation_config_id TEXT NULL
                REFERENCES rotation_configs(id) ON DELETE SET NULL,
            interval_minutes INTEGER NULL,
            last_run_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_runs (
            id TEXT PRIMARY KEY,
            job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            triggered_by TEXT NOT NULL,
            run_params_json TEXT NOT NULL DEFAULT '{}',
            started_at TEXT NULL,
            completed_at TEXT NULL,
            duration_seconds INTEGER NULL,
            contacts_found INTEGER NOT NULL DEFAULT 0,
            contacts_imported INTEGER NOT NULL DEFAULT 0,
            contacts_skipped INTEGER NOT NULL DEFAULT 0,
            error_message TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_job_runs_job_status ON job_runs(job_id, status)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_job_runs_created ON job_runs(created_at DESC)"
    )
    # At most one pending/running run per job.
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_job_runs_active
        ON job_runs(job_id)
        WHERE status IN ('pending', 'running')
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS source_configs (
            id TEXT PRIMARY KEY,
            source_platform TEXT NOT NULL UNIQUE,
            config_json TEXT NOT NULL DEFAULT '{}',
            is_valid INTEGER NULL,
            validation_error TEXT NULL,
            last_validated_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_seed_source_configs(conn: sqlite3.Connection) -> None:
    now = utc_now_iso()
    for platform in SOURCE_PLATFORMS:
        conn.execute(
            """
            INSERT OR IGNORE INTO source_configs
                (id, source_platform, config_json, created_at, updated_at)
            VALUES (?, ?, '{}', ?, ?)
            """,
            (str(uuid.uuid4()), platform, now, now),
        )


def _migration_audit_log(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id TEXT PRIMARY KEY,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NULL,
            actor TEXT NOT NULL,
            ip_address TEXT NULL,
            details_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log(entity_type, entity_id)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_created ON audit_log(created_at DESC)")


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_seed_source_configs", _migration_seed_source_configs),
        ("003_audit_log", _migration_audit_log),
    ]
