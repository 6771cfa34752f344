from __future__ import annotations

import logging
import uuid

from .models import SOURCE_PLATFORMS
from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("leadscout.migrations")
    with conn.transaction():
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
        if "pg_bootstrap_001" not in applied:
            _bootstrap_schema(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                ("pg_bootstrap_001", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_bootstrap_001")
        if "pg_seed_source_configs_002" not in applied:
            _seed_source_configs(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                ("pg_seed_source_configs_002", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_seed_source_configs_002")
        if "pg_audit_log_003" not in applied:
            _create_audit_log(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                ("pg_audit_log_003", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_audit_log_003")


def _bootstrap_schema(conn) -> None:
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
            version BIGINT NOT NULL DEFAULT 0,
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


def _seed_source_configs(conn) -> None:
    now = utc_now_iso()
    for platform in SOURCE_PLATFORMS:
        conn.execute(
            """
            INSERT INTO source_configs
                (id, source_platform, config_json, created_at, updated_at)
            VALUES (?, ?, '{}', ?, ?)
            ON CONFLICT (source_platform) DO NOTHING
            """,
            (str(uuid.uuid4()), platform, now, now),
        )


def _create_audit_log(conn) -> None:
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
