from __future__ import annotations

import json
import os
import uuid
from contextvars import ContextVar, Token
from typing import Any

from .db import DBConn, connect_db
from .models import AuditEvent
from .utils import json_dumps, json_loads_or, utc_now_iso

DEFAULT_DATA_DIR = "/data"
DEFAULT_AUDIT_ACTOR = "system"

_audit_actor: ContextVar[tuple[str, str | None]] = ContextVar(
    "leadscout_audit_actor", default=(DEFAULT_AUDIT_ACTOR, None)
)


def get_state_db_path() -> str:
    data_dir = os.environ.get("LS_DATA_DIR", DEFAULT_DATA_DIR)
    return os.path.join(data_dir, "state.sqlite3")


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path or get_state_db_path())


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def get_schema_version(conn: Any) -> str | None:
    row = conn.execute(
        "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
    ).fetchone()
    return row[0] if row else None


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def set_audit_actor(actor: str, ip_address: str | None = None) -> Token:
    return _audit_actor.set((actor or DEFAULT_AUDIT_ACTOR, ip_address))


def reset_audit_actor(token: Token) -> None:
    _audit_actor.reset(token)


def record_audit(
    conn: Any,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    details: dict[str, object] | None = None,
) -> None:
    """Append one row to the audit trail.

    Does not commit: inside a ``transaction()`` block the row lands or rolls
    back with the change it describes. Callers must never put credential
    values in ``details``.
    """
    actor, ip_address = _audit_actor.get()
    conn.execute(
        """
        INSERT INTO audit_log
            (id, action, entity_type, entity_id, actor, ip_address, details_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            new_id("aud"),
            action,
            entity_type,
            entity_id,
            actor,
            ip_address,
            json_dumps(details or {}),
            utc_now_iso(),
        ),
    )


def list_audit_events(
    conn: Any,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
) -> list[AuditEvent]:
    clauses = []
    params: list[object] = []
    if entity_type:
        clauses.append("entity_type = ?")
        params.append(entity_type)
    if entity_id:
        clauses.append("entity_id = ?")
        params.append(entity_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        SELECT id, action, entity_type, entity_id, actor, ip_address, details_json, created_at
        FROM audit_log
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (*params, max(1, int(limit))),
    ).fetchall()
    return [
        AuditEvent(
            id=row[0],
            action=row[1],
            entity_type=row[2],
            entity_id=row[3],
            actor=row[4],
            ip_address=row[5],
            details=json_loads_or(row[6], {}),
            created_at=row[7],
        )
        for row in rows
    ]
