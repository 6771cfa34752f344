from __future__ import annotations

import logging
import re
from typing import Any

from ..errors import CredentialInvalidError, NotFoundError, ValidationError
from ..models import SOURCE_PLATFORMS, SourceConfig
from ..security.secrets import credential_aad, decrypt_secret, encrypt_secret
from ..storage import new_id, record_audit
from ..utils import json_dumps, json_loads_or, log_event, mask_secret, utc_now_iso

logger = logging.getLogger("leadscout.sources")

SOURCE_CONFIG_COLUMNS = (
    "id, source_platform, config_json, is_valid, validation_error, "
    "last_validated_at, created_at, updated_at"
)

_FIELD_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


def list_source_configs(conn: Any) -> list[SourceConfig]:
    cursor = conn.execute(
        f"SELECT {SOURCE_CONFIG_COLUMNS} FROM source_configs ORDER BY source_platform"
    )
    return [_row_to_source_config(row) for row in cursor.fetchall()]


def get_source_config(conn: Any, platform: str) -> SourceConfig:
    row = _fetch_row(conn, platform)
    return _row_to_source_config(row)


def update_source_config(conn: Any, platform: str, field_key: str, value: str | None) -> SourceConfig:
    """Store one credential field encrypted; an empty value removes the field.

    Any write makes the stored validation result stale, so ``is_valid`` goes
    back to unknown until the next probe.
    """
    if not _FIELD_KEY_RE.match(field_key or ""):
        raise ValidationError(f"invalid credential field name: {field_key!r}")
    value = (value or "").strip()
    with conn.transaction():
        row = _fetch_row(conn, platform)
        stored = json_loads_or(row[2], {})
        if value:
            key_id, blob = encrypt_secret(value, credential_aad(platform, field_key))
            stored[field_key] = {"key_id": key_id, "enc": blob, "masked": mask_secret(value)}
        else:
            stored.pop(field_key, None)
        conn.execute(
            """
            UPDATE source_configs
            SET config_json = ?, is_valid = NULL, validation_error = NULL, updated_at = ?
            WHERE source_platform = ?
            """,
            (json_dumps(stored), utc_now_iso(), platform),
        )
        # Field name only; the value and its masked excerpt stay out of the trail.
        record_audit(
            conn,
            "source_config.update",
            "source_config",
            platform,
            {"field": field_key, "change": "set" if value else "removed"},
        )
    log_event(
        logger,
        logging.INFO,
        "source_credential_updated" if value else "source_credential_removed",
        source_platform=platform,
        field=field_key,
    )
    return get_source_config(conn, platform)


def load_credentials(conn: Any, platform: str) -> dict[str, str]:
    row = _fetch_row(conn, platform)
    stored = json_loads_or(row[2], {})
    credentials: dict[str, str] = {}
    for field_key, entry in stored.items():
        if not isinstance(entry, dict) or not entry.get("enc"):
            continue
        credentials[field_key] = decrypt_secret(entry["enc"], credential_aad(platform, field_key))
    return credentials


def validate_source_config(conn: Any, platform: str, connector: Any) -> SourceConfig:
    """Probe the platform with the stored credentials and record the verdict."""
    _fetch_row(conn, platform)
    error: str | None = None
    try:
        connector.probe(platform, load_credentials(conn, platform))
    except CredentialInvalidError as exc:
        error = exc.message
    except Exception as exc:  # noqa: BLE001
        error = f"probe_error: {exc}"
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE source_configs
        SET is_valid = ?, validation_error = ?, last_validated_at = ?, updated_at = ?
        WHERE source_platform = ?
        """,
        (0 if error else 1, error, now, now, platform),
    )
    record_audit(
        conn, "source_config.validate", "source_config", platform, {"is_valid": error is None}
    )
    conn.commit()
    log_event(
        logger,
        logging.WARNING if error else logging.INFO,
        "source_validated",
        source_platform=platform,
        is_valid=error is None,
        error=error,
    )
    return get_source_config(conn, platform)


def _fetch_row(conn: Any, platform: str) -> tuple:
    if platform not in SOURCE_PLATFORMS:
        raise NotFoundError(f"unknown source_platform: {platform}")
    row = conn.execute(
        f"SELECT {SOURCE_CONFIG_COLUMNS} FROM source_configs WHERE source_platform = ?",
        (platform,),
    ).fetchone()
    if row:
        return row
    now = utc_now_iso()
    conn.execute(
        """
        INSERT OR IGNORE INTO source_configs
            (id, source_platform, config_json, created_at, updated_at)
        VALUES (?, ?, '{}', ?, ?)
        """,
        (new_id("src"), platform, now, now),
    )
    return conn.execute(
        f"SELECT {SOURCE_CONFIG_COLUMNS} FROM source_configs WHERE source_platform = ?",
        (platform,),
    ).fetchone()


def _row_to_source_config(row: tuple) -> SourceConfig:
    (
        config_id,
        platform,
        config_json,
        is_valid,
        validation_error,
        last_validated_at,
        created_at,
        updated_at,
    ) = row
    stored = json_loads_or(config_json, {})
    fields = {
        key: str(entry.get("masked") or "****")
        for key, entry in stored.items()
        if isinstance(entry, dict)
    }
    return SourceConfig(
        id=config_id,
        source_platform=platform,
        fields=fields,
        is_valid=None if is_valid is None else bool(is_valid),
        validation_error=validation_error,
        last_validated_at=last_validated_at,
        created_at=created_at,
        updated_at=updated_at,
    )
