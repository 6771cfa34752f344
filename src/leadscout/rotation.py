"""Country x industry rotation.

A rotation config walks the cartesian product of its two lists, industry
first: with countries [A, B] and industries [1, 2] successive ``advance``
calls hand out (A, 1), (A, 2), (B, 1), (B, 2) and then start over. The
position lives in the database next to a ``version`` counter, and every
step is a compare-and-swap on that counter, so two schedulers advancing the
same config never hand out the same position twice.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from .errors import ConfigIncompleteError, ConflictError, NotFoundError, ValidationError
from .models import SOURCE_PLATFORMS, RotationConfig
from .storage import new_id, record_audit
from .utils import json_dumps, json_loads_or, log_event, utc_now_iso

logger = logging.getLogger("leadscout.rotation")

ROTATION_COLUMNS = (
    "id, name, source_platform, countries_json, industries_json, "
    "current_country_index, current_industry_index, runs_per_day, is_active, "
    "version, created_at, updated_at"
)

DEFAULT_RUNS_PER_DAY = 3
DEFAULT_MAX_CAS_RETRIES = 5

_EDITABLE_FIELDS = (
    "name",
    "source_platform",
    "countries",
    "industries",
    "current_country_index",
    "current_industry_index",
    "runs_per_day",
    "is_active",
)


def get_rotation_config(conn: Any, config_id: str) -> RotationConfig | None:
    row = conn.execute(
        f"SELECT {ROTATION_COLUMNS} FROM rotation_configs WHERE id = ?", (config_id,)
    ).fetchone()
    if not row:
        return None
    return row_to_rotation(row)


def require_rotation_config(conn: Any, config_id: str) -> RotationConfig:
    config = get_rotation_config(conn, config_id)
    if config is None:
        raise NotFoundError(f"rotation config not found: {config_id}")
    return config


def list_rotation_configs(
    conn: Any, source_platform: str | None = None, active_only: bool = False
) -> list[RotationConfig]:
    clauses = []
    params: list[object] = []
    if source_platform:
        clauses.append("source_platform = ?")
        params.append(source_platform)
    if active_only:
        clauses.append("is_active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cursor = conn.execute(
        f"SELECT {ROTATION_COLUMNS} FROM rotation_configs {where} ORDER BY created_at, id",
        tuple(params),
    )
    return [row_to_rotation(row) for row in cursor.fetchall()]


def peek(config: RotationConfig) -> tuple[str, str]:
    """Return the (country, industry) pair the next ``advance`` hands out."""
    _require_complete(config)
    return (
        config.countries[config.current_country_index],
        config.industries[config.current_industry_index],
    )


def next_position(config: RotationConfig) -> tuple[int, int]:
    _require_complete(config)
    country_idx = config.current_country_index
    industry_idx = config.current_industry_index + 1
    if industry_idx >= len(config.industries):
        industry_idx = 0
        country_idx = (country_idx + 1) % len(config.countries)
    return country_idx, industry_idx


def advance(
    conn: Any,
    config_id: str,
    max_retries: int = DEFAULT_MAX_CAS_RETRIES,
    *,
    commit: bool = True,
) -> tuple[str, str]:
    """Hand out the current pair and move the config one step forward.

    Pass ``commit=False`` when calling from inside ``conn.transaction()`` so
    the step is rolled back together with the enclosing work.
    """
    for attempt in range(1, max(1, max_retries) + 1):
        config = require_rotation_config(conn, config_id)
        pair = peek(config)
        country_idx, industry_idx = next_position(config)
        cursor = conn.execute(
            """
            UPDATE rotation_configs
            SET current_country_index = ?, current_industry_index = ?,
                version = version + 1, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (country_idx, industry_idx, utc_now_iso(), config_id, config.version),
        )
        if cursor.rowcount == 1:
            if commit:
                conn.commit()
            log_event(
                logger,
                logging.INFO,
                "rotation_advanced",
                config_id=config_id,
                country=pair[0],
                industry=pair[1],
                attempt=attempt,
            )
            return pair
        log_event(
            logger,
            logging.DEBUG,
            "rotation_cas_retry",
            config_id=config_id,
            version=config.version,
            attempt=attempt,
        )
    raise ConflictError(f"rotation config {config_id} is being advanced concurrently")


def create_rotation_config(conn: Any, payload: dict[str, Any]) -> RotationConfig:
    now = utc_now_iso()
    draft = RotationConfig(
        id=str(payload.get("id") or new_id("rot")),
        name=str(payload.get("name") or ""),
        source_platform=str(payload.get("source_platform") or ""),
        countries=_clean_values(payload.get("countries"), "countries"),
        industries=_clean_values(payload.get("industries"), "industries"),
        current_country_index=payload.get("current_country_index", 0),
        current_industry_index=payload.get("current_industry_index", 0),
        runs_per_day=payload.get("runs_per_day", DEFAULT_RUNS_PER_DAY),
        is_active=bool(payload.get("is_active", True)),
        version=0,
        created_at=now,
        updated_at=now,
    )
    config = _validate_rotation(draft)
    with conn.transaction():
        conn.execute(
            f"""
            INSERT INTO rotation_configs ({ROTATION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                config.id,
                config.name,
                config.source_platform,
                json_dumps(config.countries),
                json_dumps(config.industries),
                config.current_country_index,
                config.current_industry_index,
                config.runs_per_day,
                1 if config.is_active else 0,
                config.version,
                config.created_at,
                config.updated_at,
            ),
        )
        record_audit(
            conn,
            "rotation.create",
            "rotation_config",
            config.id,
            {"name": config.name, "source_platform": config.source_platform},
        )
    log_event(
        logger,
        logging.INFO,
        "rotation_created",
        config_id=config.id,
        source_platform=config.source_platform,
        positions=len(config.countries) * len(config.industries),
    )
    return config


def update_rotation_config(conn: Any, config_id: str, patch: dict[str, Any]) -> RotationConfig:
    """Apply an operator edit.

    Changing either list keeps the current position where it still fits and
    pulls it back to the last entry otherwise, unless the patch also sets the
    index explicitly. Explicit indices must point inside their list.
    """
    current = require_rotation_config(conn, config_id)
    unknown = set(patch) - set(_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("unknown rotation fields: " + ", ".join(sorted(unknown)))
    changes: dict[str, Any] = {key: patch[key] for key in _EDITABLE_FIELDS if key in patch}
    for key in ("name", "source_platform", "runs_per_day", "is_active"):
        if key in changes and changes[key] is None:
            raise ValidationError(f"{key} cannot be null")
    for key in ("current_country_index", "current_industry_index"):
        if key in changes and changes[key] is None:
            del changes[key]
    for key in ("countries", "industries"):
        if key in changes:
            changes[key] = _clean_values(changes[key], key)
    if "is_active" in changes:
        changes["is_active"] = bool(changes["is_active"])
    if "countries" in changes and "current_country_index" not in changes:
        changes["current_country_index"] = _clamp(
            current.current_country_index, len(changes["countries"])
        )
    if "industries" in changes and "current_industry_index" not in changes:
        changes["current_industry_index"] = _clamp(
            current.current_industry_index, len(changes["industries"])
        )
    config = _validate_rotation(
        replace(current, version=current.version + 1, updated_at=utc_now_iso(), **changes)
    )
    if config.source_platform != current.source_platform:
        row = conn.execute(
            "SELECT COUNT(*) FROM jobs WHERE rotation_config_id = ? AND source_platform != ?",
            (config_id, config.source_platform),
        ).fetchone()
        if row and row[0]:
            raise ValidationError(
                f"rotation config is used by {row[0]} job(s) on {current.source_platform}"
            )
    with conn.transaction():
        cursor = conn.execute(
            """
            UPDATE rotation_configs
            SET name = ?, source_platform = ?, countries_json = ?, industries_json = ?,
                current_country_index = ?, current_industry_index = ?, runs_per_day = ?,
                is_active = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                config.name,
                config.source_platform,
                json_dumps(config.countries),
                json_dumps(config.industries),
                config.current_country_index,
                config.current_industry_index,
                config.runs_per_day,
                1 if config.is_active else 0,
                config.version,
                config.updated_at,
                config_id,
                current.version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConflictError(f"rotation config {config_id} changed while it was being edited")
        record_audit(
            conn,
            "rotation.update",
            "rotation_config",
            config_id,
            {"fields": sorted(changes), "version": config.version},
        )
    log_event(
        logger,
        logging.INFO,
        "rotation_updated",
        config_id=config_id,
        fields=",".join(sorted(changes)),
    )
    return config


def delete_rotation_config(conn: Any, config_id: str, confirm: bool = False) -> int:
    """Delete a config and detach it from its jobs.

    Returns how many jobs lost their rotation reference; they keep running on
    their static params.
    """
    if not confirm:
        raise ValidationError("deleting a rotation config detaches its jobs; pass confirm=true")
    require_rotation_config(conn, config_id)
    with conn.transaction():
        cursor = conn.execute(
            "UPDATE jobs SET rotation_config_id = NULL, updated_at = ? WHERE rotation_config_id = ?",
            (utc_now_iso(), config_id),
        )
        detached = int(cursor.rowcount or 0)
        conn.execute("DELETE FROM rotation_configs WHERE id = ?", (config_id,))
        record_audit(
            conn, "rotation.delete", "rotation_config", config_id, {"jobs_detached": detached}
        )
    log_event(logger, logging.WARNING, "rotation_deleted", config_id=config_id, jobs_detached=detached)
    return detached


def row_to_rotation(row: tuple) -> RotationConfig:
    (
        config_id,
        name,
        source_platform,
        countries_json,
        industries_json,
        country_idx,
        industry_idx,
        runs_per_day,
        is_active,
        version,
        created_at,
        updated_at,
    ) = row
    return RotationConfig(
        id=config_id,
        name=name,
        source_platform=source_platform,
        countries=[str(item) for item in json_loads_or(countries_json, [])],
        industries=[str(item) for item in json_loads_or(industries_json, [])],
        current_country_index=int(country_idx or 0),
        current_industry_index=int(industry_idx or 0),
        runs_per_day=int(runs_per_day or DEFAULT_RUNS_PER_DAY),
        is_active=bool(is_active),
        version=int(version or 0),
        created_at=created_at,
        updated_at=updated_at,
    )


def _require_complete(config: RotationConfig) -> None:
    if not config.countries or not config.industries:
        raise ConfigIncompleteError(
            f"rotation config {config.id} needs at least one country and one industry"
        )


def _clamp(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return min(max(0, int(index)), length - 1)


def _clean_values(values: Any, label: str) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{label} must be a list")
    cleaned: list[str] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValidationError(f"{label} entries must be strings or integers")
        text = str(value).strip()
        if not text:
            raise ValidationError(f"{label} entries must not be empty")
        if text in cleaned:
            raise ValidationError(f"duplicate entry in {label}: {text}")
        cleaned.append(text)
    return cleaned


def _validate_rotation(config: RotationConfig) -> RotationConfig:
    name = config.name.strip()
    if not name:
        raise ValidationError("name is required")
    if config.source_platform not in SOURCE_PLATFORMS:
        raise ValidationError(f"unknown source_platform: {config.source_platform or '<empty>'}")
    runs_per_day = config.runs_per_day
    if isinstance(runs_per_day, bool) or not isinstance(runs_per_day, int) or runs_per_day < 1:
        raise ValidationError("runs_per_day must be a positive integer")
    for label, index, values in (
        ("current_country_index", config.current_country_index, config.countries),
        ("current_industry_index", config.current_industry_index, config.industries),
    ):
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError(f"{label} must be an integer")
        upper = max(1, len(values))
        if index < 0 or index >= upper:
            raise ValidationError(f"{label} must be between 0 and {upper - 1}")
    return replace(config, name=name)
