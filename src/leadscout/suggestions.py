from __future__ import annotations

import logging
from typing import Any

from .models import Suggestion
from .rotation import list_rotation_configs
from .utils import json_loads_or, log_event

logger = logging.getLogger("leadscout.suggestions")

SUGGESTION_TYPES = ("country", "industry")


def list_suggestions(
    conn: Any, limit: int = 20, source_platform: str | None = None
) -> list[Suggestion]:
    """Countries and industries that paid off in past runs but no rotation covers.

    Only completed runs that imported at least one contact count as evidence.
    Values are compared as strings so numeric category ids and their text
    form are the same value. Nothing is written back.
    """
    coverage = _coverage(conn)
    totals: dict[tuple[str, str, str], list[int]] = {}
    for platform, params, imported in _successful_runs(conn, source_platform):
        covered = coverage.get(platform, {})
        for kind in SUGGESTION_TYPES:
            raw = params.get(kind)
            if raw is None or isinstance(raw, (dict, list)):
                continue
            value = str(raw).strip()
            if not value or value in covered.get(kind, set()):
                continue
            entry = totals.setdefault((platform, kind, value), [0, 0])
            entry[0] += 1
            entry[1] += imported

    suggestions = [
        Suggestion(
            type=kind,
            value=value,
            reason=(
                f"{runs} successful run{'s' if runs != 1 else ''} on {platform} used "
                f"{kind} {value}; no active rotation config covers it"
            ),
            source_platform=platform,
            supporting_runs=runs,
            contacts_imported=imported,
        )
        for (platform, kind, value), (runs, imported) in totals.items()
    ]
    suggestions.sort(
        key=lambda item: (
            -item.supporting_runs,
            -item.contacts_imported,
            item.value,
            item.type,
            item.source_platform,
        )
    )
    capped = suggestions[: max(0, int(limit))]
    log_event(logger, logging.DEBUG, "suggestions_built", candidates=len(suggestions), returned=len(capped))
    return capped


def _coverage(conn: Any) -> dict[str, dict[str, set[str]]]:
    coverage: dict[str, dict[str, set[str]]] = {}
    for config in list_rotation_configs(conn, active_only=True):
        covered = coverage.setdefault(config.source_platform, {kind: set() for kind in SUGGESTION_TYPES})
        covered["country"].update(config.countries)
        covered["industry"].update(config.industries)
    return coverage


def _successful_runs(conn: Any, source_platform: str | None):
    sql = """
        SELECT j.source_platform, r.run_params_json, r.contacts_imported
        FROM job_runs r
        JOIN jobs j ON j.id = r.job_id
        WHERE r.status = 'completed' AND r.contacts_imported > 0
    """
    params: tuple = ()
    if source_platform:
        sql += " AND j.source_platform = ?"
        params = (source_platform,)
    for platform, run_params_json, imported in conn.execute(sql, params).fetchall():
        run_params = json_loads_or(run_params_json, {})
        if isinstance(run_params, dict):
            yield platform, run_params, int(imported or 0)
