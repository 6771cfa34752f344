from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, record_audit, set_setting


class ConfigError(ValueError):
    kind = "config_error"
    status_code = 400


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class RunsConfig:
    pending_stuck_seconds: int
    running_stuck_seconds: int
    list_limit: int


@dataclass(frozen=True)
class SchedulerConfig:
    dispatch_workers: int
    daily_interval_minutes: int
    default_interval_minutes: int


@dataclass(frozen=True)
class RotationSettings:
    max_cas_retries: int


@dataclass(frozen=True)
class SuggestionsConfig:
    limit: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    runs: RunsConfig
    scheduler: SchedulerConfig
    rotation: RotationSettings
    suggestions: SuggestionsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "LeadScout",
    },
    "runs": {
        "pending_stuck_seconds": 300,
        "running_stuck_seconds": 600,
        "list_limit": 50,
    },
    "scheduler": {
        "dispatch_workers": 4,
        "daily_interval_minutes": 1440,
        "default_interval_minutes": 60,
    },
    "rotation": {
        "max_cas_retries": 5,
    },
    "suggestions": {
        "limit": 20,
    },
}

CONFIG_KEY = "config.runtime"

_POSITIVE_INTS = (
    "runs.pending_stuck_seconds",
    "runs.running_stuck_seconds",
    "runs.list_limit",
    "scheduler.dispatch_workers",
    "scheduler.daily_interval_minutes",
    "scheduler.default_interval_minutes",
    "rotation.max_cas_retries",
    "suggestions.limit",
)


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))
    record_audit(conn, "runtime_config.update", "settings", CONFIG_KEY, {"sections": sorted(cfg)})


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    for dotted in _POSITIVE_INTS:
        section, key = dotted.split(".", 1)
        if cfg[section][key] < 1:
            errors.append(f"config.runtime.{dotted} must be >= 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    runs_cfg = cfg.get("runs") or {}
    scheduler_cfg = cfg.get("scheduler") or {}
    rotation_cfg = cfg.get("rotation") or {}
    suggestions_cfg = cfg.get("suggestions") or {}

    return Config(
        app=AppConfig(
            name=str(app_cfg.get("name")),
        ),
        runs=RunsConfig(
            pending_stuck_seconds=int(runs_cfg.get("pending_stuck_seconds")),
            running_stuck_seconds=int(runs_cfg.get("running_stuck_seconds")),
            list_limit=int(runs_cfg.get("list_limit")),
        ),
        scheduler=SchedulerConfig(
            dispatch_workers=int(scheduler_cfg.get("dispatch_workers")),
            daily_interval_minutes=int(scheduler_cfg.get("daily_interval_minutes")),
            default_interval_minutes=int(scheduler_cfg.get("default_interval_minutes")),
        ),
        rotation=RotationSettings(
            max_cas_retries=int(rotation_cfg.get("max_cas_retries")),
        ),
        suggestions=SuggestionsConfig(
            limit=int(suggestions_cfg.get("limit")),
        ),
    )


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))


def load_seed_file(path: str) -> dict[str, list[dict[str, Any]]]:
    """Read a YAML seed file with optional ``rotation_configs`` and ``jobs`` lists."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"seed file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"seed file is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("seed file must be a mapping")
    unknown = set(data) - {"rotation_configs", "jobs"}
    if unknown:
        raise ConfigError("unknown seed sections: " + ", ".join(sorted(unknown)))
    seed: dict[str, list[dict[str, Any]]] = {}
    for section in ("rotation_configs", "jobs"):
        items = data.get(section) or []
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise ConfigError(f"{section} must be a list of mappings")
        seed[section] = items
    return seed
