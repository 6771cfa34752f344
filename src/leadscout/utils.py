from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    parts.extend(f"{key}={value}" for key, value in fields.items())
    logger.log(level, " ".join(parts))


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Set up root logging once per process and return ``logger_name``.

    Safe to call from every entry point: the stdout handler and the optional
    ``LS_LOG_FILE`` handler are only added when missing. ``LS_LOG_LEVELS``
    takes ``name=LEVEL`` pairs separated by commas.
    """
    level = _level(os.environ.get("LS_LOG_LEVEL", default_level))
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)
    if not any(_writes_to_stdout(handler) for handler in root.handlers):
        root.addHandler(_handler(logging.StreamHandler(sys.stdout), level))
    log_path = os.environ.get("LS_LOG_FILE")
    if log_path and not any(_writes_to_file(handler, log_path) for handler in root.handlers):
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        root.addHandler(_handler(logging.FileHandler(log_path), level))
    for item in os.environ.get("LS_LOG_LEVELS", "").split(","):
        name, sep, override = item.partition("=")
        if sep and name.strip():
            logging.getLogger(name.strip()).setLevel(_level(override))
    return logging.getLogger(logger_name)


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _writes_to_stdout(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout


def _writes_to_file(handler: logging.Handler, path: str) -> bool:
    return isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(path)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def json_loads_or(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, set):
        return sorted(value)
    return str(value)


MASK_MIN_LENGTH = 16


def mask_secret(value: str) -> str:
    """Return a display-safe excerpt of a credential.

    Values of sixteen characters or more keep their first and last four
    characters, so at most half of the value is shown. Shorter values are
    fully masked.
    """
    if not value:
        return ""
    if len(value) < MASK_MIN_LENGTH:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value.replace("Z", "+00:00")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()