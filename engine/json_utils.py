"""JSON helpers shared by API responses and structured log lines."""

from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def safe_json(value: Any) -> Any:
    """Return ``value`` reduced to plain JSON types.

    Datetimes become ISO strings, enums their value, sets/tuples lists and
    non-finite floats ``None``. Unknown objects fall back to ``str()``.
    """
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return safe_json(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(key): safe_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [safe_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((safe_json(item) for item in value), key=str)
    return str(value)


def safe_json_dumps(value: Any, **kwargs) -> str:
    kwargs.setdefault("ensure_ascii", False)
    kwargs.setdefault("allow_nan", False)
    return json.dumps(safe_json(value), **kwargs)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
