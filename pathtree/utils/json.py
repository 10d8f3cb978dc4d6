"""JSON helpers for the ``data`` column of stored documents."""

import json
from typing import Any


def parse_json_field(raw: str | dict | None) -> dict[str, Any] | None:
    """Parse a JSON string or dict, returning None on failure or empty.

    Returns None for: None, empty string, empty dict, invalid JSON, non-dict JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw if raw else None
    if isinstance(raw, str):
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict) and parsed:
                return parsed
        except (ValueError, TypeError):
            pass
    return None


def dump_json_field(value: dict[str, Any] | None) -> str:
    """Serialize domain fields for storage. None and empty dicts become '{}'."""
    if not value:
        return "{}"
    return json.dumps(value, default=str)
