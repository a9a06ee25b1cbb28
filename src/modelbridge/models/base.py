import copy
import json
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any

_BOOLEAN_TRUE = re.compile(r"^(1|true|yes|ok)$")


class _Omit:
    """Marker a get transform returns to drop the key from a projection."""

    _instance: "_Omit | None" = None

    def __new__(cls) -> "_Omit":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "OMIT"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Omit":
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> "_Omit":
        return self


OMIT = _Omit()


def is_present(value: Any) -> bool:
    return value is not None and value is not OMIT


def deep_merge(target: Mapping[str, Any] | None, source: Mapping[str, Any] | None) -> dict[str, Any]:
    """Recursively merge ``source`` onto a deep copy of ``target``.

    Nested mappings are merged key by key; any other value in ``source``
    replaces the one in ``target``.
    """
    merged: dict[str, Any] = copy.deepcopy(dict(target or {}))
    for key, value in (source or {}).items():
        existing = merged.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def runtime_type_name(value: Any) -> str:
    """Name the runtime type of a value using the field type vocabulary."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def parse_json_object(value: Any) -> Any:
    """Parse a string that looks like a JSON object; other values pass through."""
    if isinstance(value, str) and value.startswith("{"):
        return json.loads(value)
    return value


def parse_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return bool(_BOOLEAN_TRUE.match(value.lower()))
    return value


def parse_number(value: Any) -> Any:
    if isinstance(value, str):
        match = re.match(r"^\s*([+-]?\d+)", value)
        return int(match.group(1)) if match else None
    return value


def parse_date(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return value


def epoch_to_datetime(value: float) -> datetime:
    """Convert an epoch timestamp in milliseconds to an aware datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def csv_to_selection(value: str) -> dict[str, int]:
    return {part.strip(): 1 for part in value.split(",") if part.strip()}


def ensure_metadata_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError("metadata must be a dictionary")
