import copy
import json
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from modelbridge.errors import ORMError
from modelbridge.models.base import csv_to_selection, deep_merge

OPTION_KEYS: tuple[str, ...] = ("where", "sel", "unsel", "page", "per_page", "order", "skip", "limit")
DEFAULT_LIMIT = 10


class QueryOptions(BaseModel):
    """Normalized query options handed to connectors."""

    where: dict[str, Any] | None = None
    sel: dict[str, Any] | None = None
    unsel: dict[str, Any] | None = None
    order: dict[str, Any] | str | None = None
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=DEFAULT_LIMIT, gt=0)
    skip: int = Field(default=0, ge=0)
    limit: int | None = Field(default=DEFAULT_LIMIT, gt=0)
    distinct: str | None = None

    model_config = ConfigDict(extra="allow")

    def with_limit(self, limit: int) -> "QueryOptions":
        """Return a copy restricted to ``limit`` records, leaving this one untouched."""
        return self.model_copy(update={"limit": limit, "per_page": limit}, deep=True)


def like_to_regex(pattern: str) -> str:
    """Translate a SQL LIKE pattern into an anchored regular expression.

    ``%`` matches any run of characters, ``_`` one character and ``%%`` a
    literal percent sign.
    """
    regex = re.sub(r"%{2}", r"\\%", pattern)
    regex = re.sub(r"(?<!\\)%", ".*", regex)
    regex = re.sub(r"(?<!\\)_", ".", regex)
    return f"^{regex}$"


def translate_query_regex(where: dict[str, Any]) -> dict[str, Any]:
    """Rewrite ``$like``/``$notLike`` operators in ``where`` into ``$regex`` in place."""
    for key in list(where):
        value = where[key]
        if key == "$like":
            where["$regex"] = like_to_regex(value)
            del where["$like"]
        elif key == "$notLike":
            where["$not"] = {"$regex": like_to_regex(value)}
            del where["$notLike"]
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, dict):
                    translate_query_regex(item)
        elif isinstance(value, dict):
            translate_query_regex(value)
    return where


def _parse_json_properties(options: dict[str, Any]) -> None:
    for key, value in list(options.items()):
        if isinstance(value, str) and value.startswith("{"):
            try:
                options[key] = json.loads(value)
            except json.JSONDecodeError as exc:
                if key == "where":
                    raise ORMError(f'Failed to parse "where" as JSON: {exc}') from exc


def _casefold_keys(options: dict[str, Any]) -> None:
    for key in list(options):
        lowered = key.lower()
        if key not in OPTION_KEYS and lowered in OPTION_KEYS:
            options[lowered] = options.pop(key)


def _to_positive_int(value: Any) -> int | None:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    return number or None


def _to_int(value: Any, name: str) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ORMError(f"invalid value for {name}: {value!r}") from exc


def _selection(value: Any) -> Any:
    if isinstance(value, str):
        return csv_to_selection(value)
    if isinstance(value, (list, tuple, set)):
        return {str(key): 1 for key in value}
    return value


def prepare_query_options(
    options: Mapping[str, Any] | QueryOptions | None,
    default_options: Mapping[str, Any] | None = None,
    translate_regex: bool = False,
) -> QueryOptions:
    """Normalize caller query options.

    Args:
        options: Raw options. A mapping with none of the recognized option
            keys is treated as a ``where`` clause.
        default_options: Model-level defaults, overridden by ``options``.
        translate_regex: Rewrite ``$like``/``$notLike`` into ``$regex``.

    Returns:
        QueryOptions with ``limit``/``per_page`` and ``page``/``skip`` reconciled.

    Raises:
        ORMError: If ``where`` is unparsable JSON or an option has an invalid value.
    """
    if isinstance(options, QueryOptions):
        return options.model_copy(deep=True)

    prepared: dict[str, Any] = copy.deepcopy(dict(options or {}))
    _parse_json_properties(prepared)
    _casefold_keys(prepared)

    if not any(prepared.get(key) is not None for key in OPTION_KEYS):
        prepared = {"where": prepared} if prepared else {}

    for key in ("sel", "unsel"):
        if prepared.get(key) is not None:
            prepared[key] = _selection(prepared[key])

    if default_options:
        prepared = deep_merge(default_options, prepared)

    limit = (
        _to_positive_int(prepared.get("limit"))
        or _to_positive_int(prepared.get("per_page"))
        or DEFAULT_LIMIT
    )
    prepared["limit"] = prepared["per_page"] = limit

    page = prepared.get("page")
    skip = prepared.get("skip")
    if page is None and skip is not None:
        prepared["skip"] = _to_int(skip, "skip")
        prepared["page"] = prepared["skip"] // limit + 1
    elif skip is None and page is not None:
        prepared["page"] = _to_int(page, "page")
        prepared["skip"] = (prepared["page"] - 1) * limit
    elif page is None and skip is None:
        prepared["page"] = 1
        prepared["skip"] = 0
    else:
        prepared["page"] = _to_int(page, "page")
        prepared["skip"] = _to_int(skip, "skip")

    if translate_regex and isinstance(prepared.get("where"), dict):
        translate_query_regex(prepared["where"])

    try:
        return QueryOptions.model_validate(prepared)
    except PydanticValidationError as exc:
        raise ORMError(f"invalid query options: {exc}") from exc
