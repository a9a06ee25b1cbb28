import re
from collections.abc import Callable, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator
from pydantic import ValidationError as PydanticValidationError

from modelbridge.errors import ORMError, ValidationError
from modelbridge.models.enums import FieldType

_TYPE_ALIASES: dict[Any, FieldType] = {
    str: FieldType.STRING,
    int: FieldType.NUMBER,
    float: FieldType.NUMBER,
    Decimal: FieldType.NUMBER,
    bool: FieldType.BOOLEAN,
    datetime: FieldType.DATE,
    date: FieldType.DATE,
    dict: FieldType.OBJECT,
    list: FieldType.ARRAY,
    tuple: FieldType.ARRAY,
}

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}

FieldTransform = Callable[[Any, str, Any], Any]
FieldValidator = Callable[[Any], str | None]


def normalize_field_type(value: Any) -> FieldType:
    """Map a type declaration (python type, class or name) to a canonical field type."""
    if value is None:
        return FieldType.STRING
    if isinstance(value, FieldType):
        return value
    if value in _TYPE_ALIASES:
        return _TYPE_ALIASES[value]
    name = value if isinstance(value, str) else getattr(value, "__name__", str(value))
    return FieldType(name.strip().lower())


def resolve_optionality(data: dict[str, Any]) -> dict[str, Any]:
    """Derive ``required``/``optional`` from whichever one was declared."""
    if data.get("required") is not None:
        data["optional"] = not data["required"]
    else:
        data["required"] = False
    if data.get("optional") is not None:
        data["required"] = not data["optional"]
    else:
        data["optional"] = True
    return data


def compile_regex(descriptor: Any) -> re.Pattern[str]:
    """Build a pattern from a compiled regex, a string or a ``{"type": "regexp"}`` descriptor."""
    if isinstance(descriptor, re.Pattern):
        return descriptor
    if isinstance(descriptor, str):
        return re.compile(descriptor)
    if isinstance(descriptor, Mapping) and descriptor.get("type") == "regexp":
        flags = 0
        for flag in descriptor.get("flags") or "":
            flags |= _REGEX_FLAGS.get(flag, 0)
        return re.compile(descriptor["value"], flags)
    raise TypeError(f"unsupported validator: {descriptor!r}")


class FieldSchema(BaseModel):
    """Normalized description of one model field."""

    type: FieldType = FieldType.STRING
    required: bool = False
    optional: bool = True
    default: Any = None
    validator: re.Pattern[str] | FieldValidator | None = None
    minlength: int | None = None
    maxlength: int | None = None
    length: int | None = None
    readonly: bool = False
    custom: bool = False
    description: str | None = None
    storage_name: str | None = Field(default=None, alias="name")
    getter: FieldTransform | None = Field(default=None, alias="get")
    setter: FieldTransform | None = Field(default=None, alias="set")
    linked_model: str | None = Field(default=None, alias="model")

    model_config = ConfigDict(extra="allow", populate_by_name=True, arbitrary_types_allowed=True)

    _declared: dict[str, Any] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            data["type"] = normalize_field_type(data.get("type"))
            if isinstance(data.get("validator"), (str, Mapping)):
                data["validator"] = compile_regex(data["validator"])
            resolve_optionality(data)
        return data

    @classmethod
    def from_definition(cls, key: str, definition: "FieldSchema | Mapping[str, Any] | None") -> "FieldSchema":
        """Build a schema for ``key`` from a definition mapping or an existing schema.

        Raises:
            ValidationError: If the definition cannot be normalized.
        """
        if isinstance(definition, FieldSchema):
            return definition.model_copy(deep=True)
        declared = dict(definition or {})
        try:
            schema = cls.model_validate(declared)
        except (PydanticValidationError, ValueError, TypeError) as exc:
            raise ValidationError(key, f"invalid definition for field {key}: {exc}") from exc
        schema._declared = declared
        return schema

    def declared(self) -> dict[str, Any]:
        """Return the definition this schema was built from, for schema merging."""
        if self._declared:
            return dict(self._declared)
        return self.model_dump(by_alias=True, exclude_defaults=True)

    def storage_key(self, key: str) -> str:
        return self.storage_name or key

    def is_renamed(self, key: str) -> bool:
        return self.storage_name is not None and self.storage_name != key


class ConfigField(BaseModel):
    """Declaration of one connector configuration key, from ``metadata["fields"]``."""

    name: str
    required: bool = False
    default: Any = None
    validator: Any = None
    description: str | None = None

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    def compile_validator(self, connector_name: str) -> re.Pattern[str] | None:
        """Return the validator pattern, if any.

        Raises:
            ORMError: If the validator is neither a regex nor a regexp descriptor.
        """
        if self.validator is None:
            return None
        if isinstance(self.validator, re.Pattern) or (
            isinstance(self.validator, Mapping) and self.validator.get("type") == "regexp"
        ):
            return compile_regex(self.validator)
        raise ORMError(f"The connector {connector_name} has an invalid validator for {self.name}!")
