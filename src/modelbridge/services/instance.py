"""Validated, change-tracked records bound to a Model schema.

An Instance keeps field values under their logical names, tracks which of
them changed since the last save, and projects itself either for callers
(``to_json``) or for storage (``to_payload``). Values arriving under a
storage name are mapped back to the logical field on ``set``.
"""

import copy
import math
from collections.abc import Callable, Mapping
from types import MethodType
from typing import TYPE_CHECKING, Any

from modelbridge.errors import ORMError, ValidationError
from modelbridge.models.base import (
    OMIT,
    epoch_to_datetime,
    is_present,
    parse_date,
    runtime_type_name,
)
from modelbridge.models.enums import FieldType
from modelbridge.models.field import FieldSchema
from modelbridge.services.events import FieldChangeObserver, InstanceObserver
from modelbridge.services.registry import get_registry

if TYPE_CHECKING:
    from modelbridge.services.connector import Connector
    from modelbridge.services.model import Model

INTERNAL_KEYS = frozenset(
    {
        "_model",
        "_values",
        "_dirty",
        "_deleted",
        "_metadata",
        "_dirty_fields",
        "_field_map",
        "_renamed",
        "_selected_fields",
        "_observers",
    }
)

_FALSE_STRINGS = frozenset({"false", "no", "0"})
_TRUE_STRINGS = frozenset({"true", "yes", "1"})


class Instance:
    """A live record of a Model.

    Field values are readable and writable as attributes, which route
    through ``get`` and ``set``. The primary key is kept out of band in the
    instance metadata and exposed as ``id`` / ``primary_key``.
    """

    PRIMARY_KEY = "primarykey"

    def __init__(self, model: "Model", values: Mapping[str, Any] | None = None, skip_unknown: bool = False) -> None:
        fields = getattr(model, "fields", None)
        if fields is None:
            raise ORMError('missing model "fields" property')

        self._init_state(model)
        for key, field in fields.items():
            self._values[key] = copy.deepcopy(field.default) if field.default is not None else None
            if field.storage_name:
                self._field_map[field.storage_name] = key
                self._renamed.add(key)

        for name, member in (getattr(model, "methods", None) or {}).items():
            object.__setattr__(self, name, MethodType(member, self) if callable(member) else member)

        if values:
            self.set(values, skip_unknown=skip_unknown)

        # construction-time assignment is not a change
        self._dirty = False
        self._dirty_fields = {}
        self._selected_fields = list(values) if skip_unknown and values else None

        if not skip_unknown:
            self.validate_fields()

    def _init_state(self, model: "Model") -> None:
        object.__setattr__(self, "_model", model)
        object.__setattr__(self, "_values", {})
        object.__setattr__(self, "_dirty", False)
        object.__setattr__(self, "_deleted", False)
        object.__setattr__(self, "_metadata", {})
        object.__setattr__(self, "_dirty_fields", {})
        object.__setattr__(self, "_field_map", {})
        object.__setattr__(self, "_renamed", set())
        object.__setattr__(self, "_selected_fields", None)
        object.__setattr__(self, "_observers", [])

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        model = self.__dict__.get("_model")
        if model is not None and name in model.fields:
            return self.get(name)
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        model = self.__dict__.get("_model")
        if model is not None and name in model.fields:
            self.set(name, value)
        else:
            object.__setattr__(self, name, value)

    def __repr__(self) -> str:
        return f"<{self._model.name} {self.to_json()!r}>"

    def __deepcopy__(self, memo: dict[int, Any]) -> "Instance":
        clone = object.__new__(type(self))
        memo[id(self)] = clone
        for key, value in self.__dict__.items():
            if key in ("_values", "_metadata", "_dirty_fields"):
                value = copy.deepcopy(value, memo)
            elif key == "_observers":
                value = []
            elif key == "_selected_fields" and value is not None:
                value = list(value)
            elif isinstance(value, MethodType) and value.__self__ is self:
                value = MethodType(value.__func__, clone)
            object.__setattr__(clone, key, value)
        return clone

    # -- model / connector -------------------------------------------------

    def get_model(self) -> "Model":
        return self._model

    def get_connector(self) -> "Connector":
        return self._model.get_connector()

    def keys(self) -> list[str]:
        return self._model.keys()

    # -- metadata and primary key ------------------------------------------

    def set_meta(self, key: str, value: Any) -> "Instance":
        self._metadata[key] = value
        return self

    def get_meta(self, key: str, default: Any = None) -> Any:
        value = self._metadata.get(key)
        return default if value is None else value

    def set_primary_key(self, value: Any) -> "Instance":
        return self.set_meta(self.PRIMARY_KEY, value)

    def get_primary_key(self) -> Any:
        return self.get_meta(self.PRIMARY_KEY)

    @property
    def id(self) -> Any:
        return self.get_primary_key()

    @id.setter
    def id(self, value: Any) -> None:
        self.set_primary_key(value)

    primary_key = id

    # -- lifecycle state ---------------------------------------------------

    def is_unsaved(self) -> bool:
        return self._dirty

    def is_deleted(self) -> bool:
        return self._deleted

    def mark_saved(self) -> None:
        """Clear change tracking after a successful save and notify observers."""
        self._dirty = False
        self._dirty_fields = {}
        for observer in list(self._observers):
            observer.on_save(self)

    def mark_deleted(self) -> None:
        self._deleted = True
        for observer in list(self._observers):
            observer.on_delete(self)

    def observe(self, observer: InstanceObserver) -> InstanceObserver:
        self._observers.append(observer)
        return observer

    def unobserve(self, observer: InstanceObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def on_change(self, field: str, callback: Callable[[Any, Any], Any]) -> InstanceObserver:
        """Call ``callback(new_value, old_value)`` whenever ``field`` changes."""
        return self.observe(FieldChangeObserver(field, callback))

    # -- read / write ------------------------------------------------------

    def get(self, name: str) -> Any:
        """Return a field value through its get transform.

        Composite values are returned as deep copies so that mutating the
        result never changes the instance behind its back.

        Raises:
            ORMError: If ``name`` is not a field of this instance.
        """
        if name not in self._values:
            raise ORMError(f"field not found: {name}")
        raw = self._values[name]
        result = self._model.apply_get(name, raw, self)
        if result is OMIT:
            result = raw
        if isinstance(result, (dict, list, Instance)):
            result = copy.deepcopy(result)
        return result

    def set(self, name: str | Mapping[str, Any], value: Any = None, *, skip_unknown: bool = False) -> "Instance":
        """Assign one field, or every pair of a mapping.

        With ``skip_unknown`` the value is treated as trusted storage data:
        unknown fields are dropped, read-only fields may be written, and no
        transform or validation runs. A mapping assigned this way also
        clears every field it does not mention, so that projections hydrate
        only what was selected.

        Raises:
            ValidationError: Unknown or read-only field, or a rejected value.
        """
        if isinstance(name, Mapping):
            for key, item in name.items():
                self._set_field(key, item, skip_unknown)
            if skip_unknown:
                incoming = set(name)
                for key in self._values:
                    if key not in incoming and key not in self._renamed:
                        self._values[key] = None
            return self
        self._set_field(name, value, skip_unknown)
        return self

    def _set_field(self, name: str, value: Any, skip_unknown: bool) -> None:
        if name in INTERNAL_KEYS:
            return
        name = self._field_map.get(name, name)
        # the primary key lives in metadata
        if name == "id":
            return

        definition = self._model.fields.get(name)
        if definition is None:
            if skip_unknown:
                return
            raise ValidationError(name, f"invalid field: {name}")
        if definition.readonly and not skip_unknown:
            raise ValidationError(name, f"cannot set read-only field: {name}")

        if not is_present(value):
            value = copy.deepcopy(definition.default)
        if not skip_unknown:
            value = self._model.apply_set(name, value, self)
        if definition.type == FieldType.DATE and isinstance(value, str):
            value = parse_date(value)
        value = self._link(definition, value, skip_unknown)
        if not skip_unknown:
            value = self.validate_field(name, value)

        current = self._values.get(name)
        if _differs(current, value):
            self._values[name] = value
            self._dirty = True
            self._dirty_fields[name] = value
            for observer in list(self._observers):
                observer.on_change(self, name, value, current)

    def _link(self, definition: FieldSchema, value: Any, skip_unknown: bool) -> Any:
        if not definition.linked_model or value is None or isinstance(value, Instance):
            return value
        from modelbridge.services.collection import Collection

        if isinstance(value, Collection):
            return value
        linked = get_registry().get_model(definition.linked_model)
        if linked is None:
            return value
        if isinstance(value, Mapping):
            return linked.instance(value, skip_unknown)
        if isinstance(value, (list, tuple)) and all(isinstance(item, (Mapping, Instance)) for item in value):
            return Collection(
                linked,
                [item if isinstance(item, Instance) else linked.instance(item, skip_unknown) for item in value],
            )
        return value

    def change(self, name: str, value: Any) -> None:
        """Assign ``value`` and mark the field dirty even if it is unchanged.

        Raises:
            ORMError: If ``name`` is not a field of this instance.
        """
        if name not in self._values:
            raise ORMError(f"field not found: {name}")
        self._values[name] = value
        self._dirty = True
        self._dirty_fields[name] = value

    def get_changed_fields(self) -> dict[str, Any]:
        return dict(self._dirty_fields)

    def values(self, dirty_only: bool = False) -> dict[str, Any]:
        """Return field values, leaving out read-only fields.

        With ``dirty_only`` only changed fields are returned; a read-only
        field is included when it is among them.
        """
        result: dict[str, Any] = {}
        for key, value in self._values.items():
            field = self._model.fields.get(key)
            is_dirty = dirty_only and key in self._dirty_fields
            if field is not None and field.readonly:
                if not is_dirty:
                    continue
            elif dirty_only and not is_dirty:
                continue
            result[key] = copy.deepcopy(value)
        return result

    # -- validation --------------------------------------------------------

    def validate_fields(self) -> None:
        """Validate every field, storing any coerced value.

        Raises:
            ValidationError: On the first field that fails.
        """
        for name in self._model.fields:
            current = self._values.get(name)
            validated = self.validate_field(name)
            if _differs(current, validated) and current is not None:
                self._values[name] = validated

    def validate_field(self, name: str, value: Any = OMIT) -> Any:
        """Validate a value for ``name`` (defaults to the stored value when omitted).

        Returns:
            The value, coerced to the declared type where needed.

        Raises:
            ValidationError: If the value is missing, of the wrong type,
                outside the length constraints or rejected by the validator.
        """
        field = self._model.fields[name]
        if value is OMIT:
            value = self._values.get(name)
        has_value = value is not None

        if (field.required or not field.optional) and not has_value:
            raise ValidationError(name, f"required field value missing: {name}")

        if has_value and runtime_type_name(value) != field.type:
            value = self._coerce(field, name, value)

        if has_value and isinstance(value, (str, list, tuple)):
            size = len(value)
            if field.minlength is not None and size < field.minlength:
                raise ValidationError(name, f"field value must be at least {field.minlength} characters long: {name}")
            if field.maxlength is not None and size > field.maxlength:
                raise ValidationError(name, f"field value must be at most {field.maxlength} characters long: {name}")
            if field.length is not None and size != field.length:
                raise ValidationError(name, f"field value must be exactly {field.length} characters long: {name}")

        if field.validator is not None and (field.required or has_value):
            self._run_validator(field, name, value)
        return value

    def _run_validator(self, field: FieldSchema, name: str, value: Any) -> None:
        validator = field.validator
        if hasattr(validator, "search"):
            if not validator.search(str(value)):
                raise ValidationError(
                    name,
                    f'field "{name}" failed validation using expression "{validator.pattern}" and value: {value}',
                )
            return
        try:
            message = validator(value)
        except ValidationError:
            raise
        except Exception as exc:
            raise ValidationError(name, str(exc)) from exc
        if message:
            raise ValidationError(name, message)

    def _coerce(self, field: FieldSchema, name: str, value: Any) -> Any:
        actual = runtime_type_name(value)
        match field.type:
            case FieldType.BOOLEAN:
                if actual == "number":
                    return value >= 1
                if isinstance(value, str):
                    token = value.strip().lower()
                    if token in _FALSE_STRINGS:
                        return False
                    if token in _TRUE_STRINGS:
                        return True
            case FieldType.NUMBER:
                if isinstance(value, str):
                    coerced = _parse_numeric(value)
                    if coerced is not None:
                        return coerced
            case FieldType.DATE:
                if actual == "number":
                    return epoch_to_datetime(value)
            case FieldType.OBJECT:
                if actual in ("date", "array"):
                    return value
                if value == "":
                    return {}
            case FieldType.ARRAY:
                if isinstance(value, (list, tuple)):
                    return value
        raise ValidationError(
            name,
            f"invalid type ({actual}) for field: {name}. Should be {field.type}. Value was: {value!r}",
        )

    # -- projections -------------------------------------------------------

    def _is_unselected(self, key: str, field: FieldSchema | None) -> bool:
        selected = self._selected_fields
        if selected is None or key == "id":
            return False
        if field is not None and field.custom:
            return False
        storage_key = field.storage_key(key) if field is not None else key
        return key not in selected and storage_key not in selected

    def to_json(self) -> dict[str, Any]:
        """Project the instance for callers.

        The primary key comes first as ``id``, each field passes through its
        get transform and is keyed by its storage name. Fields missing from a
        partial selection are left out, except custom fields. A model-level
        ``serialize`` hook, when defined, receives the result last.
        """
        obj: dict[str, Any] = {}
        pk = self.get_primary_key()
        if pk is not None:
            obj["id"] = pk
        fields = self._model.fields
        for key, raw in self._values.items():
            field = fields.get(key)
            if self._is_unselected(key, field):
                continue
            value = self._model.apply_get(key, raw, self)
            if value is OMIT or callable(value):
                continue
            obj[field.storage_key(key) if field is not None else key] = _plain(value, "to_json")
        serialize = getattr(self._model, "serialize", None)
        if serialize is not None:
            obj = serialize(obj, self, self._model)
        return obj

    def to_payload(self) -> dict[str, Any]:
        """Project the instance for storage, keyed by storage names, without custom fields."""
        obj: dict[str, Any] = {}
        for key, field in self._model.fields.items():
            if field.custom:
                continue
            obj[field.storage_key(key)] = _plain(self._values.get(key), "to_payload")
        deserialize = getattr(self._model, "deserialize", None)
        if deserialize is not None:
            obj = deserialize(obj, self, self._model)
        return obj

    # -- persistence -------------------------------------------------------

    async def save(self) -> "Instance":
        return await self._model.save(self)

    update = save

    async def delete(self) -> "Instance":
        return await self._model.delete(self)

    remove = delete


def _differs(current: Any, value: Any) -> bool:
    if current is value:
        return False
    if type(current) is not type(value):
        return True
    return bool(current != value)


def _parse_numeric(value: str) -> int | float | None:
    # int() and float() accept digit separators; numeric strings may not
    if "_" in value:
        return None
    try:
        return int(value.strip())
    except ValueError:
        pass
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _plain(value: Any, projection: str) -> Any:
    if isinstance(value, Instance):
        return getattr(value, projection)()
    if isinstance(value, list) and any(isinstance(item, Instance) for item in value):
        return [getattr(item, projection)() if isinstance(item, Instance) else item for item in value]
    return copy.deepcopy(value)
