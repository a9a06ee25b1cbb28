"""Schema-driven models and their dispatch to connectors.

A :class:`Model` owns a normalized field schema and routes every storage
operation to its connector after building and validating an
:class:`~modelbridge.services.instance.Instance`. Models derive from one
another with :meth:`Model.extend` (inherit every field, override per key) or
:meth:`Model.reduce` (keep only the fields the child names).
"""

import copy
import functools
import inspect
import json
from collections.abc import Callable, Mapping, Sequence
from types import MethodType
from typing import TYPE_CHECKING, Any

import inflection
import structlog

from modelbridge.errors import ORMError, ValidationError
from modelbridge.models.base import (
    OMIT,
    deep_merge,
    ensure_metadata_dict,
    parse_boolean,
    parse_date,
    parse_number,
)
from modelbridge.models.enums import VALID_ACTIONS, FieldType
from modelbridge.models.field import FieldSchema
from modelbridge.models.query import QueryOptions, prepare_query_options
from modelbridge.services.collection import Collection
from modelbridge.services.events import Listener
from modelbridge.services.instance import Instance
from modelbridge.services.registry import get_registry
from modelbridge.services.tracing import tracer_for

if TYPE_CHECKING:
    from modelbridge.services.connector import Connector

SCHEMA_KEYS = ("name", "fields", "connector", "metadata", "mappings", "actions", "singular", "plural", "autogen", "generated")
HOOK_KEYS = ("serialize", "deserialize", "default_query_options")

# model method -> connector operation it needs
DISPATCHERS: dict[str, str] = {
    "delete_all": "delete_all",
    "remove_all": "delete_all",
    "fetch": "query",
    "find": "query",
    "query": "query",
    "find_all": "find_all",
    "find_one": "find_one",
    "delete": "delete",
    "remove": "delete",
    "update": "save",
    "save": "save",
    "create": "create",
    "distinct": "distinct",
    "count": "count",
    "find_and_modify": "find_and_modify",
    "upsert": "upsert",
}

FIND_ALL_LIMIT = 1000


def _validate_actions(actions: Any) -> list[str]:
    if actions is None:
        return list(VALID_ACTIONS)
    if not isinstance(actions, (list, tuple)) or any(action not in VALID_ACTIONS for action in actions):
        raise ORMError("actions must be an array with one or more of the following: " + ", ".join(VALID_ACTIONS))
    return [str(action) for action in actions]


def _normalize_fields(fields: Mapping[str, Any] | None) -> dict[str, FieldSchema]:
    return {key: FieldSchema.from_definition(key, definition) for key, definition in (fields or {}).items()}


def merge_fields(defined: Mapping[str, FieldSchema], inherited: Mapping[str, FieldSchema]) -> dict[str, FieldSchema]:
    """Merge a child's fields over its parent's.

    A child field that renames itself onto the name of a parent field
    replaces that parent field.
    """
    merged: dict[str, FieldSchema] = {}
    for key, field in inherited.items():
        if key in defined:
            merged[key] = FieldSchema.from_definition(key, deep_merge(field.declared(), defined[key].declared()))
        else:
            merged[key] = field.model_copy(deep=True)
    for key, field in defined.items():
        if key not in merged:
            merged[key] = field
    for key, field in defined.items():
        if field.is_renamed(key) and field.storage_name in inherited:
            merged.pop(field.storage_name, None)
    return merged


def _transform(mapper: Any, direction: str) -> Callable[..., Any] | None:
    if mapper is None:
        return None
    if isinstance(mapper, FieldSchema):
        return mapper.getter if direction == "get" else mapper.setter
    if isinstance(mapper, Mapping):
        return mapper.get(direction)
    return None


class Model:
    """A named schema bound to a connector.

    Args:
        name: Model name, unique within the registry by convention.
        definition: Field schema plus the keys in ``SCHEMA_KEYS`` and
            ``HOOK_KEYS``. Any other key is a custom method (or value) made
            available on the model and on each of its instances.
        skip_validation: Accept a missing definition and a field named ``id``.
        logger: Optional structlog logger.

    Raises:
        ORMError: Missing definition or malformed ``actions``.
        ValidationError: A field named ``id`` or an invalid field definition.
    """

    def __init__(
        self,
        name: str,
        definition: Mapping[str, Any] | None = None,
        skip_validation: bool = False,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if not skip_validation and definition is None:
            raise ORMError("missing required definition")
        source = dict(definition or {})
        fields = source.get("fields")
        if not skip_validation and fields and "id" in fields:
            raise ValidationError("id", "id is a reserved field name for the generated primary key")

        self._logger = logger or structlog.get_logger(__name__)
        self.name = name
        self.fields = _normalize_fields(fields)
        self.connector: "Connector | None" = source.get("connector")
        self.metadata = ensure_metadata_dict(copy.deepcopy(source.get("metadata")))
        self.mappings = dict(source.get("mappings") or {})
        self.actions = _validate_actions(source.get("actions"))
        self.singular = source.get("singular") or inflection.singularize(name.lower())
        self.plural = source.get("plural") or inflection.pluralize(name.lower())
        self.autogen = True if source.get("autogen") is None else bool(source["autogen"])
        self.generated = bool(source.get("generated", False))
        self.serialize = source.get("serialize")
        self.deserialize = source.get("deserialize")
        self.default_query_options = source.get("default_query_options")
        self.methods = {key: value for key, value in source.items() if key not in SCHEMA_KEYS + HOOK_KEYS}
        self._fields_declared = fields is not None
        self._supermodel: str | None = None
        self._parent: "Model | None" = None
        self._request: Any = None

        self._wire_methods()
        get_registry().register_model(self)

    def __getattribute__(self, name: str) -> Any:
        operation = DISPATCHERS.get(name)
        if operation is not None:
            connector = object.__getattribute__(self, "__dict__").get("connector")
            if connector is not None and not connector.supports(operation):
                raise AttributeError(f"{name} is not available: connector {connector.name} does not implement {operation}")
        return object.__getattribute__(self, name)

    def __repr__(self) -> str:
        return f"<Model {self.name}>"

    # -- registry ----------------------------------------------------------

    @classmethod
    def define(cls, name: str, definition: Mapping[str, Any]) -> "Model":
        return cls(name, definition)

    @staticmethod
    def get_models() -> list["Model"]:
        return get_registry().get_models()

    @staticmethod
    def get_model(name: str) -> "Model | None":
        return get_registry().get_model(name)

    @staticmethod
    def on(event: str, listener: Listener) -> Listener:
        return get_registry().model_events.on(event, listener)

    @staticmethod
    def remove_listener(event: str, listener: Listener) -> None:
        get_registry().model_events.remove_listener(event, listener)

    @staticmethod
    def remove_all_listeners(event: str | None = None) -> None:
        get_registry().model_events.remove_all_listeners(event)

    # -- derivation --------------------------------------------------------

    def extend(self, name_or_model: "str | Model", definition: Mapping[str, Any] | None = None) -> "Model":
        """Derive a model that inherits every field of this one.

        Fields the child declares are merged over the parent's field of the
        same name.

        Raises:
            ORMError: If ``name_or_model`` is neither a name nor a Model.
        """
        return self._derive(name_or_model, definition, extend=True)

    def reduce(self, name_or_model: "str | Model", definition: Mapping[str, Any] | None = None) -> "Model":
        """Derive a model that keeps only the fields the child declares.

        Each kept field is merged over the parent's field of the same name,
        so the child may declare a field with an empty definition.

        Raises:
            ORMError: If ``name_or_model`` is neither a name nor a Model.
        """
        return self._derive(name_or_model, definition, extend=False)

    def _derive(self, name_or_model: "str | Model", definition: Mapping[str, Any] | None, extend: bool) -> "Model":
        if isinstance(name_or_model, str):
            child = Model(name_or_model, definition, skip_validation=True, logger=self._logger)
        elif isinstance(name_or_model, Model):
            child = name_or_model
        else:
            raise ORMError("invalid argument passed to extend. Must either be a model class or model definition")

        child.metadata = deep_merge(self.metadata, child.metadata)
        child.mappings = deep_merge(self.mappings, child.mappings)
        if child._fields_declared:
            if extend:
                child.fields = merge_fields(child.fields, self.fields)
            else:
                child.fields = {
                    key: (
                        FieldSchema.from_definition(key, deep_merge(self.fields[key].declared(), field.declared()))
                        if key in self.fields
                        else field
                    )
                    for key, field in child.fields.items()
                }
        else:
            child.fields = {key: field.model_copy(deep=True) for key, field in self.fields.items()}
        child._fields_declared = True

        child.connector = child.connector or self.connector
        child.methods = {**self.methods, **child.methods}
        for hook in HOOK_KEYS:
            if getattr(child, hook) is None:
                setattr(child, hook, getattr(self, hook))
        child.autogen = self.autogen
        child.actions = _validate_actions(definition["actions"]) if definition and definition.get("actions") else list(self.actions)
        child._supermodel = self.name
        child._parent = self
        child._wire_methods()
        self._logger.debug(
            "model_derived",
            model=child.name,
            parent=self.name,
            mode="extend" if extend else "reduce",
            fields=len(child.fields),
        )
        return child

    # -- method wiring -----------------------------------------------------

    def _wire_methods(self, request: Any = None) -> None:
        for name, member in self.methods.items():
            if callable(member):
                bound = MethodType(member, self)
                setattr(self, name, self._traced(name, bound, request) if request is not None else bound)
            else:
                setattr(self, name, member)
        if request is None:
            return
        connector = self.connector
        for name in DISPATCHERS:
            if name in self.methods:
                continue
            if connector is not None and not connector.supports(DISPATCHERS[name]):
                continue
            setattr(self, name, self._traced(name, getattr(self, name), request))

    def _traced(self, name: str, func: Callable[..., Any], request: Any) -> Callable[..., Any]:
        tracer = tracer_for(request)
        span_name = f"model:{self.name}:{name}"

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def traced_async(*args: Any, **kwargs: Any) -> Any:
                span = tracer.start(span_name)
                span.add_arguments(args)
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    span.add_error(exc)
                    raise
                else:
                    if result is not None:
                        span.add_result(result)
                    return result
                finally:
                    span.end()

            return traced_async

        @functools.wraps(func)
        def traced(*args: Any, **kwargs: Any) -> Any:
            span = tracer.start(span_name)
            span.add_arguments(args)
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                span.add_error(exc)
                raise
            else:
                if result is not None:
                    span.add_result(result)
                return result
            finally:
                span.end()

        return traced

    # -- connector ---------------------------------------------------------

    def get_connector(self, raise_if_missing: bool = True) -> "Connector":
        """Return the bound connector.

        Raises:
            ORMError: If no connector is bound and ``raise_if_missing`` is set.
        """
        connector = self.connector
        if connector is None and raise_if_missing:
            raise ORMError("missing required connector")
        return connector

    def set_connector(self, connector: "Connector") -> None:
        self.connector = connector

    def create_request(self, request: Any, response: Any = None) -> "Model":
        """Return a copy of this model whose connector calls run in ``request``'s scope.

        The copy is not registered. Its operations are traced as
        ``model:<name>:<method>`` with the request's tracer.
        """
        scope = self.get_connector().create_request(request, response)
        wired = set(self.methods) | set(DISPATCHERS)
        model = object.__new__(type(self))
        for key, value in self.__dict__.items():
            if key in wired:
                continue
            model.__dict__[key] = value
        model.metadata = copy.deepcopy(self.metadata)
        model.mappings = dict(self.mappings)
        model.connector = scope
        model.login = scope.login
        model._request = request
        model._wire_methods(request)
        return model

    # -- metadata and keys -------------------------------------------------

    def get_meta(self, key: str, default: Any = None) -> Any:
        """Look up ``key`` in the connector's metadata section, then the model's."""
        connector = self.get_connector(raise_if_missing=False)
        if connector is not None:
            scoped = self.metadata.get(connector.name)
            if isinstance(scoped, Mapping) and scoped.get(key):
                return scoped[key]
        value = self.metadata.get(key)
        if value:
            return value
        return default

    def set_meta(self, key: str, value: Any) -> None:
        connector = self.get_connector()
        self.metadata.setdefault(connector.name, {})[key] = value

    def keys(self) -> list[str]:
        return list(self.fields)

    def payload_keys(self) -> list[str]:
        return [field.storage_key(key) for key, field in self.fields.items() if not field.custom]

    def translate_keys_for_payload(self, obj: Any) -> Any:
        """Rename logical keys of ``obj`` to storage names and parse values by field type.

        ``obj`` may be a JSON string. Anything that is not a non-empty
        mapping is returned unchanged.
        """
        if isinstance(obj, str):
            try:
                obj = json.loads(obj)
            except json.JSONDecodeError:
                return obj
        if not isinstance(obj, Mapping) or not obj:
            return obj

        by_storage = {field.storage_key(key): key for key, field in self.fields.items()}
        translated: dict[str, Any] = {}
        for key, value in obj.items():
            logical = key if key in self.fields else by_storage.get(key)
            if logical is None:
                translated[key] = value
                continue
            field = self.fields[logical]
            if field.type == FieldType.NUMBER:
                value = parse_number(value)
            elif field.type == FieldType.BOOLEAN:
                value = parse_boolean(value)
            elif field.type == FieldType.DATE:
                value = parse_date(value)
            translated[field.storage_key(logical)] = value
        return translated

    # -- field transforms --------------------------------------------------

    def apply_get(self, name: str, value: Any, instance: Instance) -> Any:
        """Run the get transform for ``name`` (mapping first, then field)."""
        getter = _transform(self.mappings.get(name) or self.fields.get(name), "get")
        if getter is None:
            return value
        return getter(value, name, instance)

    def apply_set(self, name: str, value: Any, instance: Instance) -> Any:
        """Run the set transform for ``name`` (mapping first, then field)."""
        setter = _transform(self.mappings.get(name) or self.fields.get(name), "set")
        if setter is None:
            return value
        result = setter(value, name, instance)
        return value if result is OMIT else result

    # -- instances ---------------------------------------------------------

    def instance(self, values: Mapping[str, Any] | None = None, skip_unknown: bool = False) -> Instance:
        return Instance(self, values, skip_unknown)

    def _prepare(self, options: Any) -> QueryOptions:
        return prepare_query_options(
            options,
            default_options=self.default_query_options,
            translate_regex=bool(self.get_connector().translate_where_regex),
        )

    # -- storage operations ------------------------------------------------

    async def create(self, values: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None) -> Instance | Collection:
        """Validate ``values`` and create the record through the connector.

        A list of value mappings is created as a batch and returned as a
        Collection. A primary key given under the connector's key column is
        passed through to the connector.

        Raises:
            ValidationError: If the values do not satisfy the schema.
        """
        connector = self.get_connector()
        if isinstance(values, (list, tuple)):
            payloads = [self.instance(item).to_payload() for item in values]
            return await connector.create_many(self, payloads)

        values = values or {}
        payload = self.instance(values).to_payload()
        column = connector.get_primary_key_column_name(self)
        if values.get(column) is not None:
            payload[column] = values[column]
        created = await connector.create(self, payload)
        self._logger.debug("instance_created", model=self.name, primary_key=getattr(created, "id", None))
        return created

    async def save(self, instance: Instance | Mapping[str, Any]) -> Instance:
        """Persist pending changes.

        An instance without changes is returned as is, without a connector
        call.

        Raises:
            ORMError: If the instance has been deleted.
        """
        if isinstance(instance, Instance):
            if instance.is_deleted():
                raise ORMError("instance has already been deleted")
            if not instance.is_unsaved():
                return instance
        else:
            values = dict(instance)
            key = values.get(self.get_connector().get_primary_key_column_name(self))
            instance = self.instance(values)
            if key is not None:
                instance.set_primary_key(key)

        result = await self.get_connector().save(self, instance)
        instance.mark_saved()
        if result is not None and result is not instance:
            result.mark_saved()
        self._logger.debug("instance_saved", model=self.name, primary_key=instance.get_primary_key())
        return result

    update = save

    async def delete(self, target: Instance | Any) -> Instance | Collection:
        """Delete an instance, a record by primary key, or a list of keys.

        Raises:
            ORMError: If the instance was already deleted or no record has the key.
        """
        if isinstance(target, Instance):
            if target.is_deleted():
                raise ORMError("instance has already been deleted")
            result = await self.get_connector().delete(self, target)
            target.mark_deleted()
            if result is not None and result is not target:
                result.mark_deleted()
            self._logger.debug("instance_deleted", model=self.name, primary_key=target.get_primary_key())
            return result
        if isinstance(target, (list, tuple)):
            return await self.get_connector().delete_many(self, list(target))

        record = await self.find_one(target)
        if record is None:
            raise ORMError(f"trying to remove, couldn't find record with primary key: {target} for {self.name}")
        return await self.delete(record)

    remove = delete

    async def delete_all(self) -> Any:
        return await self.get_connector().delete_all(self)

    remove_all = delete_all

    async def query(self, options: Mapping[str, Any] | QueryOptions | None = None) -> Collection | Instance | None:
        """Run a query. With ``limit`` 1 the single match (or None) is returned instead of a Collection."""
        prepared = self._prepare(options)
        results = await self.get_connector().query(self, prepared)
        if prepared.limit == 1 and results is not None:
            return results[0] if len(results) else None
        return results

    async def find(self, *args: Any) -> Any:
        """Find all records, query by options, or fetch one by primary key.

        Raises:
            ORMError: If more than one argument is passed.
        """
        if not args:
            return await self.find_all()
        if len(args) > 1:
            raise ORMError("wrong number of parameters passed")
        if isinstance(args[0], (Mapping, QueryOptions)):
            return await self.query(args[0])
        return await self.find_one(args[0])

    fetch = find

    async def find_all(self) -> Collection:
        connector = self.get_connector()
        if connector.implements("find_all"):
            return await connector.find_all(self)
        return await self.query({"limit": FIND_ALL_LIMIT})

    async def find_one(self, key: Any) -> Instance | None:
        return await self.get_connector().find_one(self, key)

    async def count(self, options: Mapping[str, Any] | QueryOptions | None = None) -> int:
        """Count matching records.

        Unlike :meth:`query`, the count is not capped by the default page
        size. An explicit ``limit`` or ``per_page`` still bounds it.
        """
        if isinstance(options, QueryOptions):
            prepared = options
        else:
            raw = dict(options or {})
            distinct = raw.pop("distinct", None)
            bounded = any(str(key).lower() in ("limit", "per_page") for key in raw)
            prepared = self._prepare(raw)
            update: dict[str, Any] = {}
            if distinct:
                update["distinct"] = distinct
            if not bounded:
                update["limit"] = None
            prepared = prepared.model_copy(update=update)
        return await self.get_connector().count(self, prepared)

    async def distinct(self, field: str, options: Mapping[str, Any] | QueryOptions | None = None) -> Collection:
        return await self.get_connector().distinct(self, field, self._prepare(options))

    async def find_and_modify(
        self,
        options: Mapping[str, Any] | QueryOptions | None,
        doc: Mapping[str, Any],
        args: Mapping[str, Any] | None = None,
    ) -> Instance | None:
        """Update the first record matching ``options``; see ``Connector.find_and_modify``."""
        return await self.get_connector().find_and_modify(self, self._prepare(options), doc, args)

    async def upsert(self, key: Any, document: Mapping[str, Any]) -> Instance:
        """Update the record with primary key ``key`` or create it.

        Raises:
            ValidationError: If ``document`` does not satisfy the schema.
        """
        self.instance(document)
        return await self.get_connector().upsert(self, key, dict(document))
