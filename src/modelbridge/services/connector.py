"""Backend adapter contract for models.

A concrete connector subclasses :class:`Connector` and implements the
storage operations it supports. The base class supplies

* stubs for the required operations that raise ``ORMError("not implemented")``,
* generic ``find_and_modify``, ``distinct``, ``count``, ``upsert``,
  ``create_many`` and ``delete_many`` built on the required operations,
* the connect lifecycle (metadata, config, connection, schema), run once and
  triggered on demand by the first storage call,
* request scoping through :meth:`Connector.create_request`.
"""

import asyncio
import copy
import functools
import inspect
from collections.abc import Callable, Mapping, Sequence
from types import MethodType
from typing import TYPE_CHECKING, Any

import structlog

from modelbridge.errors import ORMError
from modelbridge.models.base import deep_merge
from modelbridge.models.field import ConfigField
from modelbridge.models.query import QueryOptions
from modelbridge.services.collection import Collection
from modelbridge.services.events import Listener
from modelbridge.services.instance import Instance
from modelbridge.services.registry import get_registry

if TYPE_CHECKING:
    from modelbridge.services.model import Model
    from modelbridge.services.request_scope import ConnectorRequestScope

# storage operations that connect on first use
CONNECTOR_METHODS: tuple[str, ...] = (
    "create",
    "save",
    "upsert",
    "find_and_modify",
    "find_one",
    "find_all",
    "find",
    "query",
    "delete",
    "delete_all",
    "distinct",
    "count",
    "create_many",
    "delete_many",
)

# operations with a fallback built on the required ones
GENERIC_OPERATIONS = frozenset({"upsert", "find_and_modify", "distinct", "count", "create_many", "delete_many"})

_IDENTITY_KEYS = ("description", "version", "name", "author")


def not_implemented(func: Callable[..., Any]) -> Callable[..., Any]:
    """Mark a base-class stub so ``Connector.supports`` can tell it from a real implementation."""
    func.__not_implemented__ = True
    return func


def connect_on_demand(func: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap a storage coroutine so that it connects the connector before running."""

    @functools.wraps(func)
    async def wrapper(self: "Connector", *args: Any, **kwargs: Any) -> Any:
        if not self.connected:
            await self.connect()
        return await func(self, *args, **kwargs)

    wrapper.__connect_on_demand__ = True
    return wrapper


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class _ClassOrInstanceMethod:
    """Bind to the class when looked up on it, to the instance otherwise."""

    def __init__(self, func: Callable[..., Any]) -> None:
        self.func = func
        functools.update_wrapper(self, func)

    def __get__(self, instance: Any, owner: type) -> Callable[..., Any]:
        return MethodType(self.func, owner if instance is None else instance)


class Connector:
    """Base class for storage adapters.

    Class attributes describe the connector and its defaults; constructor
    ``config`` is deep-merged over the class-level ``config``.

    Attributes:
        name: Required identifier, may come from ``pkginfo["name"]``.
        config: Default configuration.
        metadata: Static metadata; ``metadata["fields"]`` declares config keys.
        default_config: Recommended configuration, logged when config is invalid.
        id_attribute: Storage column holding the primary key (default ``id``).
        translate_where_regex: Rewrite ``$like`` operators into ``$regex``.
    """

    name: str | None = None
    version: str | None = None
    description: str | None = None
    author: str | None = None
    pkginfo: Mapping[str, Any] | None = None
    config: Mapping[str, Any] = {}
    metadata: Mapping[str, Any] | None = None
    default_config: str | None = None
    id_attribute: str | None = None
    translate_where_regex: bool = False

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for method in CONNECTOR_METHODS:
            func = cls.__dict__.get(method)
            if inspect.iscoroutinefunction(func) and not getattr(func, "__connect_on_demand__", False):
                setattr(cls, method, connect_on_demand(func))

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._logger = logger or structlog.get_logger(__name__)
        pkginfo = type(self).pkginfo or {}
        for key in _IDENTITY_KEYS:
            if not getattr(self, key, None) and key in pkginfo:
                setattr(self, key, pkginfo[key])

        self.config = deep_merge(type(self).config, config)
        class_metadata = type(self).metadata
        self.metadata = copy.deepcopy(dict(class_metadata)) if class_metadata is not None else None
        self.connected = False
        self._connect_lock = asyncio.Lock()

        if not self.name:
            raise ORMError("connector is required to have a name")
        get_registry().register_connector(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} connected={self.connected}>"

    # -- registry ----------------------------------------------------------

    @staticmethod
    def get_connectors() -> list["Connector"]:
        return get_registry().get_connectors()

    @staticmethod
    def on(event: str, listener: Listener) -> Listener:
        return get_registry().connector_events.on(event, listener)

    @staticmethod
    def remove_listener(event: str, listener: Listener) -> None:
        get_registry().connector_events.remove_listener(event, listener)

    @staticmethod
    def remove_all_listeners(event: str | None = None) -> None:
        get_registry().connector_events.remove_all_listeners(event)

    # -- subclassing from mappings ------------------------------------------

    @_ClassOrInstanceMethod
    def extend(target: "type[Connector] | Connector", impl: Mapping[str, Any]) -> "type[Connector]":
        """Build a connector subclass from an implementation mapping.

        Keys become class attributes, ``connect`` is taken as the
        ``open_connection`` hook, and ``config``/``metadata`` are deep-merged
        over the parent's. Called on an instance, the instance's identity,
        config and metadata become the defaults of the new class.
        """
        if isinstance(target, Connector):
            base = type(target)
            inherited: dict[str, Any] = {key: getattr(target, key) for key in _IDENTITY_KEYS}
            inherited["config"] = target.config
            inherited["metadata"] = target.metadata
        else:
            base = target
            inherited = {}

        attrs = {key: value for key, value in inherited.items() if value is not None}
        for key, value in impl.items():
            attrs["open_connection" if key == "connect" else key] = value
        for key in ("config", "metadata"):
            parent = inherited.get(key) if key in inherited else getattr(base, key)
            if key in impl or parent:
                attrs[key] = deep_merge(parent, impl.get(key))

        return type(base.__name__, (base,), attrs)

    # -- lifecycle ---------------------------------------------------------

    def is_connected(self) -> bool:
        return self.connected

    async def fetch_metadata(self) -> Mapping[str, Any] | None:
        """Return metadata discovered at connect time. Override to provide some."""
        return None

    async def fetch_config(self) -> Mapping[str, Any] | None:
        """Return configuration loaded at connect time. Override to provide some."""
        return None

    async def open_connection(self) -> None:
        """Open the backend connection. Override to connect to a real backend."""

    async def fetch_schema(self) -> Any:
        """Return the backend schema discovered at connect time. Override to provide one."""
        return None

    async def connect(self) -> None:
        """Run the connect lifecycle once.

        Steps run in order and the first failure aborts the rest, leaving the
        connector disconnected so a later call retries:

        1. ``fetch_metadata`` merged into ``metadata``
        2. ``fetch_config`` merged under ``config``, then ``validate_config``
        3. ``open_connection``
        4. ``fetch_schema`` merged into ``metadata["schema"]``

        Raises:
            ORMError: If the configuration is invalid.
        """
        async with self._connect_lock:
            if self.connected:
                return
            self._logger.debug("connector_connect_started", connector=self.name)
            try:
                await self._run_lifecycle()
            except Exception as exc:
                self._logger.warning("connector_connect_failed", connector=self.name, error=str(exc))
                raise
            self.connected = True
            self._logger.info("connector_connected", connector=self.name)

    async def _run_lifecycle(self) -> None:
        metadata = await self.fetch_metadata()
        if metadata:
            self.metadata = deep_merge(self.metadata, metadata)
        elif self.metadata is None:
            self.metadata = {"schema": None}

        fetched_config = await self.fetch_config()
        if fetched_config:
            self.config = deep_merge(fetched_config, self.config)
        self.validate_config()

        await self.open_connection()

        schema = await self.fetch_schema()
        if schema:
            self.metadata = deep_merge(self.metadata, {"schema": schema})

    async def disconnect(self) -> None:
        self.connected = False
        self._logger.debug("connector_disconnected", connector=self.name)

    def validate_config(self) -> None:
        """Check ``config`` against the declarations in ``metadata["fields"]``.

        Missing optional keys with a default are filled in.

        Raises:
            ORMError: If a required key is missing, a validator is malformed
                or a value does not match its validator.
        """
        declared = (self.metadata or {}).get("fields") or []
        for entry in declared:
            field = entry if isinstance(entry, ConfigField) else ConfigField.model_validate(entry)
            value = self.config.get(field.name)
            if not value:
                if field.required:
                    self.log_default_config()
                    raise ORMError(f"{field.name} is a required config property for the {self.name} connector!")
                if field.default is not None:
                    self.config[field.name] = field.default
                continue
            validator = field.compile_validator(self.name)
            if validator is not None and not validator.search(str(value)):
                self.log_default_config()
                raise ORMError(f'The value "{value}" for {field.name} is invalid for the {self.name} connector!')

    def log_default_config(self) -> None:
        if self.default_config:
            self._logger.info(
                "connector_default_config",
                connector=self.name,
                default_config=self.default_config,
                hint="copy this configuration into your settings and adjust it as needed",
            )

    # -- request scoping ---------------------------------------------------

    def create_request(self, request: Any, response: Any = None) -> "ConnectorRequestScope":
        from modelbridge.services.request_scope import ConnectorRequestScope

        return ConnectorRequestScope(request, response, self)

    # -- capabilities ------------------------------------------------------

    def implements(self, method: str) -> bool:
        func = getattr(self, method, None)
        return func is not None and not getattr(func, "__not_implemented__", False)

    def supports(self, operation: str) -> bool:
        """Return True if ``operation`` can be dispatched to this connector."""
        if operation in GENERIC_OPERATIONS:
            return True
        if operation == "find_all":
            return self.implements("find_all") or self.implements("query")
        return self.implements(operation)

    # -- primary key -------------------------------------------------------

    def get_primary_key_column_name(self, model: "Model | None" = None) -> str:
        return self.id_attribute or "id"

    def get_primary_key(self, model: "Model", record: Any) -> Any:
        column = self.get_primary_key_column_name(model)
        if isinstance(record, Mapping):
            return record.get(column)
        return getattr(record, column, None)

    # -- required operations -----------------------------------------------

    @not_implemented
    async def create(self, model: "Model", values: Mapping[str, Any]) -> Instance:
        raise ORMError("not implemented")

    @not_implemented
    async def save(self, model: "Model", instance: Instance) -> Instance:
        raise ORMError("not implemented")

    @not_implemented
    async def delete(self, model: "Model", instance: Instance) -> Instance:
        raise ORMError("not implemented")

    @not_implemented
    async def delete_all(self, model: "Model") -> int:
        raise ORMError("not implemented")

    @not_implemented
    async def find(self, model: "Model", *args: Any) -> Any:
        raise ORMError("not implemented")

    @not_implemented
    async def find_all(self, model: "Model") -> Collection:
        raise ORMError("not implemented")

    @not_implemented
    async def find_one(self, model: "Model", key: Any) -> Instance | None:
        raise ORMError("not implemented")

    @not_implemented
    async def query(self, model: "Model", options: QueryOptions) -> Collection:
        raise ORMError("not implemented")

    # -- generic operations ------------------------------------------------

    async def find_and_modify(
        self,
        model: "Model",
        options: QueryOptions,
        doc: Mapping[str, Any],
        args: Mapping[str, Any] | None = None,
    ) -> Instance | None:
        """Update the first record matching ``options`` with ``doc``.

        Args:
            model: Model to search.
            options: Normalized query options; only the first match is used.
            doc: Field values to apply.
            args: ``new`` returns the updated record instead of the original,
                ``upsert`` creates the record when nothing matches.

        Returns:
            The original or updated record, the created record on upsert, or
            None when nothing matched.
        """
        args = args or {}
        results = await self.query(model, options.with_limit(1))
        if results:
            record = results[0]
            original = copy.deepcopy(record)
            record.set(doc)
            saved = await self.save(model, record)
            return saved if args.get("new") else original
        if args.get("upsert"):
            created = await self.create(model, model.instance(doc).to_payload())
            return created if args.get("new") else None
        return None

    async def distinct(self, model: "Model", field: str, options: QueryOptions) -> Collection:
        """Return the first record for each distinct value of ``field``.

        ``field`` may list several comma-separated fields, in which case the
        combination of their values is what must be distinct.
        """
        results = await self.query(model, options)
        keys = [key.strip() for key in field.split(",")]
        found: set[str] = set()
        unique = Collection(model)
        for row in results:
            marker = ",".join(str(row.get(key)) for key in keys)
            if marker in found:
                continue
            found.add(marker)
            unique.append(row)
        return unique

    async def count(self, model: "Model", options: QueryOptions) -> int:
        """Count matching records, or their distinct values of ``options.distinct``."""
        results = await self.query(model, options)
        if not options.distinct:
            return len(results)
        return len({str(row.get(options.distinct)) for row in results})

    async def upsert(self, model: "Model", key: Any, document: Mapping[str, Any]) -> Instance:
        """Update the record with primary key ``key``, or create it with that key."""
        record = await model.find_one(key)
        if record is None:
            return await model.create({**document, "id": key})
        record.set(document)
        await record.save()
        return record

    async def create_many(self, model: "Model", payloads: Sequence[Mapping[str, Any]]) -> Collection:
        created = Collection(model)
        for payload in payloads:
            created.append(await self.create(model, payload))
        return created

    async def delete_many(self, model: "Model", keys: Sequence[Any]) -> Collection:
        """Delete each record by primary key, skipping keys that are not found."""
        removed = Collection(model)
        for key in keys:
            record = await self.find_one(model, key)
            if record is None:
                continue
            removed.append(await self.delete(model, record))
        return removed


for _method in CONNECTOR_METHODS:
    setattr(Connector, _method, connect_on_demand(getattr(Connector, _method)))
del _method
