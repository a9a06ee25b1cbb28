"""In-memory reference connector.

Records are kept per model name as Instances. Reads hand out deep copies so
that callers only change stored data through ``save``. ``where`` clauses are
Mongo-style queries evaluated by :mod:`mongoquery`.
"""

import copy
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog
from mongoquery import Query, QueryError

from modelbridge.errors import ORMError
from modelbridge.models.base import csv_to_selection, runtime_type_name
from modelbridge.models.query import QueryOptions
from modelbridge.services.collection import Collection
from modelbridge.services.connector import Connector
from modelbridge.services.instance import Instance

if TYPE_CHECKING:
    from modelbridge.services.model import Model

_MISSING = object()


def _resolve(document: Mapping[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def matches(document: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
    """Return True if ``document`` satisfies the ``where`` clause.

    Raises:
        ORMError: If the clause uses an operator mongoquery does not support.
    """
    if not where:
        return True
    try:
        return bool(Query(where).match(document))
    except QueryError as exc:
        raise ORMError(f"unsupported query: {exc}") from exc


def _sort_spec(order: Mapping[str, Any] | str | None) -> list[tuple[str, int]]:
    if not order:
        return []
    if isinstance(order, str):
        spec = []
        for name in csv_to_selection(order):
            spec.append((name[1:], -1) if name.startswith("-") else (name.lstrip("+"), 1))
        return spec
    return [(name, -1 if int(direction) < 0 else 1) for name, direction in order.items()]


def _sort_key(value: Any) -> tuple[bool, str, Any]:
    # missing and null sort first; other values group by type before comparing
    if value is None or value is _MISSING:
        return (False, "", None)
    return (True, runtime_type_name(value), value)


def _sort_rows(rows: list[tuple[Instance, dict[str, Any]]], order: Mapping[str, Any] | str | None) -> None:
    for name, direction in reversed(_sort_spec(order)):
        try:
            rows.sort(key=lambda row: _sort_key(_resolve(row[1], name)), reverse=direction < 0)
        except TypeError as exc:
            raise ORMError(f"cannot order by {name}: {exc}") from exc


class MemoryConnector(Connector):
    """Connector keeping every record in process memory.

    Primary keys are integers assigned per model, starting at 1, unless the
    created values carry an ``id``.
    """

    name = "memory"
    description = "in-memory reference connector"
    translate_where_regex = True

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        super().__init__(config, logger=logger)
        self._tables: dict[str, list[Instance]] = {}
        self._last_keys: dict[str, int] = {}
        self._lock = threading.Lock()

    def get_table(self, name: str) -> list[Instance]:
        with self._lock:
            return self._tables.setdefault(name, [])

    def _next_key(self, table: str, requested: Any = None) -> Any:
        with self._lock:
            last = self._last_keys.get(table, 0)
            if requested is None:
                last += 1
                self._last_keys[table] = last
                return last
            if isinstance(requested, int) and requested > last:
                self._last_keys[table] = requested
            return requested

    def _find_index(self, table: list[Instance], key: Any) -> int | None:
        if isinstance(key, Instance):
            key = key.get_primary_key()
        wanted = str(key)
        for index, entry in enumerate(table):
            if str(entry.get_primary_key()) == wanted:
                return index
        return None

    def _document(self, model: "Model", instance: Instance) -> dict[str, Any]:
        payload = instance.to_payload()
        document = dict(payload)
        for key, field in model.fields.items():
            storage_key = field.storage_key(key)
            if storage_key in payload:
                document[key] = payload[storage_key]
        document["id"] = instance.get_primary_key()
        return document

    def _project(self, model: "Model", instance: Instance, options: QueryOptions) -> Instance:
        sel = set(options.sel or ())
        unsel = set(options.unsel or ())
        payload = instance.to_payload()
        projected: dict[str, Any] = {}
        for key, field in model.fields.items():
            if field.custom:
                continue
            storage_key = field.storage_key(key)
            named = {key, storage_key}
            if sel and not named & sel:
                continue
            if unsel and named & unsel:
                continue
            projected[storage_key] = payload.get(storage_key)
        partial = model.instance(projected, True)
        partial.set_primary_key(instance.get_primary_key())
        return partial

    async def create(self, model: "Model", values: Mapping[str, Any]) -> Instance:
        instance = model.instance(values, True)
        key = self._next_key(model.name, values.get(self.get_primary_key_column_name(model)))
        instance.set_primary_key(key)
        table = self.get_table(model.name)
        with self._lock:
            table.append(copy.deepcopy(instance))
        self._logger.debug("memory_record_created", model=model.name, primary_key=key)
        return instance

    async def save(self, model: "Model", instance: Instance) -> Instance:
        table = self.get_table(model.name)
        stored = copy.deepcopy(instance)
        stored.mark_saved()
        with self._lock:
            index = self._find_index(table, instance)
            if index is None:
                raise ORMError(
                    f"trying to save, couldn't find record with primary key: {instance.get_primary_key()} for {model.name}"
                )
            table[index] = stored
        self._logger.debug("memory_record_saved", model=model.name, primary_key=instance.get_primary_key())
        return instance

    async def delete(self, model: "Model", instance: Instance) -> Instance | None:
        table = self.get_table(model.name)
        with self._lock:
            index = self._find_index(table, instance)
            removed = table.pop(index) if index is not None else None
        self._logger.debug("memory_record_deleted", model=model.name, primary_key=instance.get_primary_key())
        return removed

    async def delete_all(self, model: "Model") -> int:
        with self._lock:
            count = len(self._tables.get(model.name, ()))
            self._tables[model.name] = []
        self._logger.debug("memory_table_cleared", model=model.name, count=count)
        return count

    async def find_all(self, model: "Model") -> Collection:
        return Collection(model, [copy.deepcopy(entry) for entry in self.get_table(model.name)])

    async def find_one(self, model: "Model", key: Any) -> Instance | None:
        table = self.get_table(model.name)
        index = self._find_index(table, key)
        return copy.deepcopy(table[index]) if index is not None else None

    async def query(self, model: "Model", options: QueryOptions) -> Collection:
        rows = [(entry, self._document(model, entry)) for entry in self.get_table(model.name)]
        rows = [(entry, document) for entry, document in rows if matches(document, options.where)]

        _sort_rows(rows, options.order or getattr(options, "sort", None))

        end = None if options.limit is None else options.skip + options.limit
        rows = rows[options.skip : end]
        if options.sel or options.unsel:
            records = [self._project(model, entry, options) for entry, _ in rows]
        else:
            records = [copy.deepcopy(entry) for entry, _ in rows]
        self._logger.debug("memory_query", model=model.name, matched=len(records))
        return Collection(model, records)
