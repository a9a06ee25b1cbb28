import copy
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from modelbridge.errors import ORMError
from modelbridge.services.events import EventEmitter, Listener
from modelbridge.services.instance import Instance

if TYPE_CHECKING:
    from modelbridge.services.model import Model


class Collection(list):
    """A list of Instances of one model, as returned by queries and batch operations."""

    def __init__(self, model: "Model", instances: Iterable[Instance] | None = None) -> None:
        super().__init__()
        self.model = model
        self._events = EventEmitter()
        if instances is not None:
            self.add(list(instances))

    def __deepcopy__(self, memo: dict[int, Any]) -> "Collection":
        clone = Collection(self.model)
        memo[id(self)] = clone
        for instance in self:
            list.append(clone, copy.deepcopy(instance, memo))
        return clone

    def add(self, instance: Instance | Iterable[Instance]) -> "Collection":
        """Append one instance or several.

        Raises:
            ORMError: If an item is not an Instance.
        """
        items = [instance] if isinstance(instance, Instance) else list(instance)
        for item in items:
            if not isinstance(item, Instance):
                raise ORMError(f"collection items must be instances, got {type(item).__name__}")
            self.append(item)
        return self

    def get(self, index: int) -> Instance | None:
        """Return the instance at ``index``, or None when it is out of range."""
        if index < 0 or index >= len(self):
            return None
        return self[index]

    def length(self) -> int:
        return len(self)

    def to_json(self) -> list[dict[str, Any]]:
        return [instance.to_json() for instance in self]

    def to_array(self) -> list[Instance]:
        return list(self)

    def on(self, event: str, listener: Listener) -> Listener:
        return self._events.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self._events.remove_listener(event, listener)

    def emit(self, event: str, *args: Any) -> bool:
        return self._events.emit(event, *args)

    def remove_all_listeners(self, event: str | None = None) -> None:
        self._events.remove_all_listeners(event)

    def __repr__(self) -> str:
        return f"Collection({self.model.name}, {self.to_json()!r})"
