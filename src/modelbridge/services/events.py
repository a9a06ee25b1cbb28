"""Event plumbing for registries, collections and instances."""

from collections import defaultdict
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from modelbridge.services.instance import Instance

Listener = Callable[..., Any]


class EventEmitter:
    """Name-keyed listener lists with synchronous dispatch."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners[event].append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        def _once(*args: Any) -> Any:
            self.remove_listener(event, _once)
            return listener(*args)

        return self.on(event, _once)

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    off = remove_listener

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listeners(self, event: str) -> list[Listener]:
        return list(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener for ``event`` in registration order.

        Returns:
            True if at least one listener was called.
        """
        listeners = self.listeners(event)
        for listener in listeners:
            listener(*args)
        return bool(listeners)


class InstanceObserver:
    """Receives lifecycle notifications from an Instance.

    Subclass and override the hooks you need; the defaults do nothing.
    """

    def on_change(self, instance: "Instance", field: str, new_value: Any, old_value: Any) -> None:
        pass

    def on_save(self, instance: "Instance") -> None:
        pass

    def on_delete(self, instance: "Instance") -> None:
        pass


class FieldChangeObserver(InstanceObserver):
    """Adapts a plain callable to change notifications for a single field."""

    def __init__(self, field: str, callback: Callable[[Any, Any], Any]) -> None:
        self.field = field
        self.callback = callback

    def on_change(self, instance: "Instance", field: str, new_value: Any, old_value: Any) -> None:
        if field == self.field:
            self.callback(new_value, old_value)
