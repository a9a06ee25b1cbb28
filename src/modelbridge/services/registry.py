"""Process-wide registry of models and connectors.

Models and connectors register themselves on construction so they can be
discovered by name and observed through ``register`` events. The registry
is a lazily created singleton; ``reset`` exists for test isolation and
refuses to run unless explicitly confirmed.
"""

from typing import TYPE_CHECKING

import structlog

from modelbridge.errors import ORMError
from modelbridge.services.events import EventEmitter

if TYPE_CHECKING:
    from modelbridge.services.connector import Connector
    from modelbridge.services.model import Model


class Registry:
    """Ordered lists of registered models and connectors plus their event hubs."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger(__name__)
        self._models: list["Model"] = []
        self._connectors: list["Connector"] = []
        self.model_events = EventEmitter()
        self.connector_events = EventEmitter()

    def register_model(self, model: "Model") -> bool:
        """Add a model and fire ``register``. Returns False if it was already present."""
        if any(existing is model for existing in self._models):
            return False
        self._models.append(model)
        self._logger.debug("model_registered", model=model.name, count=len(self._models))
        self.model_events.emit("register", model)
        return True

    def register_connector(self, connector: "Connector") -> bool:
        """Add a connector and fire ``register``. Returns False if it was already present."""
        if any(existing is connector for existing in self._connectors):
            return False
        self._connectors.append(connector)
        self._logger.debug("connector_registered", connector=connector.name, count=len(self._connectors))
        self.connector_events.emit("register", connector)
        return True

    def get_models(self) -> list["Model"]:
        return list(self._models)

    def get_model(self, name: str) -> "Model | None":
        for model in self._models:
            if model.name == name:
                return model
        return None

    def get_connectors(self) -> list["Connector"]:
        return list(self._connectors)

    def reset(self, *, confirm: bool = False) -> None:
        """Forget every registered model, connector and register listener.

        Raises:
            ORMError: If ``confirm`` is not set.
        """
        if not confirm:
            raise ORMError("registry reset must be confirmed; it is intended for test isolation only")
        self._models.clear()
        self._connectors.clear()
        self.model_events.remove_all_listeners()
        self.connector_events.remove_all_listeners()
        self._logger.debug("registry_reset")


_registry: Registry | None = None


def get_registry() -> Registry:
    """Return the process-wide registry, creating it on first use."""
    global _registry
    if _registry is None:
        _registry = Registry()
    return _registry
