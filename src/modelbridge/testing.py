"""Helpers for test suites that define models and connectors."""

from modelbridge.services.registry import get_registry


def reset_registries() -> None:
    """Forget every registered model, connector and ``register`` listener."""
    get_registry().reset(confirm=True)
