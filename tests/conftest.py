"""Shared fixtures."""

from collections.abc import Iterator

import pytest

from modelbridge.testing import reset_registries


@pytest.fixture(autouse=True)
def isolated_registry() -> Iterator[None]:
    """Start and finish every test with empty model and connector registries."""
    reset_registries()
    yield
    reset_registries()
