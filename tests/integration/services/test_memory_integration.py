"""End-to-end tests for models backed by the in-memory connector.

These exercise the full path from a model definition through validation,
connect-on-demand, request scoping and query normalization down to the
stored records.
"""

from typing import Any

import pytest

from modelbridge.errors import ValidationError
from modelbridge.services.memory import MemoryConnector
from modelbridge.services.model import Model


@pytest.fixture
def connector() -> MemoryConnector:
    return MemoryConnector()


@pytest.fixture
def user_model(connector: MemoryConnector) -> Model:
    return Model.define(
        "user",
        {
            "fields": {
                "name": {"type": str, "required": True},
                "age": {"type": int, "default": 10},
            },
            "connector": connector,
        },
    )


@pytest.mark.slow
class TestUserLifecycle:
    """A record's life from create to remove."""

    async def test_create_find_remove(self, user_model: Model, connector: MemoryConnector) -> None:
        """Created records are findable and gone once removed."""
        user = await user_model.create({"name": "jeff"})

        assert user.get_primary_key() is not None
        assert user.age == 10
        assert connector.is_connected() is True

        found = await user_model.find({"name": "jeff"})
        assert len(found) == 1
        assert found[0].id == user.id

        await user_model.remove(user)

        assert not await user_model.find_one(user.get_primary_key())

    async def test_change_tracking_survives_round_trip(self, user_model: Model) -> None:
        """Only real changes reach the connector and stored data stays isolated."""
        user = await user_model.create({"name": "jeff", "age": 30})

        user.set("age", 30)
        assert user.is_unsaved() is False

        user.set("age", "31")
        assert user.get_changed_fields() == {"age": 31}
        await user.save()

        stored = await user_model.find_one(user.id)
        assert stored.to_json() == {"id": user.id, "name": "jeff", "age": 31}

    async def test_invalid_update_leaves_store_untouched(self, user_model: Model) -> None:
        """A rejected value never reaches storage."""
        user = await user_model.create({"name": "jeff"})

        with pytest.raises(ValidationError):
            user.set("age", "old")

        assert (await user_model.find_one(user.id)).age == 10

    async def test_request_scoped_queries(self, user_model: Model) -> None:
        """A request-scoped model sees the same data as the shared one."""

        class Request:
            tracer = None

        await user_model.create([{"name": "jeff", "age": 30}, {"name": "nolan", "age": 25}])
        scoped = user_model.create_request(Request())

        results = await scoped.query({"where": {"age": {"$gt": 26}}, "sel": "name"})

        assert results.to_json() == [{"id": 1, "name": "jeff"}]
        assert await scoped.count() == 2


@pytest.mark.slow
class TestRenamedFields:
    """Fields stored under a different name than they are declared with."""

    @pytest.fixture
    def contact_model(self, connector: MemoryConnector) -> Model:
        return Model.define(
            "contact",
            {"fields": {"name": {"type": str, "name": "thename"}}, "connector": connector},
        )

    async def test_json_and_payload_use_storage_name(self, contact_model: Model) -> None:
        """Both projections key the value by its storage name."""
        contact = await contact_model.create({"name": "Jeff"})

        assert contact.to_json() == {"id": contact.id, "thename": "Jeff"}
        assert contact.to_payload() == {"thename": "Jeff"}
        assert contact.get("name") == "Jeff"

    async def test_translate_keys_for_payload(self, contact_model: Model) -> None:
        """Logical keys map to storage names."""
        assert contact_model.translate_keys_for_payload({"name": 1}) == {"thename": 1}

    async def test_query_by_either_name(self, contact_model: Model) -> None:
        """Queries accept the logical or the storage name."""
        await contact_model.create({"name": "Jeff"})

        by_logical: Any = await contact_model.find({"name": "Jeff"})
        by_storage: Any = await contact_model.find({"thename": "Jeff"})

        assert len(by_logical) == len(by_storage) == 1
