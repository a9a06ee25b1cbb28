"""Unit tests for Instance validation, coercion and change tracking."""

import copy
from datetime import datetime, timezone
from typing import Any

import pytest

from modelbridge.errors import ORMError, ValidationError
from modelbridge.models.base import OMIT
from modelbridge.services.collection import Collection
from modelbridge.services.events import InstanceObserver
from modelbridge.services.instance import Instance
from modelbridge.services.model import Model


def _make_user_model(**extra_fields: Any) -> Model:
    """Create a user model with a required name and a defaulted age."""
    fields = {
        "name": {"type": str, "required": True},
        "age": {"type": int, "default": 10},
    }
    fields.update(extra_fields)
    return Model.define("user", {"fields": fields})


class RecordingObserver(InstanceObserver):
    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []

    def on_change(self, instance: Instance, field: str, new_value: Any, old_value: Any) -> None:
        self.events.append(("change", field, new_value, old_value))

    def on_save(self, instance: Instance) -> None:
        self.events.append(("save",))

    def on_delete(self, instance: Instance) -> None:
        self.events.append(("delete",))


class TestConstruction:
    """Tests for building instances."""

    def test_defaults_are_applied(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        assert user.get("age") == 10
        assert user.age == 10
        assert user.name == "jeff"

    def test_construction_is_not_a_change(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        assert user.is_unsaved() is False
        assert user.get_changed_fields() == {}

    def test_missing_required_field_raises(self) -> None:
        with pytest.raises(ValidationError, match="required field value missing: name") as exc_info:
            _make_user_model().instance({"age": 3})

        assert exc_info.value.field == "name"

    def test_unknown_field_raises(self) -> None:
        with pytest.raises(ValidationError, match="invalid field: nickname"):
            _make_user_model().instance({"name": "jeff", "nickname": "j"})

    def test_skip_unknown_drops_unknown_and_skips_validation(self) -> None:
        user = _make_user_model().instance({"nickname": "j"}, skip_unknown=True)

        assert user.get("name") is None

    def test_model_without_fields_is_rejected(self) -> None:
        class Bare:
            fields = None

        with pytest.raises(ORMError, match='missing model "fields" property'):
            Instance(Bare())

    def test_id_is_ignored(self) -> None:
        user = _make_user_model().instance({"name": "jeff", "id": 12})

        assert user.get_primary_key() is None

    def test_custom_methods_are_bound_to_instance(self) -> None:
        def greeting(self) -> str:
            return f"hello {self.get('name')}"

        model = Model.define("user", {"fields": {"name": {"type": str}}, "greeting": greeting})

        assert model.instance({"name": "jeff"}).greeting() == "hello jeff"


class TestGetAndSet:
    """Tests for field access."""

    def test_unknown_field_get_raises(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        with pytest.raises(ORMError, match="field not found: nickname"):
            user.get("nickname")

    def test_set_same_value_is_not_a_change(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.set("name", "jeff")

        assert user.is_unsaved() is False

    def test_set_different_value_is_tracked(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.set("name", "nolan")

        assert user.is_unsaved() is True
        assert user.get_changed_fields() == {"name": "nolan"}

    def test_attribute_assignment_routes_through_set(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.age = 12

        assert user.get_changed_fields() == {"age": 12}

    def test_numeric_string_is_coerced(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.set("age", "10")

        assert user.get("age") == 10
        assert isinstance(user.get("age"), int)

    def test_float_string_is_coerced(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.set("age", "10.5")

        assert user.get("age") == 10.5

    def test_non_numeric_string_raises(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        with pytest.raises(ValidationError, match=r"invalid type \(string\) for field: age. Should be number"):
            user.set("age", "ten")

    @pytest.mark.parametrize("value", ["1_000", "1_0.5"])
    def test_digit_separators_are_rejected(self, value: str) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        with pytest.raises(ValidationError, match="Should be number"):
            user.set("age", value)

    def test_none_falls_back_to_default(self) -> None:
        user = _make_user_model().instance({"name": "jeff", "age": 40})

        user.set("age", None)

        assert user.get("age") == 10

    def test_none_clears_field_without_default(self) -> None:
        user = _make_user_model(score={"type": int}).instance({"name": "jeff", "score": 5})

        user.set("score", None)

        assert user.get("score") is None
        assert user.is_unsaved() is True
        assert user.get_changed_fields() == {"score": None}

    def test_none_on_required_field_raises(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        with pytest.raises(ValidationError, match="required field value missing: name"):
            user.set("name", None)

    def test_get_returns_copies_of_composites(self) -> None:
        model = _make_user_model(tags={"type": list})
        user = model.instance({"name": "jeff", "tags": ["a"]})

        user.get("tags").append("b")

        assert user.get("tags") == ["a"]
        user.set("tags", ["a", "b"])
        assert user.is_unsaved() is True

    def test_internal_keys_are_ignored(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.set({"_dirty": True, "name": "jeff"})

        assert user.is_unsaved() is False

    def test_mapping_set_applies_each_pair(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.set({"name": "nolan", "age": 33})

        assert user.values() == {"name": "nolan", "age": 33}

    def test_change_marks_dirty_without_difference(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        user.change("name", "jeff")

        assert user.is_unsaved() is True
        assert user.get_changed_fields() == {"name": "jeff"}


class TestCoercion:
    """Tests for type coercion by declared field type."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1, True), (0, False), ("yes", True), ("no", False), ("true", True), ("0", False)],
    )
    def test_boolean(self, value: Any, expected: bool) -> None:
        model = Model.define("flag", {"fields": {"on": {"type": bool}}})

        assert model.instance({"on": value}).get("on") is expected

    def test_boolean_rejects_other_strings(self) -> None:
        model = Model.define("flag", {"fields": {"on": {"type": bool}}})

        with pytest.raises(ValidationError, match="Should be boolean"):
            model.instance({"on": "maybe"})

    def test_date_from_epoch_milliseconds(self) -> None:
        model = Model.define("event", {"fields": {"at": {"type": datetime}}})

        event = model.instance({"at": 0})

        assert event.get("at") == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_date_from_string(self) -> None:
        model = Model.define("event", {"fields": {"at": {"type": datetime}}})

        assert model.instance({"at": "2024-05-01T10:00:00"}).get("at") == datetime(2024, 5, 1, 10)

    def test_unparsable_date_becomes_none(self) -> None:
        model = Model.define("event", {"fields": {"at": {"type": datetime}}})

        assert model.instance({"at": "someday"}).get("at") is None

    def test_object_accepts_empty_string(self) -> None:
        model = Model.define("doc", {"fields": {"body": {"type": dict}}})

        assert model.instance({"body": ""}).get("body") == {}

    def test_array_requires_a_list(self) -> None:
        model = Model.define("doc", {"fields": {"tags": {"type": list}}})

        with pytest.raises(ValidationError, match="Should be array"):
            model.instance({"tags": "a,b"})


class TestValidation:
    """Tests for lengths and validators."""

    def test_minlength(self) -> None:
        model = _make_user_model(code={"minlength": 3})

        with pytest.raises(ValidationError, match="field value must be at least 3 characters long: code"):
            model.instance({"name": "jeff", "code": "ab"})

    def test_maxlength(self) -> None:
        model = _make_user_model(code={"maxlength": 3})

        with pytest.raises(ValidationError, match="field value must be at most 3 characters long: code"):
            model.instance({"name": "jeff", "code": "abcd"})

    def test_length(self) -> None:
        model = _make_user_model(code={"length": 2})

        with pytest.raises(ValidationError, match="field value must be exactly 2 characters long: code"):
            model.instance({"name": "jeff", "code": "abc"})

    def test_regex_validator(self) -> None:
        model = _make_user_model(code={"validator": r"^[a-z]+$"})

        model.instance({"name": "jeff", "code": "abc"})
        with pytest.raises(ValidationError, match='field "code" failed validation using expression'):
            model.instance({"name": "jeff", "code": "ABC"})

    def test_function_validator_message(self) -> None:
        def even(value: int) -> str | None:
            return None if value % 2 == 0 else "age must be even"

        model = _make_user_model(age={"type": int, "validator": even})

        with pytest.raises(ValidationError, match="age must be even"):
            model.instance({"name": "jeff", "age": 3})

    def test_function_validator_exception_is_wrapped(self) -> None:
        def explode(value: Any) -> None:
            raise RuntimeError("boom")

        model = _make_user_model(code={"validator": explode})

        with pytest.raises(ValidationError, match="boom") as exc_info:
            model.instance({"name": "jeff", "code": "x"})

        assert exc_info.value.field == "code"

    def test_validator_skipped_for_missing_optional_value(self) -> None:
        model = _make_user_model(code={"validator": r"^[a-z]+$"})

        assert model.instance({"name": "jeff"}).get("code") is None


class TestReadonly:
    """Tests for read-only fields."""

    def test_set_readonly_raises(self) -> None:
        model = _make_user_model(created={"type": str, "readonly": True})
        user = model.instance({"name": "jeff"})

        with pytest.raises(ValidationError, match="cannot set read-only field: created"):
            user.set("created", "today")

    def test_trusted_hydration_may_set_readonly(self) -> None:
        model = _make_user_model(created={"type": str, "readonly": True})

        user = model.instance({"name": "jeff", "created": "today"}, skip_unknown=True)

        assert user.get("created") == "today"

    def test_values_excludes_readonly(self) -> None:
        model = _make_user_model(created={"type": str, "readonly": True})
        user = model.instance({"name": "jeff", "created": "today"}, skip_unknown=True)

        assert user.values() == {"name": "jeff", "age": None}

    def test_dirty_readonly_is_returned_by_dirty_values(self) -> None:
        model = _make_user_model(created={"type": str, "readonly": True})
        user = model.instance({"name": "jeff"})

        user.change("created", "today")

        assert user.values(dirty_only=True) == {"created": "today"}


class TestTransforms:
    """Tests for get/set transforms and projections."""

    def _make_path_model(self) -> Model:
        def split(value: Any, name: str, instance: Instance) -> Any:
            if value is None:
                return OMIT
            first, second = value.split("/")
            return {"a": first, "b": second}

        def join(value: Any, name: str, instance: Instance) -> Any:
            return f"{value['a']}/{value['b']}" if isinstance(value, dict) else value

        return Model.define(
            "path",
            {"fields": {"name": {"type": str}}, "mappings": {"name": {"get": split, "set": join}}},
        )

    def test_get_transform(self) -> None:
        path = self._make_path_model().instance({"name": "foo/bar"}, skip_unknown=True)

        assert path.get("name") == {"a": "foo", "b": "bar"}
        assert path.to_json() == {"name": {"a": "foo", "b": "bar"}}

    def test_set_transform_stores_storage_form(self) -> None:
        path = self._make_path_model().instance({"name": "foo/bar"}, skip_unknown=True)

        path.set("name", {"a": "bar", "b": "foo"})

        assert path.get_changed_fields() == {"name": "bar/foo"}
        assert path.to_payload() == {"name": "bar/foo"}

    def test_omit_drops_key_from_json(self) -> None:
        path = self._make_path_model().instance()

        assert path.to_json() == {}

    def test_transform_receives_name_and_instance(self) -> None:
        seen: list[tuple[str, Any]] = []

        def spy(value: Any, name: str, instance: Instance) -> Any:
            seen.append((name, instance.get("bar")))
            return value

        model = Model.define(
            "spy",
            {"fields": {"name": {"type": str}, "bar": {"type": str}}, "mappings": {"name": {"get": spy}}},
        )
        model.instance({"name": "foo", "bar": "baz"}).to_json()

        assert ("name", "baz") in seen

    def test_field_level_get_transform(self) -> None:
        model = Model.define("shout", {"fields": {"word": {"type": str, "get": lambda v, n, i: v.upper()}}})

        assert model.instance({"word": "hi"}).get("word") == "HI"


class TestProjections:
    """Tests for to_json and to_payload."""

    def test_to_json_includes_primary_key(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})
        user.set_primary_key(1)

        assert user.to_json() == {"id": 1, "name": "jeff", "age": 10}
        assert user.id == 1

    def test_renamed_field_uses_storage_name(self) -> None:
        model = Model.define("user", {"fields": {"name": {"type": str, "name": "thename"}}})

        user = model.instance({"thename": "Jeff"})

        assert user.get("name") == "Jeff"
        assert user.to_json() == {"thename": "Jeff"}
        assert user.to_payload() == {"thename": "Jeff"}

    def test_payload_excludes_custom_fields(self) -> None:
        model = _make_user_model(
            label={"type": str, "custom": True, "get": lambda v, n, i: f"{i.get('name')}!"},
        )

        user = model.instance({"name": "jeff"})

        assert user.to_payload() == {"name": "jeff", "age": 10}
        assert user.to_json()["label"] == "jeff!"

    def test_partial_selection_omits_unselected_fields(self) -> None:
        model = _make_user_model(
            label={"type": str, "custom": True, "get": lambda v, n, i: "custom"},
        )

        user = model.instance({"name": "jeff"}, skip_unknown=True)
        user.set_primary_key(7)

        assert user.to_json() == {"id": 7, "name": "jeff", "label": "custom"}

    def test_model_serialize_hooks(self) -> None:
        def serialize(obj: dict[str, Any], instance: Instance, model: Model) -> dict[str, Any]:
            return {**obj, "kind": model.name}

        def deserialize(obj: dict[str, Any], instance: Instance, model: Model) -> dict[str, Any]:
            return {key.upper(): value for key, value in obj.items()}

        model = Model.define(
            "user",
            {"fields": {"name": {"type": str}}, "serialize": serialize, "deserialize": deserialize},
        )
        user = model.instance({"name": "jeff"})

        assert user.to_json() == {"name": "jeff", "kind": "user"}
        assert user.to_payload() == {"NAME": "jeff"}

    def test_repr_shows_json(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})

        assert repr(user) == "<user {'name': 'jeff', 'age': 10}>"


class TestObservers:
    """Tests for change, save and delete notifications."""

    def test_on_change_callback(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})
        seen: list[tuple[Any, Any]] = []
        user.on_change("name", lambda new, old: seen.append((new, old)))

        user.set("name", "nolan")
        user.set("age", 3)

        assert seen == [("nolan", "jeff")]

    def test_lifecycle_notifications(self) -> None:
        user = _make_user_model().instance({"name": "jeff"})
        observer = user.observe(RecordingObserver())

        user.set("age", 11)
        user.mark_saved()
        user.mark_deleted()
        user.unobserve(observer)
        user.set("age", 12)

        assert observer.events == [("change", "age", 11, 10), ("save",), ("delete",)]
        assert user.is_deleted() is True


class TestLinkage:
    """Tests for fields linked to another model."""

    def test_linked_instance(self) -> None:
        person_model = Model.define("person", {"fields": {"name": {"type": str}, "age": {"type": int}}})
        contact_model = Model.define("contact", {"fields": {"person": {"type": dict, "model": "person"}}})
        person = person_model.instance({"name": "jeff", "age": 10})

        contact = contact_model.instance({"person": person})

        assert contact.get("person").name == "jeff"
        assert contact.get("person").age == 10

    def test_linked_mapping_is_hydrated(self) -> None:
        Model.define("person", {"fields": {"name": {"type": str}}})
        contact_model = Model.define("contact", {"fields": {"person": {"type": dict, "model": "person"}}})

        contact = contact_model.instance({"person": {"name": "jeff"}})

        assert isinstance(contact.get("person"), Instance)
        assert contact.to_json() == {"person": {"name": "jeff"}}

    def test_linked_list_becomes_collection(self) -> None:
        Model.define("person", {"fields": {"name": {"type": str}}})
        team_model = Model.define("team", {"fields": {"members": {"type": list, "model": "person"}}})

        team = team_model.instance({"members": [{"name": "jeff"}, {"name": "nolan"}]})

        members = team.get("members")
        assert isinstance(members, Collection)
        assert [member.name for member in members] == ["jeff", "nolan"]


def test_deepcopy_keeps_model_and_state() -> None:
    model = _make_user_model()
    user = model.instance({"name": "jeff"})
    user.set_primary_key(3)
    user.set("age", 4)

    clone = copy.deepcopy(user)

    assert clone.get_model() is model
    assert clone.get_primary_key() == 3
    assert clone.get_changed_fields() == {"age": 4}
    clone.set("name", "nolan")
    assert user.get("name") == "jeff"
