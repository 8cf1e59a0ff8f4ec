"""
Unit tests for entity envelopes.

Tests cover:
- Construction and validation
- Property access
- Deriving modified entities
- Wire conversion (storage names, index exclusion, unknown properties)
"""

import pytest

from docstore_sdk.entity import Entity
from docstore_sdk.errors import PropertyNotFoundError, SchemaMismatchError
from docstore_sdk.identifier import Identifier
from docstore_sdk.schema import KeyType, KindDef, prop


@pytest.fixture
def task_kind():
    """Task kind keyed under a User."""
    return KindDef(
        name="Task",
        properties=(
            prop("title", "str", required=True),
            prop("owner", "str", indexed=True),
            prop("done", "bool", storage_name="is_done", default=False),
            prop("tags", "list_str"),
        ),
        ancestors=("User",),
    )


@pytest.fixture
def user():
    return Identifier.of("User", 42)


class TestConstruction:
    """Tests for building entities."""

    def test_new_is_pending_with_defaults(self, task_kind, user):
        """A new entity has a pending identifier and declared defaults."""
        task = Entity.new(task_kind, title="Write docs", parent=user)

        assert task.identifier.is_pending
        assert task.identifier.parent == user
        assert task.version is None
        assert task.property("done") is False

    def test_new_with_explicit_key(self, task_kind, user):
        """An explicit key produces an assigned identifier."""
        task = Entity.new(task_kind, {"title": "t"}, parent=user, key=7)

        assert task.identifier.id == 7

    def test_new_with_namespace(self):
        """Top-level entities can be placed in a namespace."""
        kind = KindDef("Setting", (prop("value", "str"),), key_type=KeyType.NAME)

        setting = Entity.new(kind, key="theme", namespace="tenant-a", value="dark")

        assert setting.identifier.namespace == "tenant-a"
        assert setting.identifier.name == "theme"

    def test_missing_required_property(self, task_kind, user):
        """A required property must be present."""
        with pytest.raises(SchemaMismatchError, match="title"):
            Entity.new(task_kind, parent=user)

    def test_wrong_key_shape(self, task_kind):
        """Entities of a kind with ancestors need a parent."""
        with pytest.raises(SchemaMismatchError):
            Entity.new(task_kind, title="t")

    def test_wrong_value_type(self, task_kind, user):
        """Values must match the declared kind."""
        with pytest.raises(SchemaMismatchError):
            Entity.new(task_kind, title=5, parent=user)

    def test_properties_are_read_only(self, task_kind, user):
        """Entities are immutable values."""
        task = Entity.new(task_kind, title="t", parent=user)

        with pytest.raises(TypeError):
            task.properties["title"] = "changed"


class TestAccess:
    """Tests for reading and deriving."""

    @pytest.fixture
    def task(self, task_kind):
        return Entity.from_raw(task_kind, Identifier.from_path([("User", 42), ("Task", 7)]), 3, {"title": "t"})

    def test_property(self, task):
        """property() and indexing return values."""
        assert task.property("title") == "t"
        assert task["title"] == "t"
        assert task.get("owner") is None

    def test_missing_property_suggests(self, task):
        """Absent properties raise with suggestions."""
        with pytest.raises(PropertyNotFoundError) as exc_info:
            task.property("titel")

        assert exc_info.value.suggestions == ["title"]

    def test_unset_declared_property(self, task):
        """A declared but unset property does not suggest itself."""
        with pytest.raises(PropertyNotFoundError) as exc_info:
            task.property("tags")

        assert "tags" not in exc_info.value.suggestions

    def test_with_properties_keeps_identity(self, task):
        """Derived entities keep identifier and version."""
        changed = task.with_properties(title="new", done=True)

        assert changed.property("title") == "new"
        assert changed.identifier == task.identifier
        assert changed.version == 3
        assert task.property("title") == "t"

    def test_with_properties_validates(self, task):
        """Derived entities are validated too."""
        with pytest.raises(SchemaMismatchError):
            task.with_properties(title=None)

    def test_without_properties(self, task):
        """Optional properties can be removed."""
        assert "owner" not in task.with_properties(owner="a").without_properties("owner").properties

    def test_evolve(self, task):
        """evolve sets store-assigned identity and version."""
        moved = task.evolve(version=4)

        assert moved.version == 4
        assert moved.identifier == task.identifier


class TestWire:
    """Tests for wire conversion."""

    def test_to_wire(self, task_kind, user):
        """Storage names are used and unindexed values excluded from indexes."""
        task = Entity.new(task_kind, title="t", owner="alice", parent=user, key=7)

        wire = task.to_wire()

        assert wire["key"] == {"path": [{"kind": "User", "id": "42"}, {"kind": "Task", "id": "7"}]}
        assert wire["properties"] == {
            "title": {"stringValue": "t", "excludeFromIndexes": True},
            "owner": {"stringValue": "alice"},
            "is_done": {"booleanValue": False, "excludeFromIndexes": True},
        }

    def test_from_wire(self, task_kind):
        """Stored entities map back through storage names."""
        stored = {
            "key": {"path": [{"kind": "User", "id": "42"}, {"kind": "Task", "id": "7"}]},
            "properties": {
                "title": {"stringValue": "t"},
                "is_done": {"booleanValue": True},
                "legacy": {"integerValue": "1"},
            },
        }

        task = Entity.from_wire(task_kind, stored, "12")

        assert task.version == 12
        assert task.property("done") is True
        assert task.get("owner") is None
        assert "legacy" not in task.properties

    def test_from_wire_unversioned_kind(self):
        """Kinds that opt out of versioning never carry a version."""
        kind = KindDef("Note", (prop("text", "str"),), versioned=False)

        note = Entity.from_wire(kind, {"key": {"path": [{"kind": "Note", "id": "1"}]}, "properties": {}}, "5")

        assert note.version is None

    def test_from_wire_bad_value(self, task_kind):
        """Stored values of the wrong type are a schema mismatch."""
        stored = {
            "key": {"path": [{"kind": "User", "id": "42"}, {"kind": "Task", "id": "7"}]},
            "properties": {"title": {"integerValue": "3"}},
        }

        with pytest.raises(SchemaMismatchError):
            Entity.from_wire(task_kind, stored, "1")

    def test_from_wire_bad_key(self, task_kind):
        """A stored key of another kind is rejected."""
        with pytest.raises(SchemaMismatchError):
            Entity.from_wire(task_kind, {"key": {"path": [{"kind": "Other", "id": "1"}]}}, "1")
