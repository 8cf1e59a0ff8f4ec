"""
Unit tests for kind declarations.

Tests cover:
- Property and kind definition validation
- Storage names
- Key shape helpers
- Dictionary round trips
"""

import pytest

from docstore_sdk.identifier import Identifier, InvalidIdentifierError
from docstore_sdk.schema import KeyType, KindDef, PropertyKind, prop


class TestPropertyDef:
    """Tests for property definitions."""

    def test_prop_parses_kind(self):
        """prop() accepts kind names."""
        p = prop("tags", "list_str", indexed=True)

        assert p.kind == PropertyKind.LIST_STRING
        assert p.kind.is_list
        assert p.kind.element_kind == PropertyKind.STRING
        assert p.indexed

    def test_storage_name_defaults_to_name(self):
        """Without a storage name the attribute name is used."""
        assert prop("title", "str").storage_name == "title"
        assert prop("done", "bool", storage_name="is_done").storage_name == "is_done"

    def test_invalid_kind(self):
        """Unknown kinds are rejected."""
        with pytest.raises(ValueError):
            prop("x", "decimal")

    def test_empty_name(self):
        """Properties need a name."""
        with pytest.raises(ValueError):
            prop("", "str")


class TestKindDef:
    """Tests for kind definitions."""

    def test_duplicate_property_names(self):
        """Property names must be unique."""
        with pytest.raises(ValueError, match="Duplicate property"):
            KindDef("Task", (prop("a", "str"), prop("a", "int")))

    def test_duplicate_storage_names(self):
        """Storage names must be unique."""
        with pytest.raises(ValueError, match="Duplicate storage"):
            KindDef("Task", (prop("a", "str", storage_name="x"), prop("b", "str", storage_name="x")))

    def test_page_size_must_be_positive(self):
        """A declared page size must be positive."""
        with pytest.raises(ValueError):
            KindDef("Task", page_size=0)

    def test_property_lookup(self):
        """Properties can be found by attribute or storage name."""
        kind = KindDef("Task", (prop("done", "bool", storage_name="is_done"), prop("owner", "str", indexed=True)))

        assert kind.get_property("done").storage_name == "is_done"
        assert kind.get_property_by_storage_name("is_done").name == "done"
        assert kind.get_property("missing") is None
        assert [p.name for p in kind.indexed_properties()] == ["owner"]

    def test_identifier_for_id_kind(self):
        """identifier() builds keys of the declared shape."""
        kind = KindDef("Task", ancestors=("User",))
        parent = Identifier.of("User", 42)

        ident = kind.identifier(7, parent=parent)

        assert ident == Identifier.from_path([("User", 42), ("Task", 7)])
        assert kind.identifier(parent=parent).is_pending

    def test_identifier_wrong_key_type(self):
        """A name-keyed kind rejects ids and vice versa."""
        by_name = KindDef("Setting", key_type=KeyType.NAME)

        with pytest.raises(InvalidIdentifierError):
            by_name.identifier(1)
        with pytest.raises(InvalidIdentifierError):
            KindDef("Task").identifier("abc")

    def test_identifier_missing_ancestor(self):
        """A kind with ancestors needs a parent."""
        with pytest.raises(InvalidIdentifierError, match="ancestors"):
            KindDef("Task", ancestors=("User",)).identifier(1)

    def test_dict_round_trip(self):
        """from_dict(to_dict()) reproduces the declaration."""
        kind = KindDef(
            "Task",
            (prop("title", "str", required=True), prop("done", "bool", storage_name="is_done", default=False)),
            ancestors=("User",),
            page_size=20,
            versioned=False,
        )

        assert KindDef.from_dict(kind.to_dict()) == kind
