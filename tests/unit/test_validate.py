"""
Unit tests for property validation.

Tests cover:
- Property type validation
- Required property checking
- Unknown property detection with suggestions
- Key shape validation
"""

from datetime import datetime, timezone

import pytest

from docstore_sdk.errors import SchemaMismatchError
from docstore_sdk.identifier import Identifier
from docstore_sdk.schema import KindDef, prop
from docstore_sdk.validate import (
    suggest_properties,
    validate_or_raise,
    validate_properties,
)


class TestPropertyValidation:
    """Tests for validate_properties."""

    @pytest.fixture
    def user_kind(self):
        """User kind for testing."""
        return KindDef(
            name="User",
            properties=(
                prop("email", "str", required=True, indexed=True),
                prop("name", "str"),
                prop("age", "int"),
                prop("score", "float"),
                prop("active", "bool"),
                prop("created_at", "timestamp"),
                prop("avatar", "bytes"),
                prop("manager", "key"),
                prop("tags", "list_str"),
                prop("scores", "list_int"),
            ),
        )

    def test_valid_properties(self, user_kind):
        """Valid properties pass validation."""
        is_valid, errors = validate_properties(
            user_kind,
            {
                "email": "test@example.com",
                "age": 30,
                "score": 3,
                "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
                "avatar": b"png",
                "manager": Identifier.of("User", 1),
                "tags": ["a", "b"],
            },
        )

        assert is_valid
        assert errors == []

    def test_required_property_missing(self, user_kind):
        """Missing required property fails."""
        is_valid, errors = validate_properties(user_kind, {"name": "Test User"})

        assert not is_valid
        assert any("email" in e and "required" in e for e in errors)

    def test_required_property_null(self, user_kind):
        """None does not satisfy a required property."""
        is_valid, errors = validate_properties(user_kind, {"email": None})

        assert not is_valid

    def test_unknown_property_suggests_similar(self, user_kind):
        """Unknown property suggests similar names."""
        is_valid, errors = validate_properties(user_kind, {"email": "a@b.c", "naem": "Test"})

        assert not is_valid
        assert any("naem" in e and "name" in e for e in errors)

    def test_string_type_validation(self, user_kind):
        """String property rejects non-string."""
        is_valid, errors = validate_properties(user_kind, {"email": 123})

        assert not is_valid
        assert any("string" in e for e in errors)

    def test_bool_is_not_an_integer(self, user_kind):
        """Integer property rejects booleans."""
        is_valid, errors = validate_properties(user_kind, {"email": "a@b.c", "age": True})

        assert not is_valid
        assert any("age" in e for e in errors)

    def test_integer_range(self, user_kind):
        """Integers must fit in 64 bits."""
        is_valid, errors = validate_properties(user_kind, {"email": "a@b.c", "age": 2**63})

        assert not is_valid
        assert any("64-bit" in e for e in errors)

    def test_list_element_validation(self, user_kind):
        """List properties check each element."""
        is_valid, errors = validate_properties(user_kind, {"email": "a@b.c", "scores": [1, "two"]})

        assert not is_valid
        assert any("scores[1]" in e for e in errors)

    def test_pending_key_reference(self, user_kind):
        """Key properties cannot reference pending identifiers."""
        is_valid, errors = validate_properties(
            user_kind,
            {"email": "a@b.c", "manager": Identifier.pending("User")},
        )

        assert not is_valid
        assert any("pending" in e for e in errors)


class TestValidateOrRaise:
    """Tests for validate_or_raise."""

    @pytest.fixture
    def task_kind(self):
        return KindDef(
            name="Task",
            properties=(prop("title", "str", required=True),),
            ancestors=("User",),
        )

    def test_raises_schema_mismatch(self, task_kind):
        """Invalid properties raise SchemaMismatchError with all errors."""
        with pytest.raises(SchemaMismatchError) as exc_info:
            validate_or_raise(task_kind, {"title": 1, "extra": True})

        assert exc_info.value.kind == "Task"
        assert len(exc_info.value.errors) == 2

    def test_checks_key_shape(self, task_kind):
        """An identifier without the declared ancestors is rejected."""
        with pytest.raises(SchemaMismatchError, match="ancestors"):
            validate_or_raise(task_kind, {"title": "t"}, Identifier.of("Task", 1))

    def test_accepts_matching_key(self, task_kind):
        """A correctly shaped identifier passes."""
        ident = Identifier.from_path([("User", 1), ("Task", 2)])

        validate_or_raise(task_kind, {"title": "t"}, ident)


class TestSuggestions:
    """Tests for suggest_properties."""

    def test_prefix_and_fuzzy(self):
        """Suggestions combine close matches and prefixes."""
        kind = KindDef(
            name="User",
            properties=(prop("email", "str"), prop("email_verified", "bool"), prop("name", "str")),
        )

        suggestions = suggest_properties("emai", kind)

        assert "email" in suggestions
        assert "email_verified" in suggestions
        assert "name" not in suggestions

    def test_storage_name_maps_to_attribute(self):
        """A stored spelling suggests the attribute name."""
        kind = KindDef(name="Task", properties=(prop("done", "bool", storage_name="is_done"),))

        assert suggest_properties("is_done", kind) == ["done"]
