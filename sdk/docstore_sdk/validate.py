"""
Property validation for the DocStore SDK.

This module provides validation utilities:
- Property-level type checks against the declared kind
- Whole-entity validation (required, unknown, key shape)
- Helpful error messages with suggestions

Invariants:
    - Validation errors are deterministic (declaration order)
    - Error messages include context for fixing
    - Unknown properties suggest similar declared properties
"""

from __future__ import annotations

from difflib import get_close_matches
from typing import Any, Dict, List, Optional, Tuple

from .errors import SchemaMismatchError
from .identifier import Identifier
from .schema import KindDef, PropertyKind
from .values import INT64_MAX, INT64_MIN, value_matches_kind

_KIND_LABELS = {
    PropertyKind.STRING: "a string",
    PropertyKind.INTEGER: "an integer",
    PropertyKind.FLOAT: "a number",
    PropertyKind.BOOLEAN: "a boolean",
    PropertyKind.KEY: "an Identifier",
    PropertyKind.BYTES: "bytes",
    PropertyKind.TIMESTAMP: "a datetime",
}


def validate_properties(
    kind_def: KindDef,
    properties: Dict[str, Any],
) -> Tuple[bool, List[str]]:
    """Validate a property map against a kind.

    Args:
        kind_def: Kind to validate against
        properties: Property values keyed by attribute name

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors: List[str] = []

    known = kind_def.get_property_names()
    for name in properties:
        if name not in known:
            suggestions = get_close_matches(name, known, n=3)
            if suggestions:
                errors.append(f"Unknown property '{name}'. Did you mean: {suggestions}?")
            else:
                errors.append(f"Unknown property '{name}'")

    for prop_def in kind_def.properties:
        value = properties.get(prop_def.name)

        if value is None:
            if prop_def.required:
                errors.append(f"Property '{prop_def.name}' is required")
            continue

        error = _validate_property_value(prop_def.name, prop_def.kind, value)
        if error:
            errors.append(error)

    return len(errors) == 0, errors


def _validate_property_value(
    name: str,
    kind: PropertyKind,
    value: Any,
) -> Optional[str]:
    """Validate a single property value.

    Returns error message if invalid, None if valid.
    """
    if kind.is_list:
        if not isinstance(value, (list, tuple)):
            return f"Property '{name}' must be a list, got {type(value).__name__}"
        for i, item in enumerate(value):
            error = _validate_property_value(f"{name}[{i}]", kind.element_kind, item)
            if error:
                return error
        return None

    if not value_matches_kind(value, kind):
        return f"Property '{name}' must be {_KIND_LABELS[kind]}, got {type(value).__name__}"

    if kind == PropertyKind.INTEGER and not INT64_MIN <= value <= INT64_MAX:
        return f"Property '{name}' is outside the 64-bit integer range"

    if kind == PropertyKind.KEY and value.is_pending:
        return f"Property '{name}' references pending identifier {value}"

    return None


def validate_or_raise(
    kind_def: KindDef,
    properties: Dict[str, Any],
    identifier: Optional[Identifier] = None,
) -> None:
    """Validate properties (and optionally the identifier) and raise if invalid.

    Raises:
        SchemaMismatchError: If anything does not match the declaration
    """
    is_valid, errors = validate_properties(kind_def, properties)
    if identifier is not None:
        errors.extend(kind_def.check_identifier(identifier))
        is_valid = is_valid and not errors

    if not is_valid:
        raise SchemaMismatchError(
            f"Validation failed for {kind_def.name}: {'; '.join(errors)}",
            kind=kind_def.name,
            errors=errors,
        )


def suggest_properties(name: str, kind_def: KindDef, limit: int = 5) -> List[str]:
    """Declared property names resembling ``name``, closest first.

    A match on a storage name is reported as its attribute name.
    """
    by_storage = {p.storage_name: p.name for p in kind_def.properties}
    candidates = kind_def.get_property_names() + [s for s in by_storage if s not in kind_def.get_property_names()]
    close = [by_storage.get(c, c) for c in get_close_matches(name, candidates, n=limit)]
    prefixed = [p.name for p in kind_def.properties if p.name.lower().startswith(name.lower())]
    return list(dict.fromkeys(close + prefixed))[:limit]
