"""
Schema declarations for the DocStore SDK.

This module provides the declarations that replace generated accessors:
- KindDef: Definition of an entity kind (properties, key shape, paging, versioning)
- PropertyDef: Individual property definition
- PropertyKind: Supported property value types

Declarations are plain data. They are registered once at startup in a
SchemaRegistry and then drive validation, wire mapping and the kind
accessors exposed by StoreClient.

Invariants:
    - Property names and storage names are unique within a kind
    - Only indexed properties can be used as query filters
    - A kind's key shape (ancestor kinds + key type) is fixed

Example:
    >>> Task = KindDef(
    ...     name="Task",
    ...     properties=(
    ...         prop("title", "str", required=True, indexed=True),
    ...         prop("done", "bool", storage_name="is_done"),
    ...     ),
    ...     ancestors=("User",),
    ...     page_size=20,
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

from .identifier import Identifier, InvalidIdentifierError, PathElement, segment_for


class PropertyKind(Enum):
    """Supported property types."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    KEY = "key"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"
    LIST_STRING = "list_str"
    LIST_INT = "list_int"
    LIST_KEY = "list_key"

    @classmethod
    def from_str(cls, value: str) -> PropertyKind:
        """Convert string to PropertyKind."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Invalid property kind: {value}")

    @property
    def is_list(self) -> bool:
        return self.value.startswith("list_")

    @property
    def element_kind(self) -> PropertyKind:
        """Kind of each element for list kinds, self otherwise."""
        if self == PropertyKind.LIST_STRING:
            return PropertyKind.STRING
        if self == PropertyKind.LIST_INT:
            return PropertyKind.INTEGER
        if self == PropertyKind.LIST_KEY:
            return PropertyKind.KEY
        return self


class KeyType(Enum):
    """How the self element of a kind's key is identified."""

    ID = "id"
    NAME = "name"


@dataclass(frozen=True)
class PropertyDef:
    """Property definition within a kind.

    Attributes:
        name: Attribute name used by application code
        kind: Value type
        storage_name: Property name in the store (defaults to name)
        required: Whether the property must be present and non-null
        indexed: Whether the store indexes it (required for filters)
        default: Value used when the property is absent
        description: Documentation
    """

    name: str
    kind: PropertyKind
    storage_name: str = ""
    required: bool = False
    indexed: bool = False
    default: Any = None
    description: str = ""

    def __post_init__(self) -> None:
        """Validate property definition."""
        if not self.name:
            raise ValueError("Property name cannot be empty")
        if not self.storage_name:
            object.__setattr__(self, "storage_name", self.name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
        }
        if self.storage_name != self.name:
            result["storage_name"] = self.storage_name
        if self.required:
            result["required"] = True
        if self.indexed:
            result["indexed"] = True
        if self.default is not None:
            result["default"] = self.default
        if self.description:
            result["description"] = self.description
        return result


def prop(
    name: str,
    kind: str | PropertyKind,
    *,
    storage_name: str = "",
    required: bool = False,
    indexed: bool = False,
    default: Any = None,
    description: str = "",
) -> PropertyDef:
    """Convenience function to create a PropertyDef.

    Example:
        >>> title = prop("title", "str", required=True, indexed=True)
        >>> owner = prop("owner", "key", storage_name="OwnerKey")
    """
    if isinstance(kind, str):
        kind = PropertyKind.from_str(kind)
    return PropertyDef(
        name=name,
        kind=kind,
        storage_name=storage_name,
        required=required,
        indexed=indexed,
        default=default,
        description=description,
    )


@dataclass(frozen=True)
class KindDef:
    """Definition of an entity kind.

    Attributes:
        name: Kind name in the store
        properties: Tuple of property definitions
        ancestors: Ancestor kinds of the key path, root first
        key_type: Whether the self element uses ids or names
        page_size: Default page size for queries (None: client default)
        versioned: Whether writes are version-checked (optimistic concurrency)
        description: Documentation
    """

    name: str
    properties: tuple[PropertyDef, ...] = dataclass_field(default_factory=tuple)
    ancestors: tuple[str, ...] = ()
    key_type: KeyType = KeyType.ID
    page_size: int | None = None
    versioned: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        """Validate kind definition."""
        if not self.name:
            raise ValueError("Kind name cannot be empty")
        if self.page_size is not None and self.page_size <= 0:
            raise ValueError(f"page_size must be positive, got {self.page_size}")

        names = [p.name for p in self.properties]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate property name in kind '{self.name}'")
        storage_names = [p.storage_name for p in self.properties]
        if len(storage_names) != len(set(storage_names)):
            raise ValueError(f"Duplicate storage name in kind '{self.name}'")

    def get_property(self, name: str) -> PropertyDef | None:
        """Get property by attribute name."""
        for p in self.properties:
            if p.name == name:
                return p
        return None

    def get_property_by_storage_name(self, storage_name: str) -> PropertyDef | None:
        """Get property by its name in the store."""
        for p in self.properties:
            if p.storage_name == storage_name:
                return p
        return None

    def get_property_names(self) -> list[str]:
        """Get list of property names."""
        return [p.name for p in self.properties]

    def indexed_properties(self) -> list[PropertyDef]:
        return [p for p in self.properties if p.indexed]

    def identifier(
        self,
        id_or_name: int | str | None = None,
        parent: Identifier | None = None,
        namespace: str | None = None,
    ) -> Identifier:
        """Build an identifier shaped for this kind.

        Raises:
            InvalidIdentifierError: If the value or parent does not fit the
                declared key shape
        """
        if id_or_name is not None:
            expects_name = self.key_type == KeyType.NAME
            if isinstance(id_or_name, str) != expects_name:
                raise InvalidIdentifierError(
                    f"kind '{self.name}' is keyed by {self.key_type.value}, got {id_or_name!r}"
                )
        identifier = Identifier((PathElement(self.name, segment_for(id_or_name)),), namespace)
        if parent is not None:
            identifier = identifier.with_ancestor(parent)
        errors = self.check_identifier(identifier)
        if errors:
            raise InvalidIdentifierError("; ".join(errors))
        return identifier

    def check_identifier(self, identifier: Identifier) -> list[str]:
        """List the ways ``identifier`` deviates from this kind's key shape."""
        errors: list[str] = []
        if identifier.kind != self.name:
            errors.append(f"identifier kind '{identifier.kind}' is not '{self.name}'")
        if identifier.ancestor_kinds != self.ancestors:
            errors.append(
                f"identifier ancestors {list(identifier.ancestor_kinds)} "
                f"do not match declared {list(self.ancestors)}"
            )
        if identifier.name is not None and self.key_type == KeyType.ID:
            errors.append(f"kind '{self.name}' is keyed by id, got name {identifier.name!r}")
        if identifier.id is not None and self.key_type == KeyType.NAME:
            errors.append(f"kind '{self.name}' is keyed by name, got id {identifier.id}")
        # The store only allocates ids
        if identifier.is_pending and self.key_type == KeyType.NAME:
            errors.append(f"kind '{self.name}' is keyed by name; a name must be given")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "properties": [p.to_dict() for p in self.properties],
            "ancestors": list(self.ancestors),
            "key_type": self.key_type.value,
            "page_size": self.page_size,
            "versioned": self.versioned,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KindDef:
        """Create from a declaration dictionary (see ``to_dict``)."""
        properties = tuple(
            prop(
                p["name"],
                p["kind"],
                storage_name=p.get("storage_name", ""),
                required=p.get("required", False),
                indexed=p.get("indexed", False),
                default=p.get("default"),
                description=p.get("description", ""),
            )
            for p in data.get("properties", [])
        )
        return cls(
            name=data["name"],
            properties=properties,
            ancestors=tuple(data.get("ancestors", ())),
            key_type=KeyType(data.get("key_type", "id")),
            page_size=data.get("page_size"),
            versioned=data.get("versioned", True),
            description=data.get("description", ""),
        )

    def __hash__(self) -> int:
        return hash(self.name)
