"""
Entity envelopes for the DocStore SDK.

An Entity pairs a typed property map with its Identifier and the version
observed at the last read or write. It is the unit exchanged with the store.

Invariants:
    - Entities are immutable values; every change produces a new Entity
    - Properties always match the declared kind (validated on construction)
    - ``version`` must be passed back unchanged on the next write so the
      store can detect concurrent modification
    - ``version is None`` on an assigned identifier means last write wins

Example:
    >>> task = Entity.new(Task, title="Write docs")
    >>> task.identifier.is_pending
    True
    >>> task.with_properties(title="Write more docs").property("title")
    'Write more docs'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

from .errors import PropertyNotFoundError, SchemaMismatchError
from .identifier import Identifier, InvalidIdentifierError
from .schema import KindDef
from .validate import suggest_properties, validate_or_raise
from .values import ValueEncodingError, decode_value, encode_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entity:
    """A typed entity envelope.

    Attributes:
        kind_def: Declared kind
        identifier: Full key path (pending until the store assigns it)
        version: Version observed at last read/write, if the kind is versioned
        properties: Property values keyed by attribute name (read-only)
    """

    kind_def: KindDef
    identifier: Identifier
    version: int | None = None
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @classmethod
    def from_raw(
        cls,
        kind_def: KindDef,
        identifier: Identifier,
        version: int | None,
        properties: Mapping[str, Any],
    ) -> Entity:
        """Build a validated entity.

        Raises:
            SchemaMismatchError: If a required property is missing, a value has
                the wrong type, a property is undeclared, or the identifier
                does not fit the kind's key shape
        """
        validate_or_raise(kind_def, dict(properties), identifier)
        return cls(kind_def, identifier, version, properties)

    @classmethod
    def new(
        cls,
        kind_def: KindDef,
        properties: Mapping[str, Any] | None = None,
        *,
        parent: Identifier | None = None,
        key: int | str | None = None,
        namespace: str | None = None,
        **kwargs: Any,
    ) -> Entity:
        """Build a new, not yet stored entity.

        Args:
            kind_def: Declared kind
            properties: Property values (or use kwargs)
            parent: Ancestor identifier for kinds with a key path
            key: Explicit id or name; leave None to let the store allocate one
            namespace: Partition namespace (a parent's namespace is inherited)
            **kwargs: Property values (alternative to properties)

        Raises:
            SchemaMismatchError: If the properties or key do not fit the kind
        """
        values = dict(properties or {})
        values.update(kwargs)
        for prop_def in kind_def.properties:
            if prop_def.name not in values and prop_def.default is not None:
                values[prop_def.name] = prop_def.default

        try:
            identifier = kind_def.identifier(key, parent=parent, namespace=namespace)
        except InvalidIdentifierError as e:
            raise SchemaMismatchError(str(e), kind=kind_def.name, errors=[str(e)]) from e
        return cls.from_raw(kind_def, identifier, None, values)

    @property
    def kind(self) -> str:
        return self.kind_def.name

    def property(self, name: str) -> Any:
        """Get a property value.

        Raises:
            PropertyNotFoundError: If the property is not set on this entity
        """
        try:
            return self.properties[name]
        except KeyError:
            suggestions = [s for s in suggest_properties(name, self.kind_def, limit=3) if s != name]
            raise PropertyNotFoundError(name, self.kind, suggestions) from None

    def get(self, name: str, default: Any = None) -> Any:
        return self.properties.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.property(name)

    def with_properties(self, **changes: Any) -> Entity:
        """Derive an entity with some properties changed.

        Identifier and version are carried over so the next write is checked
        against the version this entity was read at.
        """
        values = dict(self.properties)
        values.update(changes)
        return Entity.from_raw(self.kind_def, self.identifier, self.version, values)

    def without_properties(self, *names: str) -> Entity:
        values = {k: v for k, v in self.properties.items() if k not in names}
        return Entity.from_raw(self.kind_def, self.identifier, self.version, values)

    def evolve(self, *, identifier: Identifier | None = None, version: int | None = None) -> Entity:
        """Copy with a store-assigned identifier and/or version."""
        return replace(
            self,
            identifier=identifier if identifier is not None else self.identifier,
            version=version,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain dictionary view, for logging and debugging."""
        return {
            "kind": self.kind,
            "identifier": str(self.identifier),
            "version": self.version,
            "properties": dict(self.properties),
        }

    # Wire format

    def to_wire(self, project_id: str | None = None) -> dict[str, Any]:
        """Convert to the store's Entity representation.

        Properties are written under their storage names; properties not
        declared as indexed are excluded from the store's indexes.

        Raises:
            SchemaMismatchError: If a value cannot be encoded
        """
        encoded: dict[str, Any] = {}
        for prop_def in self.kind_def.properties:
            if prop_def.name not in self.properties:
                continue
            try:
                encoded[prop_def.storage_name] = encode_value(
                    self.properties[prop_def.name],
                    prop_def.kind,
                    exclude_from_indexes=not prop_def.indexed,
                )
            except ValueEncodingError as e:
                raise SchemaMismatchError(
                    f"Cannot encode property '{prop_def.name}': {e}",
                    kind=self.kind,
                    errors=[str(e)],
                ) from e
        return {"key": self.identifier.to_key(project_id), "properties": encoded}

    @classmethod
    def from_wire(
        cls,
        kind_def: KindDef,
        entity: Mapping[str, Any],
        version: int | str | None = None,
    ) -> Entity:
        """Create from the store's Entity representation.

        Stored properties the kind does not declare are ignored (the store
        is schemaless). Declared properties missing from the store read as
        their default, or None.

        Raises:
            SchemaMismatchError: If the key or a stored value does not fit
                the kind
        """
        try:
            identifier = Identifier.from_key(entity.get("key") or {})
        except InvalidIdentifierError as e:
            raise SchemaMismatchError(
                f"Invalid key for {kind_def.name}: {e}", kind=kind_def.name, errors=[str(e)]
            ) from e

        stored = entity.get("properties") or {}
        values: dict[str, Any] = {}
        for prop_def in kind_def.properties:
            if prop_def.storage_name not in stored:
                values[prop_def.name] = prop_def.default
                continue
            try:
                values[prop_def.name] = decode_value(stored[prop_def.storage_name])
            except ValueEncodingError as e:
                raise SchemaMismatchError(
                    f"Cannot decode property '{prop_def.name}': {e}",
                    kind=kind_def.name,
                    errors=[str(e)],
                ) from e

        ignored = set(stored) - {p.storage_name for p in kind_def.properties}
        if ignored:
            logger.debug(
                "Ignoring undeclared stored properties",
                extra={"kind": kind_def.name, "properties": sorted(ignored)},
            )

        parsed_version = int(version) if version is not None and kind_def.versioned else None
        return cls.from_raw(kind_def, identifier, parsed_version, values)
