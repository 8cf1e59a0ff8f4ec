"""
Entity identifiers for the DocStore SDK.

An Identifier is the full key path of an entity: the root ancestor first and
the entity itself (the "self" element) last. Each path element is a kind plus
one segment:

- Pending: no remote identity yet (only allowed on the self element)
- AssignedById: numeric id, either store-allocated or chosen by the caller
- AssignedByName: string name chosen by the caller

Invariants:
    - Paths are never empty
    - Every ancestor element is assigned; only the self element may be pending
    - Identifiers are immutable; assigning returns a new Identifier
    - Assignment happens once: assigning an assigned Identifier fails

Example:
    >>> user = Identifier.of("User", 42)
    >>> task = Identifier.pending("Task").with_ancestor(user)
    >>> task.is_pending
    True
    >>> task.assign_id(7)
    Identifier(User:42/Task:7)
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence, Union

INT64_MAX = 2**63 - 1

_RESERVED_NAME = re.compile(r"^__.*__$")


class InvalidIdentifierError(ValueError):
    """Identifier path violates the key invariants."""

    pass


class IdentifierAlreadyAssignedError(InvalidIdentifierError):
    """Assignment attempted on an identifier that already has an id or name."""

    pass


@dataclass(frozen=True)
class Pending:
    """Self segment without a remote identity."""

    def __str__(self) -> str:
        return "?"


@dataclass(frozen=True)
class AssignedById:
    """Segment identified by a positive 64-bit id."""

    id: int

    def __post_init__(self) -> None:
        if isinstance(self.id, bool) or not isinstance(self.id, int):
            raise InvalidIdentifierError(f"id must be an integer, got {type(self.id).__name__}")
        if self.id <= 0 or self.id > INT64_MAX:
            raise InvalidIdentifierError(f"id must be in 1..{INT64_MAX}, got {self.id}")

    def __str__(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class AssignedByName:
    """Segment identified by a caller-chosen name."""

    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvalidIdentifierError("name must be a non-empty string")
        if _RESERVED_NAME.match(self.name):
            raise InvalidIdentifierError(f"name '{self.name}' is reserved")

    def __str__(self) -> str:
        return repr(self.name)


Segment = Union[Pending, AssignedById, AssignedByName]

PENDING = Pending()


def segment_for(value: int | str | None) -> Segment:
    """Build a segment from a raw id, name or None."""
    if value is None:
        return PENDING
    if isinstance(value, str):
        return AssignedByName(value)
    return AssignedById(value)


def _segment_sort_key(segment: Segment) -> tuple[int, Any]:
    # Pending sorts first, then ids, then names (the store's key order).
    if isinstance(segment, AssignedById):
        return (1, segment.id)
    if isinstance(segment, AssignedByName):
        return (2, segment.name)
    return (0, 0)


@dataclass(frozen=True)
class PathElement:
    """One (kind, segment) element of a key path."""

    kind: str
    segment: Segment = PENDING

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not self.kind:
            raise InvalidIdentifierError("path element kind must be a non-empty string")

    @property
    def is_pending(self) -> bool:
        return isinstance(self.segment, Pending)

    def sort_key(self) -> tuple[str, tuple[int, Any]]:
        return (self.kind, _segment_sort_key(self.segment))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire path element."""
        element: dict[str, Any] = {"kind": self.kind}
        if isinstance(self.segment, AssignedById):
            element["id"] = str(self.segment.id)
        elif isinstance(self.segment, AssignedByName):
            element["name"] = self.segment.name
        return element

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PathElement:
        """Create from a wire path element."""
        kind = data.get("kind")
        if not kind:
            raise InvalidIdentifierError("path element has no kind")
        has_id = data.get("id") not in (None, "")
        has_name = data.get("name") not in (None, "")
        if has_id and has_name:
            raise InvalidIdentifierError(f"path element for '{kind}' has both id and name")
        if has_id:
            try:
                id_value = int(data["id"])
            except (TypeError, ValueError) as e:
                raise InvalidIdentifierError(f"invalid id {data['id']!r} for '{kind}'") from e
            return cls(kind, AssignedById(id_value))
        if has_name:
            return cls(kind, AssignedByName(data["name"]))
        return cls(kind)

    def __str__(self) -> str:
        return f"{self.kind}:{self.segment}"


@functools.total_ordering
class Identifier:
    """Full key path of an entity.

    Equality and ordering are structural over the namespace and the full
    path, so identifiers can be used as dictionary keys and sorted the way
    the store orders keys.

    Attributes:
        path: Path elements, root ancestor first, self last
        namespace: Optional partition namespace
    """

    __slots__ = ("_path", "_namespace")

    def __init__(
        self,
        path: Sequence[PathElement],
        namespace: str | None = None,
    ) -> None:
        path = tuple(path)
        if not path:
            raise InvalidIdentifierError("identifier path cannot be empty")
        for element in path[:-1]:
            if element.is_pending:
                raise InvalidIdentifierError(
                    f"ancestor '{element.kind}' must have an id or name"
                )
        self._path: tuple[PathElement, ...] = path
        self._namespace = namespace or None

    # Construction

    @classmethod
    def pending(cls, kind: str, namespace: str | None = None) -> Identifier:
        """Identifier for a new entity the store has not seen yet."""
        return cls((PathElement(kind),), namespace)

    @classmethod
    def of(
        cls,
        kind: str,
        id_or_name: int | str,
        namespace: str | None = None,
    ) -> Identifier:
        """Identifier with an explicit id (int) or name (str)."""
        return cls((PathElement(kind, segment_for(id_or_name)),), namespace)

    @classmethod
    def from_path(
        cls,
        pairs: Iterable[tuple[str, int | str | None]],
        namespace: str | None = None,
    ) -> Identifier:
        """Build from ``(kind, id_or_name_or_None)`` pairs, root first."""
        return cls([PathElement(kind, segment_for(value)) for kind, value in pairs], namespace)

    # Accessors

    @property
    def path(self) -> tuple[PathElement, ...]:
        return self._path

    @property
    def namespace(self) -> str | None:
        return self._namespace

    @property
    def kind(self) -> str:
        """Kind of the self element."""
        return self._path[-1].kind

    @property
    def segment(self) -> Segment:
        """Segment of the self element."""
        return self._path[-1].segment

    @property
    def is_pending(self) -> bool:
        return self._path[-1].is_pending

    @property
    def id(self) -> int | None:
        segment = self.segment
        return segment.id if isinstance(segment, AssignedById) else None

    @property
    def name(self) -> str | None:
        segment = self.segment
        return segment.name if isinstance(segment, AssignedByName) else None

    @property
    def parent(self) -> Identifier | None:
        """Identifier of the closest ancestor, if any."""
        if len(self._path) == 1:
            return None
        return Identifier(self._path[:-1], self._namespace)

    @property
    def ancestor_kinds(self) -> tuple[str, ...]:
        return tuple(element.kind for element in self._path[:-1])

    # Derivation

    def with_ancestor(self, parent: Identifier) -> Identifier:
        """Prepend ``parent``'s full path as this identifier's ancestors.

        Raises:
            InvalidIdentifierError: If ``parent`` is pending or the
                namespaces differ
        """
        if parent.is_pending:
            raise InvalidIdentifierError(
                f"ancestor {parent} is pending; commit it before using it as a parent"
            )
        if self._namespace and parent.namespace and self._namespace != parent.namespace:
            raise InvalidIdentifierError(
                f"namespace mismatch: {self._namespace!r} vs {parent.namespace!r}"
            )
        return Identifier(parent.path + self._path, self._namespace or parent.namespace)

    def assign_id(self, id: int) -> Identifier:
        """Resolve the self element to a numeric id."""
        return self._assign(AssignedById(id))

    def assign_name(self, name: str) -> Identifier:
        """Resolve the self element to a name."""
        return self._assign(AssignedByName(name))

    def _assign(self, segment: Segment) -> Identifier:
        if not self.is_pending:
            raise IdentifierAlreadyAssignedError(f"identifier {self} is already assigned")
        resolved = PathElement(self.kind, segment)
        return Identifier(self._path[:-1] + (resolved,), self._namespace)

    # Wire format

    def to_key(self, project_id: str | None = None) -> dict[str, Any]:
        """Convert to the store's Key representation."""
        key: dict[str, Any] = {"path": [element.to_dict() for element in self._path]}
        partition: dict[str, str] = {}
        if project_id:
            partition["projectId"] = project_id
        if self._namespace:
            partition["namespaceId"] = self._namespace
        if partition:
            key["partitionId"] = partition
        return key

    @classmethod
    def from_key(cls, key: dict[str, Any]) -> Identifier:
        """Create from the store's Key representation.

        Raises:
            InvalidIdentifierError: If the key has no path, or an ancestor
                element has neither id nor name
        """
        path = key.get("path") or []
        if not path:
            raise InvalidIdentifierError("key has no path elements")
        namespace = (key.get("partitionId") or {}).get("namespaceId")
        return cls([PathElement.from_dict(element) for element in path], namespace)

    # Value semantics

    def _sort_key(self) -> tuple[str, tuple[tuple[str, tuple[int, Any]], ...]]:
        return (self._namespace or "", tuple(element.sort_key() for element in self._path))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self._namespace == other._namespace and self._path == other._path

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __hash__(self) -> int:
        return hash((self._namespace, self._path))

    def __str__(self) -> str:
        text = "/".join(str(element) for element in self._path)
        if self._namespace:
            return f"[{self._namespace}]{text}"
        return text

    def __repr__(self) -> str:
        return f"Identifier({self})"
