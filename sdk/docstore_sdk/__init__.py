"""
DocStore Python SDK - typed entity mapping over a remote document store.

This SDK provides a typed interface to a schemaless key-value document
store (Cloud Datastore REST shapes):
- Kind declarations (KindDef, PropertyDef) and a schema registry
- Identifiers with ancestor paths and store-assigned ids
- Entity envelopes carrying the version used for optimistic concurrency
- Equality queries with lazy pagination
- Version-checked writes and atomic multi-entity transactions

Example:
    >>> from docstore_sdk import Entity, KindDef, StoreClient, prop, register_kind
    >>>
    >>> Task = register_kind(
    ...     KindDef(
    ...         name="Task",
    ...         properties=(
    ...             prop("title", "str", required=True),
    ...             prop("owner", "str", indexed=True),
    ...         ),
    ...     )
    ... )
    >>>
    >>> async with StoreClient() as client:
    ...     task = await client.create(Entity.new(Task, title="Ship", owner="alice"))
    ...     task = await client.update(task.with_properties(title="Shipped"))

Invariants:
    - Versions come from the store and must be passed back unchanged
    - Transactions apply all staged operations or none
    - Nothing is retried automatically

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import KindAccessor, StoreClient
from .commit import CommitProtocol
from .config import StoreSettings
from .connection import HttpStoreConnection, StoreConnection
from .entity import Entity
from .errors import (
    AlreadyExistsError,
    AmbiguousResultError,
    DocStoreError,
    OperationInterruptedError,
    NotFoundError,
    PropertyNotFoundError,
    SchemaMismatchError,
    StoreStatusError,
    TransactionClosedError,
    TransactionConflictError,
    TransactionStartError,
    TransportError,
    VersionConflictError,
)
from .identifier import (
    PENDING,
    AssignedById,
    AssignedByName,
    Identifier,
    IdentifierAlreadyAssignedError,
    InvalidIdentifierError,
    PathElement,
    Pending,
)
from .memory import InMemoryStoreConnection
from .query import PagedResult, QueryDescriptor, QueryExecutor
from .registry import (
    SchemaRegistry,
    get_registry,
    register_kind,
)
from .schema import (
    KeyType,
    KindDef,
    PropertyDef,
    PropertyKind,
    prop,
)
from .transaction import (
    OperationResult,
    Transaction,
    TransactionCoordinator,
    TransactionState,
)

__all__ = [
    # Version
    "__version__",
    # Schema types
    "KindDef",
    "PropertyDef",
    "PropertyKind",
    "KeyType",
    "prop",
    # Registry
    "SchemaRegistry",
    "get_registry",
    "register_kind",
    # Identity and envelopes
    "Identifier",
    "PathElement",
    "Pending",
    "AssignedById",
    "AssignedByName",
    "PENDING",
    "Entity",
    # Engine
    "QueryExecutor",
    "QueryDescriptor",
    "PagedResult",
    "CommitProtocol",
    "Transaction",
    "TransactionCoordinator",
    "TransactionState",
    "OperationResult",
    # Client and connections
    "StoreClient",
    "KindAccessor",
    "StoreSettings",
    "StoreConnection",
    "HttpStoreConnection",
    "InMemoryStoreConnection",
    # Errors
    "DocStoreError",
    "TransportError",
    "StoreStatusError",
    "NotFoundError",
    "AlreadyExistsError",
    "VersionConflictError",
    "TransactionConflictError",
    "AmbiguousResultError",
    "SchemaMismatchError",
    "PropertyNotFoundError",
    "TransactionStartError",
    "TransactionClosedError",
    "OperationInterruptedError",
    "InvalidIdentifierError",
    "IdentifierAlreadyAssignedError",
]
