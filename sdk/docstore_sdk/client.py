"""
DocStore client for Python SDK.

This module provides the main client interface:
- StoreClient: Reads, writes and transactions over one StoreConnection
- KindAccessor: The same operations bound to one registered kind

Example:
    >>> Task = register_kind(KindDef("Task", (prop("owner", "str", indexed=True),)))
    >>> async with StoreClient(settings=StoreSettings()) as client:
    ...     tasks = client.kind("Task")
    ...     task = await tasks.create(tasks.new(owner="alice"))
    ...     async for task in tasks.get_by_owner("alice"):
    ...         print(task.identifier)

Invariants:
    - Kinds are resolved through the schema registry
    - Reads and standalone writes are independent of any transaction
    - The client owns the connection only if it created it
"""

from __future__ import annotations

import functools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Union

from .commit import CommitProtocol
from .config import StoreSettings
from .connection import HttpStoreConnection, StoreConnection
from .entity import Entity
from .identifier import Identifier
from .query import PagedResult, QueryDescriptor, QueryExecutor
from .registry import SchemaRegistry, get_registry
from .schema import KindDef
from .transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)

KindRef = Union[KindDef, str]


class StoreClient:
    """Client for a remote document store.

    Example:
        >>> client = StoreClient(InMemoryStoreConnection(), registry=registry)
        >>> task = await client.get_one(Task, Identifier.of("Task", 7))
    """

    def __init__(
        self,
        connection: Optional[StoreConnection] = None,
        *,
        settings: Optional[StoreSettings] = None,
        registry: Optional[SchemaRegistry] = None,
        namespace: Optional[str] = None,
    ) -> None:
        """Initialize client.

        Args:
            connection: Store connection; an HttpStoreConnection is built
                from settings when omitted
            settings: Configuration (defaults to environment)
            registry: Schema registry (defaults to the global one)
            namespace: Partition namespace (overrides settings)
        """
        self.settings = settings or StoreSettings()
        self._owns_connection = connection is None
        self._connection: StoreConnection = connection or HttpStoreConnection.from_settings(self.settings)
        self.registry = registry or get_registry()
        self.namespace = namespace or self.settings.namespace

        self._executor = QueryExecutor(
            self._connection,
            namespace=self.namespace,
            default_page_size=self.settings.default_page_size,
        )
        self._commit = CommitProtocol(self._connection)
        self._coordinator = TransactionCoordinator(self._connection, self._executor)

    @property
    def connection(self) -> StoreConnection:
        return self._connection

    @property
    def executor(self) -> QueryExecutor:
        return self._executor

    async def close(self) -> None:
        """Close the connection if this client created it."""
        if self._owns_connection:
            await self._connection.close()

    async def __aenter__(self) -> StoreClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def kind(self, kind: KindRef) -> KindAccessor:
        """Accessor bound to one kind.

        Raises:
            UnknownKindError: If a kind name is not registered
        """
        return KindAccessor(self, self._resolve(kind))

    # Reads

    async def get_one(self, kind: KindRef, identifier: Identifier) -> Entity:
        return await self._executor.get_one(self._resolve(kind), identifier)

    async def get_one_by(self, kind: KindRef, property_name: str, value: Any) -> Entity:
        return await self._executor.get_one_by(self._resolve(kind), property_name, value)

    def get_by(
        self,
        kind: KindRef,
        property_name: str,
        value: Any,
        *,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> PagedResult:
        return self._executor.get_by(
            self._resolve(kind),
            property_name,
            value,
            page_size=page_size,
            cursor=cursor,
        )

    def resume(self, descriptor: QueryDescriptor) -> PagedResult:
        """Continue a query from a descriptor saved from PagedResult.descriptor."""
        return self._executor.resume(self.registry.require_kind(descriptor.kind), descriptor)

    # Writes

    async def create(self, entity: Entity) -> Entity:
        return await self._commit.create(entity)

    async def update(self, entity: Entity) -> Entity:
        return await self._commit.update(entity)

    async def save(self, entity: Entity) -> Entity:
        return await self._commit.save(entity)

    async def delete(self, identifier: Identifier, expected_version: Optional[int] = None) -> None:
        await self._commit.delete(identifier, expected_version)

    # Transactions

    async def begin_transaction(self) -> Transaction:
        """Open a transaction; the caller must commit or abandon it."""
        return await self._coordinator.begin()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Open a transaction that is abandoned unless committed in the block.

        Example:
            >>> async with client.transaction() as tx:
            ...     tx.push_save(task)
            ...     await tx.commit()
        """
        tx = await self._coordinator.begin()
        async with tx:
            yield tx

    def _resolve(self, kind: KindRef) -> KindDef:
        if isinstance(kind, KindDef):
            return kind
        return self.registry.require_kind(kind)


class KindAccessor:
    """Operations bound to one kind.

    Besides the generic methods, every indexed property ``p`` gets
    ``get_one_by_p(value)`` and ``get_by_p(value, ...)``.

    Example:
        >>> users = client.kind("User")
        >>> alice = await users.get_one_by_email("alice@example.com")
    """

    def __init__(self, client: StoreClient, kind_def: KindDef) -> None:
        self._client = client
        self.kind_def = kind_def

    def new(
        self,
        properties: Optional[dict[str, Any]] = None,
        *,
        parent: Optional[Identifier] = None,
        key: Union[int, str, None] = None,
        **kwargs: Any,
    ) -> Entity:
        """Build a new entity of this kind in the client's namespace."""
        return Entity.new(
            self.kind_def,
            properties,
            parent=parent,
            key=key,
            namespace=self._client.namespace,
            **kwargs,
        )

    def identifier(
        self,
        id_or_name: Union[int, str],
        parent: Optional[Identifier] = None,
    ) -> Identifier:
        return self.kind_def.identifier(id_or_name, parent=parent, namespace=self._client.namespace)

    async def get_one(
        self,
        id_or_identifier: Union[int, str, Identifier],
        *,
        parent: Optional[Identifier] = None,
    ) -> Entity:
        return await self._client.get_one(self.kind_def, self._identifier(id_or_identifier, parent))

    async def get_one_by(self, property_name: str, value: Any) -> Entity:
        return await self._client.get_one_by(self.kind_def, property_name, value)

    def get_by(
        self,
        property_name: str,
        value: Any,
        *,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> PagedResult:
        return self._client.get_by(self.kind_def, property_name, value, page_size=page_size, cursor=cursor)

    async def create(self, entity: Entity) -> Entity:
        return await self._client.create(self._check(entity))

    async def update(self, entity: Entity) -> Entity:
        return await self._client.update(self._check(entity))

    async def save(self, entity: Entity) -> Entity:
        return await self._client.save(self._check(entity))

    async def delete(
        self,
        id_or_identifier: Union[int, str, Identifier],
        expected_version: Optional[int] = None,
        *,
        parent: Optional[Identifier] = None,
    ) -> None:
        await self._client.delete(self._identifier(id_or_identifier, parent), expected_version)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        for prefix, method in (("get_one_by_", self.get_one_by), ("get_by_", self.get_by)):
            if name.startswith(prefix):
                prop_def = self.kind_def.get_property(name[len(prefix):])
                if prop_def is not None and prop_def.indexed:
                    return functools.partial(method, prop_def.name)
        raise AttributeError(f"'{self.kind_def.name}' accessor has no attribute '{name}'")

    def _identifier(
        self,
        id_or_identifier: Union[int, str, Identifier],
        parent: Optional[Identifier],
    ) -> Identifier:
        if isinstance(id_or_identifier, Identifier):
            return id_or_identifier
        return self.identifier(id_or_identifier, parent)

    def _check(self, entity: Entity) -> Entity:
        if entity.kind_def.name != self.kind_def.name:
            raise ValueError(f"entity of kind '{entity.kind}' passed to '{self.kind_def.name}' accessor")
        return entity
