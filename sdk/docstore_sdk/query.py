"""
Query executor for the DocStore SDK.

Turns typed requests into store lookups and queries:
- get_one: fetch by full identifier
- get_one_by: the unique entity whose indexed property equals a value
- get_by: every such entity, lazily, one page per store round trip

Invariants:
    - Filters only reference properties declared as indexed
    - Pages are fetched only when the caller advances past the current one
    - Results are delivered in store order; nothing is reordered or deduplicated
    - An empty page is never delivered
    - A PagedResult is single-pass; iterating it again continues where it stopped

How to change safely:
    - Keep the termination rules in PagedResult._fetch in one place
    - New filter operators must be supported by every StoreConnection
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

from .config import DEFAULT_PAGE_SIZE
from .connection import StoreConnection
from .entity import Entity
from .errors import AmbiguousResultError, NotFoundError, SchemaMismatchError
from .identifier import Identifier
from .schema import KindDef, PropertyDef
from .values import ValueEncodingError, encode_value

logger = logging.getLogger(__name__)

# moreResults values reported by the store
NOT_FINISHED = "NOT_FINISHED"
MORE_RESULTS_AFTER_LIMIT = "MORE_RESULTS_AFTER_LIMIT"
MORE_RESULTS_AFTER_CURSOR = "MORE_RESULTS_AFTER_CURSOR"
NO_MORE_RESULTS = "NO_MORE_RESULTS"


async def lookup(
    connection: StoreConnection,
    keys: List[Dict[str, Any]],
    transaction: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Look keys up, repeating the request for keys the store deferred.

    Returns:
        The ``found`` entity results of every round; keys absent from it
        are missing
    """
    body: Dict[str, Any] = {"keys": keys}
    if transaction:
        body["readOptions"] = {"transaction": transaction}

    found: List[Dict[str, Any]] = []
    while body["keys"]:
        response = await connection.execute("lookup", body)
        found.extend(response.get("found") or [])
        body["keys"] = response.get("deferred") or []
        if body["keys"]:
            logger.debug("Lookup deferred keys", extra={"deferred": len(body["keys"])})
    return found


@dataclass(frozen=True)
class QueryDescriptor:
    """A resumable equality query.

    Attributes:
        kind: Kind name
        property: Attribute name of the filtered (indexed) property
        value: Value the property must equal
        page_size: Maximum entities per page
        cursor: Opaque store position to continue from (None: beginning)
        namespace: Partition namespace
    """

    kind: str
    property: str
    value: Any
    page_size: int
    cursor: Optional[str] = None
    namespace: Optional[str] = None

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError(f"page_size must be positive, got {self.page_size}")

    def with_cursor(self, cursor: Optional[str]) -> QueryDescriptor:
        return replace(self, cursor=cursor)


@dataclass(frozen=True)
class QueryPage:
    """One batch of query results as returned by the store."""

    entities: List[Tuple[Entity, Optional[str]]]
    end_cursor: Optional[str]
    more_results: str


class PagedResult:
    """Lazy, pull-based sequence of entities matching a query.

    Iterate entity by entity with ``async for``, or page by page with
    ``pages()``. Either way the next page is requested only once the
    current one has been handed out.

    Example:
        >>> result = executor.get_by(Task, "owner", "alice", page_size=20)
        >>> async for page in result.pages():
        ...     render(page)
        >>> saved = result.descriptor  # persist to continue later
    """

    def __init__(
        self,
        executor: QueryExecutor,
        kind_def: KindDef,
        descriptor: QueryDescriptor,
        transaction: Optional[str] = None,
    ) -> None:
        self._executor = executor
        self._kind_def = kind_def
        self._start = descriptor
        self._transaction = transaction
        self._buffer: Deque[Tuple[Entity, Optional[str]]] = deque()
        self._fetch_cursor = descriptor.cursor
        self._cursor = descriptor.cursor
        self._exhausted = False
        self._pages_fetched = 0

    @property
    def cursor(self) -> Optional[str]:
        """Position after the last delivered entity; None once exhausted."""
        if self._exhausted and not self._buffer:
            return None
        return self._cursor

    @property
    def descriptor(self) -> QueryDescriptor:
        """Descriptor that resumes after the last delivered entity."""
        return self._start.with_cursor(self.cursor)

    @property
    def exhausted(self) -> bool:
        return self._exhausted and not self._buffer

    @property
    def pages_fetched(self) -> int:
        return self._pages_fetched

    def __aiter__(self) -> PagedResult:
        return self

    async def __anext__(self) -> Entity:
        while not self._buffer:
            if self._exhausted:
                raise StopAsyncIteration
            await self._fetch()
        entity, cursor = self._buffer.popleft()
        if cursor is not None:
            self._cursor = cursor
        return entity

    async def pages(self) -> AsyncIterator[List[Entity]]:
        """Iterate page by page.

        If entities of the current page were already taken with ``async
        for``, the first page yielded holds the rest of it.
        """
        while True:
            if not self._buffer:
                if self._exhausted:
                    return
                await self._fetch()
                continue
            page = []
            while self._buffer:
                entity, cursor = self._buffer.popleft()
                if cursor is not None:
                    self._cursor = cursor
                page.append(entity)
            yield page

    async def to_list(self) -> List[Entity]:
        """Drain the remaining entities into a list."""
        return [entity async for entity in self]

    async def _fetch(self) -> None:
        descriptor = self._start.with_cursor(self._fetch_cursor)
        page = await self._executor.fetch_page(
            self._kind_def,
            descriptor,
            limit=descriptor.page_size,
            transaction=self._transaction,
        )
        self._pages_fetched += 1

        short = len(page.entities) < descriptor.page_size and page.more_results != NOT_FINISHED
        stalled = not page.entities and page.end_cursor == self._fetch_cursor
        self._exhausted = (
            short or stalled or not page.end_cursor or page.more_results == NO_MORE_RESULTS
        )

        entities = list(page.entities)
        if entities and entities[-1][1] is None:
            entities[-1] = (entities[-1][0], page.end_cursor)
        self._buffer.extend(entities)
        self._fetch_cursor = page.end_cursor

        logger.debug(
            "Fetched query page",
            extra={
                "kind": descriptor.kind,
                "property": descriptor.property,
                "count": len(entities),
                "more_results": page.more_results,
                "exhausted": self._exhausted,
            },
        )


class QueryExecutor:
    """Executes typed reads against a StoreConnection.

    Example:
        >>> executor = QueryExecutor(connection)
        >>> task = await executor.get_one(Task, Identifier.of("Task", 7))
    """

    def __init__(
        self,
        connection: StoreConnection,
        *,
        namespace: Optional[str] = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if default_page_size <= 0:
            raise ValueError(f"default_page_size must be positive, got {default_page_size}")
        self._connection = connection
        self._namespace = namespace
        self._default_page_size = default_page_size

    @property
    def namespace(self) -> Optional[str]:
        return self._namespace

    async def get_one(
        self,
        kind_def: KindDef,
        identifier: Identifier,
        *,
        transaction: Optional[str] = None,
    ) -> Entity:
        """Fetch an entity by its full identifier.

        Args:
            kind_def: Declared kind
            identifier: Assigned identifier of the entity
            transaction: Read inside this transaction handle

        Returns:
            Entity with the store's current version

        Raises:
            NotFoundError: If no entity has this identifier
            SchemaMismatchError: If the identifier or stored data do not fit
                the kind
        """
        errors = kind_def.check_identifier(identifier)
        if identifier.is_pending:
            errors.append(f"identifier {identifier} is pending")
        if errors:
            raise SchemaMismatchError("; ".join(errors), kind=kind_def.name, errors=errors)

        found = await lookup(self._connection, [identifier.to_key()], transaction)
        if not found:
            raise NotFoundError(
                f"{kind_def.name} {identifier} not found",
                kind=kind_def.name,
                identifier=str(identifier),
            )
        result = found[0]
        return Entity.from_wire(kind_def, result.get("entity") or {}, result.get("version"))

    async def get_one_by(
        self,
        kind_def: KindDef,
        property_name: str,
        value: Any,
        *,
        transaction: Optional[str] = None,
    ) -> Entity:
        """Fetch the single entity whose indexed property equals ``value``.

        Raises:
            NotFoundError: If nothing matches
            AmbiguousResultError: If more than one entity matches
            SchemaMismatchError: If the property is not declared indexed
        """
        descriptor = self.describe(kind_def, property_name, value, page_size=2)
        page = await self.fetch_page(kind_def, descriptor, limit=2, transaction=transaction)

        if not page.entities:
            raise NotFoundError(
                f"No {kind_def.name} with {property_name} = {value!r}",
                kind=kind_def.name,
            )
        if len(page.entities) > 1:
            raise AmbiguousResultError(
                f"More than one {kind_def.name} with {property_name} = {value!r}",
                kind=kind_def.name,
                property_name=property_name,
            )
        return page.entities[0][0]

    def get_by(
        self,
        kind_def: KindDef,
        property_name: str,
        value: Any,
        *,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
        transaction: Optional[str] = None,
    ) -> PagedResult:
        """Lazily iterate every entity whose indexed property equals ``value``.

        Nothing is fetched until the result is iterated.

        Args:
            kind_def: Declared kind
            property_name: Indexed property to filter on
            value: Value to match
            page_size: Entities per page (default: the kind's, then the
                executor's)
            cursor: Continue from a cursor of an earlier result

        Raises:
            SchemaMismatchError: If the property is not declared indexed
            ValueError: If page_size is not positive
        """
        descriptor = self.describe(kind_def, property_name, value, page_size=page_size, cursor=cursor)
        return PagedResult(self, kind_def, descriptor, transaction)

    def resume(self, kind_def: KindDef, descriptor: QueryDescriptor) -> PagedResult:
        """Continue a query from a persisted descriptor."""
        if descriptor.kind != kind_def.name:
            raise SchemaMismatchError(
                f"descriptor is for kind '{descriptor.kind}', not '{kind_def.name}'",
                kind=kind_def.name,
            )
        self._filter_property(kind_def, descriptor.property)
        return PagedResult(self, kind_def, descriptor)

    def describe(
        self,
        kind_def: KindDef,
        property_name: str,
        value: Any,
        *,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> QueryDescriptor:
        """Build a validated descriptor for an equality query."""
        self._filter_property(kind_def, property_name)
        return QueryDescriptor(
            kind=kind_def.name,
            property=property_name,
            value=value,
            page_size=page_size or kind_def.page_size or self._default_page_size,
            cursor=cursor,
            namespace=self._namespace,
        )

    async def fetch_page(
        self,
        kind_def: KindDef,
        descriptor: QueryDescriptor,
        *,
        limit: int,
        transaction: Optional[str] = None,
    ) -> QueryPage:
        """Run one store query round trip."""
        prop_def = self._filter_property(kind_def, descriptor.property)
        try:
            encoded = encode_value(descriptor.value, prop_def.kind.element_kind)
        except ValueEncodingError as e:
            raise SchemaMismatchError(
                f"Cannot filter on '{descriptor.property}': {e}",
                kind=kind_def.name,
                errors=[str(e)],
            ) from e

        query: Dict[str, Any] = {
            "kind": [{"name": kind_def.name}],
            "filter": {
                "propertyFilter": {
                    "property": {"name": prop_def.storage_name},
                    "op": "EQUAL",
                    "value": encoded,
                }
            },
            "limit": limit,
        }
        if descriptor.cursor:
            query["startCursor"] = descriptor.cursor

        body: Dict[str, Any] = {"query": query}
        if descriptor.namespace:
            body["partitionId"] = {"namespaceId": descriptor.namespace}
        if transaction:
            body["readOptions"] = {"transaction": transaction}

        response = await self._connection.execute("runQuery", body)
        batch = response.get("batch") or {}
        entities = [
            (
                Entity.from_wire(kind_def, result.get("entity") or {}, result.get("version")),
                result.get("cursor"),
            )
            for result in batch.get("entityResults") or []
        ]
        return QueryPage(
            entities=entities,
            end_cursor=batch.get("endCursor") or None,
            more_results=batch.get("moreResults", NO_MORE_RESULTS),
        )

    @staticmethod
    def _filter_property(kind_def: KindDef, property_name: str) -> PropertyDef:
        prop_def = kind_def.get_property(property_name)
        if prop_def is None:
            raise SchemaMismatchError(
                f"'{property_name}' is not a property of '{kind_def.name}'",
                kind=kind_def.name,
            )
        if not prop_def.indexed:
            raise SchemaMismatchError(
                f"'{property_name}' of '{kind_def.name}' is not indexed",
                kind=kind_def.name,
            )
        return prop_def
