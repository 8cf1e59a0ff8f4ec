"""
In-memory store connection for testing.

This module provides an in-process emulation of the remote store for:
- Unit tests
- Integration tests of the commit and transaction protocols
- Local development without credentials or network

It follows the remote store's semantics closely enough for the engine's
invariants to be exercised:
- Ids are allocated for keys whose self element is pending
- Every write bumps the entity's version; versions survive deletes
- ``baseVersion`` is checked atomically with the write
- Commits apply all mutations or none
- Transactions abort if an entity they read changed before commit
- Equality queries return results in key order with resumable cursors

Invariants:
    - All data is lost on process exit
    - Safe to use from multiple coroutines (one asyncio lock)
"""

from __future__ import annotations

import asyncio
import base64
import copy
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .connection import (
    ABORTED,
    ALREADY_EXISTS,
    INVALID_ARGUMENT,
    NOT_FOUND,
    RESOURCE_EXHAUSTED,
)
from .errors import StoreStatusError
from .identifier import Identifier, InvalidIdentifierError
from .values import ValueEncodingError, decode_value

logger = logging.getLogger(__name__)

_MUTATION_OPS = ("insert", "update", "upsert", "delete")


@dataclass
class StoredEntity:
    """An entity as held by the in-memory store."""

    properties: Dict[str, Any]
    version: int


@dataclass
class _OpenTransaction:
    read_versions: Dict[Identifier, int] = field(default_factory=dict)


class InMemoryStoreConnection:
    """In-memory implementation of StoreConnection for testing.

    Attributes:
        batch_limit: If set, runQuery returns at most this many results per
            call and reports NOT_FINISHED, like the store truncating a batch
        max_transactions: If set, beginTransaction fails with
            RESOURCE_EXHAUSTED once this many transactions are open

    Example:
        >>> store = InMemoryStoreConnection()
        >>> client = StoreClient(store)
        >>> created = await client.create(Entity.new(Task, title="t"))
        >>> store.get_stored(created.identifier).version
        1
    """

    def __init__(
        self,
        *,
        first_id: int = 1,
        batch_limit: Optional[int] = None,
        max_transactions: Optional[int] = None,
    ) -> None:
        self.batch_limit = batch_limit
        self.max_transactions = max_transactions
        self._entities: Dict[Identifier, StoredEntity] = {}
        self._versions: Dict[Identifier, int] = {}
        self._transactions: Dict[str, _OpenTransaction] = {}
        self._ids = itertools.count(first_id)
        self._transaction_ids = itertools.count(1)
        self._failures: Dict[str, List[BaseException]] = {}
        self._lock = asyncio.Lock()
        self.calls: List[str] = []

    async def close(self) -> None:
        """Drop open transactions (stored entities are kept)."""
        self._transactions.clear()
        logger.debug("InMemoryStoreConnection closed")

    # StoreConnection protocol

    async def execute(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._record(method)
        async with self._lock:
            if method == "lookup":
                return self._lookup(body)
            if method == "runQuery":
                return self._run_query(body)
            if method == "commit":
                if body.get("mode") == "TRANSACTIONAL" or body.get("transaction"):
                    results = self._commit_transaction(body.get("transaction", ""), body.get("mutations", []))
                else:
                    results = self._apply(body.get("mutations", []), transactional=False)
                return {"mutationResults": results}
            if method == "allocateIds":
                return self._allocate_ids(body)
        raise StoreStatusError(INVALID_ARGUMENT, f"unsupported method {method}", method=method)

    async def begin_transaction(self) -> str:
        self._record("beginTransaction")
        async with self._lock:
            if self.max_transactions is not None and len(self._transactions) >= self.max_transactions:
                raise StoreStatusError(
                    RESOURCE_EXHAUSTED,
                    "too many open transactions",
                    method="beginTransaction",
                )
            handle = base64.b64encode(f"txn-{next(self._transaction_ids)}".encode()).decode("ascii")
            self._transactions[handle] = _OpenTransaction()
            logger.debug("Transaction opened", extra={"transaction": handle})
            return handle

    async def commit_transaction(
        self,
        transaction: str,
        mutations: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        self._record("commit")
        async with self._lock:
            return self._commit_transaction(transaction, mutations)

    async def rollback_transaction(self, transaction: str) -> None:
        self._record("rollback")
        async with self._lock:
            if self._transactions.pop(transaction, None) is None:
                raise StoreStatusError(INVALID_ARGUMENT, "unknown transaction", method="rollback")
            logger.debug("Transaction rolled back", extra={"transaction": transaction})

    # Request handlers

    def _lookup(self, body: Dict[str, Any]) -> Dict[str, Any]:
        transaction = self._read_transaction(body, "lookup")
        found: List[Dict[str, Any]] = []
        missing: List[Dict[str, Any]] = []
        for key in body.get("keys", []):
            identifier = self._identifier(key, "lookup")
            if identifier.is_pending:
                raise StoreStatusError(INVALID_ARGUMENT, "lookup key is incomplete", method="lookup")
            stored = self._entities.get(identifier)
            if transaction is not None:
                transaction.read_versions[identifier] = stored.version if stored else 0
            if stored is None:
                missing.append(
                    {
                        "entity": {"key": identifier.to_key()},
                        "version": str(self._versions.get(identifier, 0)),
                    }
                )
            else:
                found.append(self._entity_result(identifier, stored))
        return {"found": found, "missing": missing}

    def _run_query(self, body: Dict[str, Any]) -> Dict[str, Any]:
        transaction = self._read_transaction(body, "runQuery")
        query = body.get("query") or {}
        kinds = [k.get("name") for k in query.get("kind", [])]
        if len(kinds) != 1:
            raise StoreStatusError(INVALID_ARGUMENT, "query must name exactly one kind", method="runQuery")
        namespace = (body.get("partitionId") or {}).get("namespaceId")
        filters = self._equality_filters(query.get("filter"))
        limit = query.get("limit")
        start_after = self._decode_cursor(query.get("startCursor"))

        matches = [
            identifier
            for identifier in sorted(self._entities)
            if identifier.kind == kinds[0]
            and identifier.namespace == (namespace or None)
            and (start_after is None or identifier > start_after)
            and all(self._matches(self._entities[identifier], name, value) for name, value in filters)
        ]

        take = len(matches)
        if limit is not None:
            take = min(take, int(limit))
        truncated = self.batch_limit is not None and take > self.batch_limit
        if truncated:
            take = self.batch_limit

        batch = matches[:take]
        results = []
        for identifier in batch:
            stored = self._entities[identifier]
            if transaction is not None:
                transaction.read_versions[identifier] = stored.version
            result = self._entity_result(identifier, stored)
            result["cursor"] = self._encode_cursor(identifier)
            results.append(result)

        if truncated:
            more = "NOT_FINISHED"
        elif len(matches) > take:
            more = "MORE_RESULTS_AFTER_LIMIT"
        else:
            more = "NO_MORE_RESULTS"

        end_cursor = results[-1]["cursor"] if results else (query.get("startCursor") or "")
        return {
            "batch": {
                "entityResultType": "FULL",
                "entityResults": results,
                "endCursor": end_cursor,
                "moreResults": more,
            },
            "query": query,
        }

    def _allocate_ids(self, body: Dict[str, Any]) -> Dict[str, Any]:
        keys = []
        for key in body.get("keys", []):
            identifier = self._identifier(key, "allocateIds")
            if not identifier.is_pending:
                raise StoreStatusError(INVALID_ARGUMENT, "allocateIds key is complete", method="allocateIds")
            keys.append(self._allocate(identifier, self._versions).to_key())
        return {"keys": keys}

    def _commit_transaction(
        self,
        transaction: str,
        mutations: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        state = self._transactions.pop(transaction, None)
        if state is None:
            raise StoreStatusError(INVALID_ARGUMENT, "unknown or expired transaction", method="commit")
        for identifier, version in state.read_versions.items():
            stored = self._entities.get(identifier)
            if (stored.version if stored else 0) != version:
                logger.debug(
                    "Transaction aborted by concurrent write",
                    extra={"transaction": transaction, "identifier": str(identifier)},
                )
                raise StoreStatusError(
                    ABORTED,
                    "too much contention on these datastore entities",
                    method="commit",
                )
        return self._apply(mutations, transactional=True)

    def _apply(self, mutations: List[Dict[str, Any]], *, transactional: bool) -> List[Dict[str, Any]]:
        """Apply mutations atomically.

        Works on copies and only swaps them in when every mutation has been
        accepted.
        """
        entities = dict(self._entities)
        versions = dict(self._versions)
        results: List[Dict[str, Any]] = []
        touched: set[Identifier] = set()

        for mutation in mutations:
            ops = [op for op in _MUTATION_OPS if op in mutation]
            if len(ops) != 1:
                raise StoreStatusError(INVALID_ARGUMENT, "mutation must have exactly one operation", method="commit")
            op = ops[0]
            payload = mutation[op]
            key = payload if op == "delete" else payload.get("key", {})
            identifier = self._identifier(key, "commit")

            allocated = False
            if identifier.is_pending:
                if op not in ("insert", "upsert"):
                    raise StoreStatusError(INVALID_ARGUMENT, f"{op} requires a complete key", method="commit")
                identifier = self._allocate(identifier, versions)
                allocated = True
            if identifier in touched:
                raise StoreStatusError(
                    INVALID_ARGUMENT,
                    "a commit may not contain multiple mutations affecting the same entity",
                    method="commit",
                )
            touched.add(identifier)

            current = entities.get(identifier)
            current_version = current.version if current else 0
            if "baseVersion" in mutation and int(mutation["baseVersion"]) != current_version:
                if transactional:
                    raise StoreStatusError(
                        ABORTED,
                        f"entity {identifier} was modified (version {current_version})",
                        method="commit",
                    )
                results.append({"version": str(current_version), "conflictDetected": True})
                continue

            if op == "insert" and current is not None:
                raise StoreStatusError(ALREADY_EXISTS, f"entity {identifier} already exists", method="commit")
            if op == "update" and current is None:
                raise StoreStatusError(NOT_FOUND, f"no entity to update: {identifier}", method="commit")

            if op == "delete":
                if current is not None:
                    del entities[identifier]
                    versions[identifier] = versions.get(identifier, 0) + 1
                results.append({"version": str(versions.get(identifier, 0)), "conflictDetected": False})
                continue

            new_version = versions.get(identifier, 0) + 1
            versions[identifier] = new_version
            entities[identifier] = StoredEntity(
                properties=copy.deepcopy(payload.get("properties", {})),
                version=new_version,
            )
            result: Dict[str, Any] = {"version": str(new_version), "conflictDetected": False}
            if allocated:
                result["key"] = identifier.to_key()
            results.append(result)

        self._entities = entities
        self._versions = versions
        return results

    # Helpers

    def _allocate(self, pending: Identifier, versions: Dict[Identifier, int]) -> Identifier:
        # Skip ids callers already chose explicitly.
        while True:
            candidate = pending.assign_id(next(self._ids))
            if candidate not in versions:
                return candidate

    def _record(self, method: str) -> None:
        self.calls.append(method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _read_transaction(self, body: Dict[str, Any], method: str) -> Optional[_OpenTransaction]:
        handle = (body.get("readOptions") or {}).get("transaction")
        if not handle:
            return None
        state = self._transactions.get(handle)
        if state is None:
            raise StoreStatusError(INVALID_ARGUMENT, "unknown or expired transaction", method=method)
        return state

    @staticmethod
    def _identifier(key: Dict[str, Any], method: str) -> Identifier:
        try:
            return Identifier.from_key(key)
        except InvalidIdentifierError as e:
            raise StoreStatusError(INVALID_ARGUMENT, f"invalid key: {e}", method=method) from e

    @staticmethod
    def _entity_result(identifier: Identifier, stored: StoredEntity) -> Dict[str, Any]:
        return {
            "entity": {"key": identifier.to_key(), "properties": copy.deepcopy(stored.properties)},
            "version": str(stored.version),
        }

    @staticmethod
    def _equality_filters(query_filter: Optional[Dict[str, Any]]) -> List[tuple[str, Any]]:
        if not query_filter:
            return []
        if "compositeFilter" in query_filter:
            composite = query_filter["compositeFilter"]
            if composite.get("op") != "AND":
                raise StoreStatusError(INVALID_ARGUMENT, "only AND composite filters are supported", method="runQuery")
            filters: List[tuple[str, Any]] = []
            for sub in composite.get("filters", []):
                filters.extend(InMemoryStoreConnection._equality_filters(sub))
            return filters
        property_filter = query_filter.get("propertyFilter") or {}
        if property_filter.get("op") != "EQUAL":
            raise StoreStatusError(INVALID_ARGUMENT, "only EQUAL filters are supported", method="runQuery")
        name = (property_filter.get("property") or {}).get("name")
        try:
            value = decode_value(property_filter.get("value") or {})
        except ValueEncodingError as e:
            raise StoreStatusError(INVALID_ARGUMENT, f"invalid filter value: {e}", method="runQuery") from e
        return [(name, value)]

    @staticmethod
    def _matches(stored: StoredEntity, name: str, expected: Any) -> bool:
        encoded = stored.properties.get(name)
        if encoded is None:
            return False
        items = encoded["arrayValue"].get("values", []) if "arrayValue" in encoded else [encoded]
        for item in items:
            if item.get("excludeFromIndexes"):
                continue
            value = decode_value(item)
            if value == expected and type(value) is type(expected):
                return True
        return False

    @staticmethod
    def _encode_cursor(identifier: Identifier) -> str:
        raw = json.dumps(identifier.to_key(), sort_keys=True, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @staticmethod
    def _decode_cursor(cursor: Optional[str]) -> Optional[Identifier]:
        if not cursor:
            return None
        try:
            return Identifier.from_key(json.loads(base64.urlsafe_b64decode(cursor.encode("ascii"))))
        except (ValueError, InvalidIdentifierError) as e:
            raise StoreStatusError(INVALID_ARGUMENT, "invalid cursor", method="runQuery") from e

    # Testing helpers

    def inject_failure(self, method: str, exception: BaseException) -> None:
        """Make the next call to ``method`` raise ``exception``.

        ``method`` is a store method name: lookup, runQuery, commit,
        beginTransaction, rollback.
        """
        self._failures.setdefault(method, []).append(exception)

    def get_stored(self, identifier: Identifier) -> Optional[StoredEntity]:
        """Get the stored entity for an identifier (testing helper)."""
        return self._entities.get(identifier)

    def entity_count(self, kind: Optional[str] = None) -> int:
        """Count stored entities, optionally of one kind (testing helper)."""
        if kind is None:
            return len(self._entities)
        return sum(1 for identifier in self._entities if identifier.kind == kind)

    @property
    def open_transactions(self) -> int:
        return len(self._transactions)

    def touch(self, identifier: Identifier) -> int:
        """Bump an entity's version as a concurrent writer would (testing helper).

        Returns:
            The new version
        """
        stored = self._entities[identifier]
        stored.version = self._versions[identifier] = self._versions.get(identifier, 0) + 1
        return stored.version
