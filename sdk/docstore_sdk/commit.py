"""
Optimistic-concurrency commit protocol for the DocStore SDK.

Standalone create/update/delete, each applied in its own single-operation
store transaction:
- create: insert; a pending identifier gets a store-allocated id
- update: version-checked overwrite (``baseVersion``)
- delete: existence check then version-checked removal

Invariants:
    - The store is the single source of truth for versions; the returned
      Entity carries the version the store reported
    - A stale version never overwrites: the store rejects it and the caller
      gets VersionConflictError
    - Nothing is retried automatically
    - A cancelled call surfaces as OperationInterruptedError (outcome unknown)

How to change safely:
    - Keep status translation in translate_status so the transaction
      coordinator reports the same conditions
    - Any new remote call must go through call_interruptible
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from .connection import (
    ABORTED,
    ALREADY_EXISTS,
    FAILED_PRECONDITION,
    NOT_FOUND,
    StoreConnection,
)
from .entity import Entity
from .errors import (
    AlreadyExistsError,
    DocStoreError,
    OperationInterruptedError,
    NotFoundError,
    StoreStatusError,
    TransportError,
    VersionConflictError,
)
from .identifier import Identifier, InvalidIdentifierError
from .query import lookup

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_interruptible(operation: str, awaitable: Awaitable[T]) -> T:
    """Await a store call, turning cancellation into OperationInterruptedError."""
    try:
        return await awaitable
    except asyncio.CancelledError as e:
        logger.warning("Store call cancelled before completion", extra={"operation": operation})
        raise OperationInterruptedError(
            f"{operation} was cancelled before the store answered; its effect is unknown",
            operation=operation,
        ) from e


async def rollback_quietly(connection: StoreConnection, transaction: str) -> None:
    """Release a transaction handle, logging instead of raising on failure."""
    try:
        await connection.rollback_transaction(transaction)
    except DocStoreError as e:
        logger.warning(
            "Rollback failed",
            extra={"transaction": transaction, "error": e.message},
        )


def translate_status(
    error: StoreStatusError,
    identifier: Optional[Identifier],
    expected_version: Optional[int] = None,
) -> Optional[DocStoreError]:
    """Map a store rejection to the SDK error it stands for.

    Returns:
        The translated error, or None if the status has no specific meaning
    """
    target = str(identifier) if identifier is not None else None
    if error.status in (ABORTED, FAILED_PRECONDITION):
        return VersionConflictError(
            f"{target} was modified concurrently: {error.message}",
            identifier=target,
            expected_version=expected_version,
        )
    if error.status == ALREADY_EXISTS:
        return AlreadyExistsError(f"{target} already exists", identifier=target)
    if error.status == NOT_FOUND:
        kind = identifier.kind if identifier is not None else None
        return NotFoundError(f"{target} not found", kind=kind, identifier=target)
    return None


def parse_mutation_result(
    entity: Entity,
    result: Dict[str, Any],
) -> Entity:
    """Apply a mutation result (allocated key, new version) to an entity."""
    identifier = entity.identifier
    if result.get("key"):
        try:
            identifier = Identifier.from_key(result["key"])
        except InvalidIdentifierError as e:
            raise TransportError(f"store returned an invalid key: {e}", method="commit") from e
    if identifier.is_pending:
        raise TransportError(f"store did not allocate an id for {identifier}", method="commit")
    errors = entity.kind_def.check_identifier(identifier)
    if errors:
        raise TransportError(
            f"store returned key {identifier} that does not fit '{entity.kind}': {'; '.join(errors)}",
            method="commit",
        )

    version = None
    if entity.kind_def.versioned and result.get("version") is not None:
        version = int(result["version"])
    return entity.evolve(identifier=identifier, version=version)


class CommitProtocol:
    """Version-checked single-entity writes.

    Example:
        >>> protocol = CommitProtocol(connection)
        >>> task = await protocol.create(Entity.new(Task, title="Ship"))
        >>> task = await protocol.update(task.with_properties(title="Shipped"))
    """

    def __init__(self, connection: StoreConnection) -> None:
        self._connection = connection

    async def create(self, entity: Entity) -> Entity:
        """Store a new entity.

        Returns:
            Entity with the assigned identifier and initial version

        Raises:
            AlreadyExistsError: If an explicit id/name is already taken
            VersionConflictError: If the store aborted because of contention
            OperationInterruptedError: If cancelled before the store answered
        """
        mutation = {"insert": entity.to_wire()}
        results = await self._commit("create", [mutation], entity.identifier)
        created = parse_mutation_result(entity, results[0])
        logger.info(
            "Entity created",
            extra={"kind": entity.kind, "identifier": str(created.identifier), "version": created.version},
        )
        return created

    async def update(self, entity: Entity) -> Entity:
        """Overwrite a stored entity, checked against its version.

        Returns:
            Entity carrying the store's new version

        Raises:
            NotFoundError: If the entity does not exist (or was never stored)
            VersionConflictError: If another writer committed since the
                entity was read
            OperationInterruptedError: If cancelled before the store answered
        """
        if entity.identifier.is_pending:
            raise NotFoundError(
                f"{entity.kind} {entity.identifier} was never stored",
                kind=entity.kind,
                identifier=str(entity.identifier),
            )

        mutation: Dict[str, Any] = {"update": entity.to_wire()}
        if entity.version is not None:
            mutation["baseVersion"] = str(entity.version)
        results = await self._commit("update", [mutation], entity.identifier, entity.version)
        updated = parse_mutation_result(entity, results[0])
        logger.info(
            "Entity updated",
            extra={"kind": entity.kind, "identifier": str(updated.identifier), "version": updated.version},
        )
        return updated

    async def save(self, entity: Entity) -> Entity:
        """Store an entity whatever its current state.

        A pending entity is created. An entity carrying a version is
        updated against that version. An assigned entity without a version
        is written whether or not it exists (last write wins).
        """
        if entity.identifier.is_pending:
            return await self.create(entity)
        if entity.version is not None:
            return await self.update(entity)

        results = await self._commit("save", [{"upsert": entity.to_wire()}], entity.identifier)
        saved = parse_mutation_result(entity, results[0])
        logger.info(
            "Entity saved",
            extra={"kind": entity.kind, "identifier": str(saved.identifier), "version": saved.version},
        )
        return saved

    async def delete(self, identifier: Identifier, expected_version: Optional[int] = None) -> None:
        """Delete a stored entity.

        Args:
            identifier: Assigned identifier of the entity
            expected_version: If given, delete only if still at this version

        Raises:
            NotFoundError: If the entity does not exist
            VersionConflictError: If the entity is no longer at expected_version
            OperationInterruptedError: If cancelled before the store answered
        """
        if identifier.is_pending:
            raise NotFoundError(
                f"{identifier} was never stored",
                kind=identifier.kind,
                identifier=str(identifier),
            )

        key = identifier.to_key()
        transaction = await call_interruptible("delete", self._connection.begin_transaction())
        try:
            found = await call_interruptible("delete", lookup(self._connection, [key], transaction))
            if not found:
                raise NotFoundError(
                    f"{identifier} not found",
                    kind=identifier.kind,
                    identifier=str(identifier),
                )
            current = found[0].get("version")
            if expected_version is not None and current is not None and int(current) != expected_version:
                raise VersionConflictError(
                    f"{identifier} is at version {current}, expected {expected_version}",
                    identifier=str(identifier),
                    expected_version=expected_version,
                )
        except DocStoreError:
            await rollback_quietly(self._connection, transaction)
            raise

        mutation: Dict[str, Any] = {"delete": key}
        if expected_version is not None:
            mutation["baseVersion"] = str(expected_version)
        await self._commit_in(transaction, "delete", [mutation], identifier, expected_version)
        logger.info("Entity deleted", extra={"kind": identifier.kind, "identifier": str(identifier)})

    async def _commit(
        self,
        operation: str,
        mutations: List[Dict[str, Any]],
        identifier: Identifier,
        expected_version: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        transaction = await call_interruptible(operation, self._connection.begin_transaction())
        return await self._commit_in(transaction, operation, mutations, identifier, expected_version)

    async def _commit_in(
        self,
        transaction: str,
        operation: str,
        mutations: List[Dict[str, Any]],
        identifier: Identifier,
        expected_version: Optional[int],
    ) -> List[Dict[str, Any]]:
        try:
            results = await call_interruptible(
                operation,
                self._connection.commit_transaction(transaction, mutations),
            )
        except StoreStatusError as e:
            translated = translate_status(e, identifier, expected_version)
            if translated is None:
                raise
            logger.warning(
                "Commit rejected",
                extra={"operation": operation, "identifier": str(identifier), "status": e.status},
            )
            raise translated from e

        if len(results) != len(mutations):
            raise TransportError(
                f"commit returned {len(results)} results for {len(mutations)} mutations",
                method="commit",
            )
        if any(result.get("conflictDetected") for result in results):
            logger.warning(
                "Commit conflict detected",
                extra={"operation": operation, "identifier": str(identifier)},
            )
            raise VersionConflictError(
                f"{identifier} was modified concurrently",
                identifier=str(identifier),
                expected_version=expected_version,
            )
        return results
