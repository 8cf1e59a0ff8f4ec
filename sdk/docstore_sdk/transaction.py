"""
Transaction coordinator for the DocStore SDK.

A Transaction stages saves and deletes client-side and applies them in one
atomic store commit.

State machine:
    NOT_STARTED --begin--> ACTIVE --commit ok--> COMMITTED
                                  --commit failed / abandon--> ABORTED

Invariants:
    - A batch is applied entirely or not at all
    - A batch is committed at most once; staging or committing after that
      raises TransactionClosedError
    - Results are returned in staging order
    - Delete targets must exist when the batch commits
    - Nothing is retried automatically

Example:
    >>> async with await coordinator.begin() as tx:
    ...     tx.push_save(task.with_properties(done=True))
    ...     tx.push_delete(old_task.identifier, old_task.version)
    ...     results = await tx.commit()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .commit import (
    call_interruptible,
    parse_mutation_result,
    rollback_quietly,
    translate_status,
)
from .connection import StoreConnection
from .entity import Entity
from .errors import (
    DocStoreError,
    NotFoundError,
    StoreStatusError,
    TransactionClosedError,
    TransactionConflictError,
    TransactionStartError,
    TransportError,
    VersionConflictError,
)
from .identifier import Identifier
from .query import QueryExecutor, lookup
from .schema import KindDef

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Lifecycle state of a Transaction."""

    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SaveOperation:
    """Staged create-or-overwrite of an entity."""

    entity: Entity
    mutation: Dict[str, Any]

    @property
    def identifier(self) -> Identifier:
        return self.entity.identifier


@dataclass(frozen=True)
class DeleteOperation:
    """Staged removal of an entity."""

    identifier: Identifier
    expected_version: Optional[int]
    mutation: Dict[str, Any]


StagedOperation = Union[SaveOperation, DeleteOperation]


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one staged operation.

    Attributes:
        operation: "save" or "delete"
        identifier: Identifier of the affected entity (assigned for saves)
        version: Version reported by the store (None for deletes and
            unversioned kinds)
        entity: The stored entity, for saves
    """

    operation: str
    identifier: Identifier
    version: Optional[int] = None
    entity: Optional[Entity] = None


class Transaction:
    """A batch of saves and deletes applied atomically.

    Create through TransactionCoordinator.begin().
    """

    def __init__(
        self,
        connection: StoreConnection,
        executor: Optional[QueryExecutor] = None,
    ) -> None:
        self._connection = connection
        self._executor = executor or QueryExecutor(connection)
        self._handle: Optional[str] = None
        self._state = TransactionState.NOT_STARTED
        self._operations: List[StagedOperation] = []

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def handle(self) -> Optional[str]:
        """Store transaction handle (None until begun)."""
        return self._handle

    @property
    def operations(self) -> tuple[StagedOperation, ...]:
        return tuple(self._operations)

    async def begin(self) -> Transaction:
        """Open the store transaction.

        Raises:
            TransactionStartError: If the store refuses or cannot be reached
            TransactionClosedError: If already begun
        """
        if self._state is not TransactionState.NOT_STARTED:
            raise TransactionClosedError(
                f"Transaction already begun (state={self._state.value})",
                state=self._state.value,
            )
        try:
            self._handle = await call_interruptible("begin_transaction", self._connection.begin_transaction())
        except TransportError as e:
            raise TransactionStartError(f"Could not begin transaction: {e.message}") from e

        self._state = TransactionState.ACTIVE
        logger.debug("Transaction begun", extra={"transaction": self._handle})
        return self

    def push_save(self, entity: Entity) -> Transaction:
        """Stage a create (pending identifier) or overwrite.

        An entity carrying a version is only written if the store still
        holds that version at commit.

        Returns:
            Self for chaining

        Raises:
            TransactionClosedError: If the batch was committed or abandoned
            SchemaMismatchError: If the entity cannot be encoded
        """
        self._ensure_active("push_save")
        wire = entity.to_wire()
        mutation: Dict[str, Any]
        if entity.identifier.is_pending:
            mutation = {"insert": wire}
        else:
            mutation = {"upsert": wire}
            if entity.version is not None:
                mutation["baseVersion"] = str(entity.version)
        self._operations.append(SaveOperation(entity, mutation))
        return self

    def push_delete(
        self,
        identifier: Identifier,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        """Stage a delete.

        Returns:
            Self for chaining

        Raises:
            TransactionClosedError: If the batch was committed or abandoned
            ValueError: If the identifier is pending
        """
        self._ensure_active("push_delete")
        if identifier.is_pending:
            raise ValueError(f"cannot delete pending identifier {identifier}")
        mutation: Dict[str, Any] = {"delete": identifier.to_key()}
        if expected_version is not None:
            mutation["baseVersion"] = str(expected_version)
        self._operations.append(DeleteOperation(identifier, expected_version, mutation))
        return self

    async def get_one(self, kind_def: KindDef, identifier: Identifier) -> Entity:
        """Read an entity inside this transaction.

        The commit fails if the entity changes before then.
        """
        self._ensure_active("get_one")
        return await self._executor.get_one(kind_def, identifier, transaction=self._handle)

    async def commit(self) -> List[OperationResult]:
        """Apply all staged operations atomically.

        Returns:
            One OperationResult per staged operation, in staging order

        Raises:
            TransactionConflictError: If a save carries a stale version, a
                delete target is missing or stale, or the store aborted the
                transaction; nothing was applied
            TransactionClosedError: If already committed or abandoned
            OperationInterruptedError: If cancelled before the store answered
        """
        self._ensure_active("commit")
        handle = self._handle
        if handle is None:
            raise TransactionClosedError("Cannot commit: transaction has no store handle", state=self._state.value)

        if not self._operations:
            self._state = TransactionState.COMMITTED
            await rollback_quietly(self._connection, handle)
            logger.debug("Empty transaction committed", extra={"transaction": handle})
            return []

        try:
            await self._verify_deletes(handle)
        except (NotFoundError, VersionConflictError) as e:
            self._state = TransactionState.ABORTED
            await rollback_quietly(self._connection, handle)
            logger.warning(
                "Transaction rejected before commit",
                extra={"transaction": handle, "reason": e.code},
            )
            raise TransactionConflictError(
                f"Transaction rejected: {e.message}",
                transaction=handle,
                cause=e,
            ) from e
        except DocStoreError:
            self._state = TransactionState.ABORTED
            await rollback_quietly(self._connection, handle)
            raise

        mutations = [op.mutation for op in self._operations]
        try:
            results = await call_interruptible(
                "commit",
                self._connection.commit_transaction(handle, mutations),
            )
        except StoreStatusError as e:
            self._state = TransactionState.ABORTED
            cause = translate_status(e, None)
            if cause is None:
                raise
            logger.warning(
                "Transaction commit rejected",
                extra={"transaction": handle, "status": e.status},
            )
            raise TransactionConflictError(
                f"Transaction rejected by the store: {e.message}",
                transaction=handle,
                cause=cause,
            ) from e
        except DocStoreError:
            self._state = TransactionState.ABORTED
            raise

        if len(results) != len(mutations):
            self._state = TransactionState.ABORTED
            raise TransportError(
                f"commit returned {len(results)} results for {len(mutations)} mutations",
                method="commit",
            )
        if any(result.get("conflictDetected") for result in results):
            self._state = TransactionState.ABORTED
            raise TransactionConflictError("Transaction conflict detected", transaction=handle)

        self._state = TransactionState.COMMITTED
        outcome = [self._result(op, result) for op, result in zip(self._operations, results)]
        logger.info(
            "Transaction committed",
            extra={"transaction": handle, "operations": len(outcome)},
        )
        return outcome

    async def abandon(self) -> None:
        """Discard the batch and release the store transaction.

        Safe to call in any state; never raises.
        """
        if self._state is not TransactionState.ACTIVE:
            return
        self._state = TransactionState.ABORTED
        if self._handle is not None:
            await rollback_quietly(self._connection, self._handle)
        logger.debug("Transaction abandoned", extra={"transaction": self._handle})

    async def __aenter__(self) -> Transaction:
        if self._state is TransactionState.NOT_STARTED:
            await self.begin()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.abandon()

    async def _verify_deletes(self, handle: str) -> None:
        deletes = [op for op in self._operations if isinstance(op, DeleteOperation)]
        if not deletes:
            return

        results = await call_interruptible(
            "commit",
            lookup(self._connection, [op.identifier.to_key() for op in deletes], handle),
        )
        versions: Dict[Identifier, Optional[str]] = {}
        for found in results:
            entity = found.get("entity") or {}
            versions[Identifier.from_key(entity.get("key") or {})] = found.get("version")

        for op in deletes:
            if op.identifier not in versions:
                raise NotFoundError(
                    f"{op.identifier} not found",
                    kind=op.identifier.kind,
                    identifier=str(op.identifier),
                )
            current = versions[op.identifier]
            if op.expected_version is not None and current is not None and int(current) != op.expected_version:
                raise VersionConflictError(
                    f"{op.identifier} is at version {current}, expected {op.expected_version}",
                    identifier=str(op.identifier),
                    expected_version=op.expected_version,
                )

    @staticmethod
    def _result(op: StagedOperation, result: Dict[str, Any]) -> OperationResult:
        if isinstance(op, SaveOperation):
            stored = parse_mutation_result(op.entity, result)
            return OperationResult("save", stored.identifier, stored.version, stored)
        return OperationResult("delete", op.identifier)

    def _ensure_active(self, operation: str) -> None:
        if self._state is not TransactionState.ACTIVE:
            raise TransactionClosedError(
                f"Cannot {operation}: transaction is {self._state.value}",
                state=self._state.value,
            )


class TransactionCoordinator:
    """Opens transactions on a connection."""

    def __init__(self, connection: StoreConnection, executor: Optional[QueryExecutor] = None) -> None:
        self._connection = connection
        self._executor = executor or QueryExecutor(connection)

    async def begin(self) -> Transaction:
        """Open a new transaction.

        Raises:
            TransactionStartError: If the store cannot open one
        """
        return await Transaction(self._connection, self._executor).begin()
