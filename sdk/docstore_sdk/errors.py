"""
Error types for the DocStore SDK.

This module defines all exception types raised by the SDK:
- DocStoreError: Base exception
- NotFoundError / AlreadyExistsError: Identity errors reported by the store
- VersionConflictError / TransactionConflictError: Optimistic concurrency failures
- AmbiguousResultError: A single-result lookup matched several entities
- SchemaMismatchError / PropertyNotFoundError: Envelope shape errors
- TransactionStartError / TransactionClosedError: Transaction lifecycle errors
- OperationInterruptedError: A call was cancelled before the store answered
- TransportError / StoreStatusError: Failures passed through from the connection

Invariants:
    - All errors inherit from DocStoreError
    - Errors include context for debugging
    - Only conflict errors are retryable, and only after re-reading
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DocStoreError(Exception):
    """Base exception for all DocStore SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        retryable: Whether re-reading and re-applying may succeed
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCSTORE_ERROR"
        self.details = details or {}


class TransportError(DocStoreError):
    """The store connection failed.

    Raised when:
    - The store is unreachable or the request times out
    - The store answers with something that is not a valid response
    - The store rejects a request for a reason the engine does not interpret
    """

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        code: str = "TRANSPORT_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("method", method)
        super().__init__(message, code=code, details=details)
        self.method = method


class StoreStatusError(TransportError):
    """The store rejected a request with an RPC status.

    The status uses the Google RPC names (``NOT_FOUND``, ``ALREADY_EXISTS``,
    ``ABORTED``, ``FAILED_PRECONDITION``, ``RESOURCE_EXHAUSTED``...). The
    engine translates the statuses it understands into the specific errors
    below and passes the rest through unchanged.
    """

    def __init__(
        self,
        status: str,
        message: str,
        method: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            method=method,
            code="STORE_STATUS",
            details={"status": status, "http_status": http_status},
        )
        self.status = status
        self.http_status = http_status


class NotFoundError(DocStoreError):
    """Entity not found.

    Raised when:
    - A lookup by identifier finds nothing
    - A query expected to match one entity matches none
    - An update or delete targets an entity that does not exist
    """

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"kind": kind, "identifier": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class AlreadyExistsError(DocStoreError):
    """An explicit id or name collided with an existing entity on create."""

    def __init__(self, message: str, identifier: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="ALREADY_EXISTS",
            details={"identifier": identifier},
        )
        self.identifier = identifier


class VersionConflictError(DocStoreError):
    """Another writer committed since this entity was read.

    Callers must re-fetch the entity and re-apply their change. The SDK
    never retries on its own.

    Attributes:
        identifier: Entity that conflicted
        expected_version: Version supplied by the caller
    """

    retryable = True

    def __init__(
        self,
        message: str,
        identifier: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="VERSION_CONFLICT",
            details={
                "identifier": identifier,
                "expected_version": expected_version,
            },
        )
        self.identifier = identifier
        self.expected_version = expected_version


class TransactionConflictError(DocStoreError):
    """A transaction batch was rejected as a whole.

    Raised when:
    - A staged save carries a stale version
    - A staged delete targets an entity that does not exist
    - The store aborted the transaction because of contention

    No staged operation was applied. The triggering error, when known,
    is available as ``cause``.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        transaction: Optional[str] = None,
        cause: Optional[DocStoreError] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSACTION_CONFLICT",
            details={
                "transaction": transaction,
                "cause": cause.code if cause is not None else None,
            },
        )
        self.transaction = transaction
        self.cause = cause


class AmbiguousResultError(DocStoreError):
    """A single-result query matched more than one entity."""

    def __init__(self, message: str, kind: str, property_name: str) -> None:
        super().__init__(
            message,
            code="AMBIGUOUS_RESULT",
            details={"kind": kind, "property": property_name},
        )
        self.kind = kind
        self.property_name = property_name


class SchemaMismatchError(DocStoreError):
    """Entity data does not match the declared kind.

    Raised when:
    - A required property is missing
    - A property value has the wrong type
    - A property is not declared for the kind
    - The identifier path does not match the declared key shape
    """

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="SCHEMA_MISMATCH",
            details={"kind": kind, "errors": errors or []},
        )
        self.kind = kind
        self.errors = errors or []


class PropertyNotFoundError(DocStoreError):
    """Property is absent from an entity.

    Includes suggestions for similar property names.
    """

    def __init__(
        self,
        property_name: str,
        kind: str,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Property '{property_name}' not set on '{kind}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"

        super().__init__(
            msg,
            code="PROPERTY_NOT_FOUND",
            details={
                "property": property_name,
                "kind": kind,
                "suggestions": suggestions,
            },
        )
        self.property_name = property_name
        self.kind = kind
        self.suggestions = suggestions


class TransactionStartError(DocStoreError):
    """The store could not open a transaction."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSACTION_START_FAILED")


class TransactionClosedError(DocStoreError):
    """Operation attempted on a committed or abandoned transaction."""

    def __init__(self, message: str, state: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="TRANSACTION_CLOSED",
            details={"state": state},
        )
        self.state = state


class OperationInterruptedError(DocStoreError):
    """A call was cancelled before the store answered.

    The effect on the store is unknown: the operation may or may not have
    been applied. Re-read before deciding what to do next.
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="INTERRUPTED",
            details={"operation": operation},
        )
        self.operation = operation
