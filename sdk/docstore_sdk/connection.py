"""
Store connection protocol and REST implementation for the DocStore SDK.

The engine talks to the remote store only through the StoreConnection
protocol. Request and response bodies use the store's JSON shapes (Cloud
Datastore v1): keys, entities, queries, mutations and mutation results.

Implementations:
- HttpStoreConnection: REST over httpx (this module)
- InMemoryStoreConnection: in-process emulation for tests (memory.py)

Contract:
    - execute() runs a single non-transactional lookup/runQuery/commit
    - begin_transaction() returns an opaque transaction handle
    - commit_transaction() applies all mutations atomically or none of them;
      a mutation carrying ``baseVersion`` is applied only if the stored
      version still equals it (check-and-set), otherwise the commit fails
      with status ABORTED or reports ``conflictDetected``
    - rollback_transaction() releases the handle without applying anything
    - Rejections are raised as StoreStatusError, transport failures as
      TransportError
"""

from __future__ import annotations

import inspect
import logging
from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

import httpx

from .errors import StoreStatusError, TransportError

if TYPE_CHECKING:
    from .config import StoreSettings

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://datastore.googleapis.com"

# Google RPC status names used by the engine
NOT_FOUND = "NOT_FOUND"
ALREADY_EXISTS = "ALREADY_EXISTS"
ABORTED = "ABORTED"
FAILED_PRECONDITION = "FAILED_PRECONDITION"
RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
INVALID_ARGUMENT = "INVALID_ARGUMENT"

_HTTP_STATUS_NAMES = {
    400: INVALID_ARGUMENT,
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: NOT_FOUND,
    409: ABORTED,
    412: FAILED_PRECONDITION,
    429: RESOURCE_EXHAUSTED,
    499: "CANCELLED",
    500: "INTERNAL",
    503: "UNAVAILABLE",
    504: "DEADLINE_EXCEEDED",
}

EXECUTE_METHODS = frozenset({"lookup", "runQuery", "commit", "allocateIds", "reserveIds"})

TokenProvider = Callable[[], Union[str, Awaitable[str]]]


@runtime_checkable
class StoreConnection(Protocol):
    """Protocol for remote store connections.

    This is the only way the engine reaches the store. It is agnostic to
    authentication and transport; implementations own both.
    """

    @abstractmethod
    async def execute(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Run a single non-transactional request.

        Args:
            method: ``lookup``, ``runQuery``, ``commit``, ``allocateIds``
                or ``reserveIds``
            body: Request body

        Returns:
            Response body

        Raises:
            StoreStatusError: If the store rejects the request
            TransportError: If the store cannot be reached
        """
        ...

    @abstractmethod
    async def begin_transaction(self) -> str:
        """Open a read-write transaction and return its handle."""
        ...

    @abstractmethod
    async def commit_transaction(
        self,
        transaction: str,
        mutations: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Atomically apply mutations within a transaction.

        Returns:
            One mutation result per mutation, in order
        """
        ...

    @abstractmethod
    async def rollback_transaction(self, transaction: str) -> None:
        """Release a transaction without applying anything."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connection resources."""
        ...


class HttpStoreConnection:
    """REST connection to a Cloud Datastore compatible endpoint.

    Example:
        >>> async with HttpStoreConnection("my-project", access_token=token) as conn:
        ...     client = StoreClient(conn)

    Works against the Datastore emulator by pointing ``endpoint`` at it and
    leaving the credentials unset.
    """

    def __init__(
        self,
        project_id: str,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        access_token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the connection.

        Args:
            project_id: Project owning the store
            endpoint: Base URL of the REST API
            access_token: Static bearer token
            token_provider: Callable (sync or async) returning a fresh token
                per request; takes precedence over access_token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests, proxies)
        """
        if not project_id:
            raise ValueError("project_id is required")
        self._project_id = project_id
        self._endpoint = endpoint.rstrip("/")
        self._access_token = access_token
        self._token_provider = token_provider
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: StoreSettings,
        *,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> HttpStoreConnection:
        """Create a connection from StoreSettings."""
        return cls(
            settings.project_id,
            endpoint=settings.endpoint,
            access_token=settings.access_token,
            token_provider=token_provider,
            timeout=settings.timeout,
            transport=transport,
        )

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._endpoint,
            timeout=self._timeout,
            transport=self._transport,
        )
        logger.debug("Store connection opened", extra={"endpoint": self._endpoint})

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Store connection closed", extra={"endpoint": self._endpoint})

    async def __aenter__(self) -> HttpStoreConnection:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def execute(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if method not in EXECUTE_METHODS:
            raise ValueError(f"Unsupported store method: {method}")
        return await self._post(method, body)

    async def begin_transaction(self) -> str:
        response = await self._post(
            "beginTransaction",
            {"transactionOptions": {"readWrite": {}}},
        )
        transaction = response.get("transaction")
        if not transaction:
            raise TransportError("beginTransaction returned no transaction", method="beginTransaction")
        return transaction

    async def commit_transaction(
        self,
        transaction: str,
        mutations: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        response = await self._post(
            "commit",
            {"mode": "TRANSACTIONAL", "transaction": transaction, "mutations": mutations},
        )
        return list(response.get("mutationResults", []))

    async def rollback_transaction(self, transaction: str) -> None:
        await self._post("rollback", {"transaction": transaction})

    async def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._access_token
        if self._token_provider is not None:
            provided = self._token_provider()
            token = await provided if inspect.isawaitable(provided) else provided
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is None:
            await self.connect()
        assert self._client is not None

        url = f"/v1/projects/{self._project_id}:{method}"
        try:
            response = await self._client.post(url, json=body, headers=await self._headers())
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} timed out: {e}", method=method) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e}", method=method) from e

        if response.is_error:
            raise _status_error(method, response)

        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(f"{method} returned invalid JSON", method=method) from e
        if not isinstance(payload, dict):
            raise TransportError(f"{method} returned unexpected payload", method=method)

        logger.debug(
            "Store request completed",
            extra={"method": method, "status_code": response.status_code},
        )
        return payload


def _status_error(method: str, response: httpx.Response) -> StoreStatusError:
    """Translate a Google API error response into a StoreStatusError."""
    status = _HTTP_STATUS_NAMES.get(response.status_code, "UNKNOWN")
    message = response.text or response.reason_phrase
    try:
        error = response.json().get("error", {})
    except (ValueError, AttributeError):
        error = {}
    if isinstance(error, dict):
        status = error.get("status") or status
        message = error.get("message") or message

    logger.debug(
        "Store rejected request",
        extra={"method": method, "status": status, "status_code": response.status_code},
    )
    return StoreStatusError(status, message, method=method, http_status=response.status_code)
