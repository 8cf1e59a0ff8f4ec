"""
Shared fixtures for engine tests against the in-memory store.
"""

import pytest

from docstore_sdk.client import StoreClient
from docstore_sdk.commit import CommitProtocol
from docstore_sdk.config import StoreSettings
from docstore_sdk.memory import InMemoryStoreConnection
from docstore_sdk.query import QueryExecutor
from docstore_sdk.registry import SchemaRegistry
from docstore_sdk.transaction import TransactionCoordinator

from .kinds import Note, Task, User


@pytest.fixture
def store():
    """Fresh in-memory store; allocated ids start at 7."""
    return InMemoryStoreConnection(first_id=7)


@pytest.fixture
def executor(store):
    return QueryExecutor(store, default_page_size=50)


@pytest.fixture
def protocol(store):
    return CommitProtocol(store)


@pytest.fixture
def coordinator(store, executor):
    return TransactionCoordinator(store, executor)


@pytest.fixture
def registry():
    registry = SchemaRegistry()
    for kind in (User, Task, Note):
        registry.register_kind(kind)
    registry.freeze()
    return registry


@pytest.fixture
def client(store, registry):
    return StoreClient(store, settings=StoreSettings(project_id="test"), registry=registry)


@pytest.fixture
def deferred_lookups(store, monkeypatch):
    """Make the store defer every key of the first lookup; returns the lookup log."""
    original = store.execute
    lookups = []

    async def deferring(method, body):
        if method == "lookup":
            lookups.append([dict(key) for key in body["keys"]])
            if len(lookups) == 1:
                return {"found": [], "missing": [], "deferred": list(body["keys"])}
        return await original(method, body)

    monkeypatch.setattr(store, "execute", deferring)
    return lookups
