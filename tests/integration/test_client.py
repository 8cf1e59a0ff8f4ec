"""
Integration tests for the store client and kind accessors.

Tests cover:
- Kind resolution through the registry
- Generated-style accessors for indexed properties
- Namespaces
- Transactions through the client
- Resuming queries from descriptors
- Connection ownership
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from docstore_sdk.client import KindAccessor, StoreClient
from docstore_sdk.config import StoreSettings
from docstore_sdk.connection import StoreConnection
from docstore_sdk.errors import NotFoundError
from docstore_sdk.identifier import Identifier
from docstore_sdk.registry import UnknownKindError
from docstore_sdk.transaction import TransactionState

from .kinds import Task, User


class TestKindAccessor:
    """Tests for client.kind()."""

    def test_resolves_registered_kind(self, client):
        """Kinds are found by name or passed directly."""
        assert isinstance(client.kind("Task"), KindAccessor)
        assert client.kind(Task).kind_def is Task

    def test_unknown_kind(self, client):
        """Unregistered kind names fail."""
        with pytest.raises(UnknownKindError):
            client.kind("Missing")

    @pytest.mark.asyncio
    async def test_create_and_fetch(self, client):
        """Accessors create and fetch by id."""
        users = client.kind("User")

        created = await users.create(users.new(email="a@example.com", key=42))
        fetched = await users.get_one(42)

        assert fetched.identifier == created.identifier == Identifier.of("User", 42)
        assert fetched.version == 1

    @pytest.mark.asyncio
    async def test_property_accessors(self, client):
        """Indexed properties get get_one_by_<p> and get_by_<p>."""
        tasks = client.kind("Task")
        parent = Identifier.of("User", 42)
        for i in range(3):
            await tasks.create(tasks.new(title=f"t{i}", owner="alice", priority=i, parent=parent))

        one = await tasks.get_one_by_priority(2)
        all_alice = await tasks.get_by_owner("alice", page_size=2).to_list()

        assert one.property("title") == "t2"
        assert [t.property("priority") for t in all_alice] == [0, 1, 2]

    def test_unindexed_accessor_missing(self, client):
        """Accessors only exist for indexed properties."""
        tasks = client.kind("Task")

        with pytest.raises(AttributeError):
            tasks.get_by_title
        with pytest.raises(AttributeError):
            tasks.something_else

    @pytest.mark.asyncio
    async def test_update_delete_save(self, client):
        """Writes go through the commit protocol."""
        users = client.kind(User)
        user = await users.save(users.new(email="a@example.com"))

        user = await users.save(user.with_properties(name="Alice"))
        assert user.version == 2

        await users.delete(user.identifier.id, user.version)
        with pytest.raises(NotFoundError):
            await users.get_one(user.identifier)

    @pytest.mark.asyncio
    async def test_wrong_kind_rejected(self, client):
        """Entities of another kind cannot go through an accessor."""
        users = client.kind("User")
        task = client.kind("Task").new(title="t", parent=Identifier.of("User", 1))

        with pytest.raises(ValueError):
            await users.create(task)


class TestNamespaces:
    """Tests for namespaced clients."""

    @pytest.mark.asyncio
    async def test_namespace_isolation(self, store, registry):
        """Entities and queries stay within the client's namespace."""
        settings = StoreSettings(project_id="test")
        tenant_a = StoreClient(store, settings=settings, registry=registry, namespace="a")
        tenant_b = StoreClient(store, settings=settings, registry=registry, namespace="b")

        created = await tenant_a.kind("User").create(tenant_a.kind("User").new(email="x@example.com"))

        assert created.identifier.namespace == "a"
        assert (await tenant_a.kind("User").get_one_by_email("x@example.com")).identifier == created.identifier
        with pytest.raises(NotFoundError):
            await tenant_b.kind("User").get_one_by_email("x@example.com")


class TestClientOperations:
    """Tests for StoreClient methods."""

    @pytest.mark.asyncio
    async def test_transaction_context(self, client, store):
        """client.transaction() abandons uncommitted batches."""
        async with client.transaction() as tx:
            tx.push_save(client.kind("User").new(email="never@example.com"))

        assert tx.state is TransactionState.ABORTED
        assert store.entity_count() == 0
        assert store.open_transactions == 0

    @pytest.mark.asyncio
    async def test_transaction_commit(self, client, store):
        """Batches committed inside the block are applied."""
        async with client.transaction() as tx:
            tx.push_save(client.kind("User").new(email="a@example.com"))
            tx.push_save(client.kind("User").new(email="b@example.com"))
            results = await tx.commit()

        assert len(results) == 2
        assert store.entity_count("User") == 2

    @pytest.mark.asyncio
    async def test_begin_transaction(self, client):
        """begin_transaction hands back an active transaction."""
        tx = await client.begin_transaction()

        assert tx.state is TransactionState.ACTIVE
        await tx.abandon()

    @pytest.mark.asyncio
    async def test_resume(self, client):
        """client.resume finds the kind from the descriptor."""
        users = client.kind("User")
        for i in range(3):
            await users.create(users.new(email="same@example.com", name=str(i)))

        result = client.get_by("User", "email", "same@example.com", page_size=1)
        first = await result.__anext__()
        rest = await client.resume(result.descriptor).to_list()

        assert [u.property("name") for u in [first] + rest] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_get_one_by(self, client):
        """client.get_one_by accepts kind names."""
        users = client.kind("User")
        await users.create(users.new(email="a@example.com"))

        user = await client.get_one_by("User", "email", "a@example.com")

        assert user.kind == "User"


class TestConnectionOwnership:
    """Tests for closing connections."""

    @pytest.mark.asyncio
    async def test_borrowed_connection_not_closed(self, registry):
        """A connection passed in is left open."""
        connection = MagicMock(spec=StoreConnection)
        connection.close = AsyncMock()

        async with StoreClient(connection, settings=StoreSettings(project_id="p"), registry=registry):
            pass

        connection.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_owned_connection_closed(self, registry):
        """A connection built from settings is closed with the client."""
        client = StoreClient(settings=StoreSettings(project_id="p"), registry=registry)
        client.connection.close = AsyncMock()

        await client.close()

        client.connection.close.assert_awaited_once()

    def test_missing_project(self, registry):
        """Building a REST connection needs a project id."""
        with pytest.raises(ValueError):
            StoreClient(settings=StoreSettings(project_id=""), registry=registry)
