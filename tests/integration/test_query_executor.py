"""
Integration tests for the query executor.

Tests cover:
- get_one by identifier
- get_one_by uniqueness
- Lazy pagination, cursors and resumption
- Filter validation
- Transactional reads
"""

import math

import pytest
import pytest_asyncio

from docstore_sdk.entity import Entity
from docstore_sdk.errors import AmbiguousResultError, NotFoundError, SchemaMismatchError
from docstore_sdk.identifier import Identifier
from docstore_sdk.query import QueryDescriptor, QueryExecutor

from .kinds import Note, Task

alice = Identifier.of("User", 42)


async def seed(protocol, count, owner="alice"):
    created = []
    for i in range(count):
        task = Entity.new(Task, title=f"task {i}", owner=owner, priority=i, parent=alice)
        created.append(await protocol.create(task))
    return created


class TestGetOne:
    """Tests for QueryExecutor.get_one."""

    @pytest.mark.asyncio
    async def test_found(self, protocol, executor):
        """A stored entity is returned with its version."""
        [task] = await seed(protocol, 1)

        fetched = await executor.get_one(Task, task.identifier)

        assert fetched.identifier == task.identifier
        assert fetched.version == 1
        assert fetched.property("done") is False

    @pytest.mark.asyncio
    async def test_not_found(self, executor):
        """Missing entities raise NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            await executor.get_one(Task, Identifier.from_path([("User", 42), ("Task", 1)]))

        assert exc_info.value.kind == "Task"

    @pytest.mark.asyncio
    async def test_wrong_kind(self, executor):
        """Identifiers of another kind are rejected before any round trip."""
        with pytest.raises(SchemaMismatchError):
            await executor.get_one(Task, Identifier.of("Note", 1))

    @pytest.mark.asyncio
    async def test_pending_identifier(self, executor):
        """Pending identifiers cannot be fetched."""
        with pytest.raises(SchemaMismatchError):
            await executor.get_one(Task, Identifier.pending("Task").with_ancestor(alice))

    @pytest.mark.asyncio
    async def test_deferred_keys_are_retried(self, executor, store, protocol):
        """Deferred lookups are repeated until the entity is found."""
        [task] = await seed(protocol, 1)
        original = store.execute
        calls = []

        async def deferring(method, body):
            calls.append(method)
            if len(calls) == 1:
                return {"found": [], "missing": [], "deferred": body["keys"]}
            return await original(method, body)

        store.execute = deferring

        fetched = await executor.get_one(Task, task.identifier)

        assert fetched.identifier == task.identifier
        assert calls == ["lookup", "lookup"]


class TestGetOneBy:
    """Tests for QueryExecutor.get_one_by."""

    @pytest.mark.asyncio
    async def test_unique_match(self, protocol, executor):
        """Exactly one match is returned."""
        await seed(protocol, 3)

        task = await executor.get_one_by(Task, "priority", 1)

        assert task.property("title") == "task 1"

    @pytest.mark.asyncio
    async def test_no_match(self, protocol, executor):
        """Zero matches raise NotFoundError."""
        await seed(protocol, 2)

        with pytest.raises(NotFoundError):
            await executor.get_one_by(Task, "priority", 99)

    @pytest.mark.asyncio
    async def test_ambiguous(self, protocol, executor):
        """Several matches raise AmbiguousResultError."""
        await seed(protocol, 3)

        with pytest.raises(AmbiguousResultError) as exc_info:
            await executor.get_one_by(Task, "owner", "alice")

        assert exc_info.value.property_name == "owner"

    @pytest.mark.asyncio
    async def test_unindexed_property(self, executor):
        """Filters on unindexed properties are rejected."""
        with pytest.raises(SchemaMismatchError, match="not indexed"):
            await executor.get_one_by(Task, "title", "x")

    @pytest.mark.asyncio
    async def test_undeclared_property(self, executor):
        """Filters on undeclared properties are rejected."""
        with pytest.raises(SchemaMismatchError):
            await executor.get_one_by(Task, "colour", "red")

    @pytest.mark.asyncio
    async def test_unversioned_kind(self, protocol, executor):
        """Kinds without versioning are found without a version."""
        await protocol.create(Entity.new(Note, text="a", topic="x"))
        await protocol.create(Entity.new(Note, text="b", topic="y"))

        note = await executor.get_one_by(Note, "topic", "y")

        assert note.property("text") == "b"
        assert note.version is None


class TestPagination:
    """Tests for QueryExecutor.get_by."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count,page_size", [(7, 3), (6, 3), (2, 5), (0, 4)])
    async def test_pages(self, protocol, executor, count, page_size):
        """N matches in pages of k give ceil(N/k) pages, each entity once."""
        created = await seed(protocol, count)
        await seed(protocol, 2, owner="bob")

        result = executor.get_by(Task, "owner", "alice", page_size=page_size)
        pages = [page async for page in result.pages()]

        assert len(pages) == math.ceil(count / page_size)
        assert all(0 < len(page) <= page_size for page in pages)
        seen = [task.identifier for page in pages for task in page]
        assert seen == [task.identifier for task in created]
        assert result.cursor is None

    @pytest.mark.asyncio
    async def test_lazy_fetching(self, protocol, executor, store):
        """Pages are requested only as the caller advances."""
        await seed(protocol, 5)
        store.calls.clear()

        result = executor.get_by(Task, "owner", "alice", page_size=2)
        assert store.calls == []

        await result.__anext__()
        await result.__anext__()
        assert store.calls == ["runQuery"]

        await result.__anext__()
        assert store.calls == ["runQuery", "runQuery"]

    @pytest.mark.asyncio
    async def test_not_restartable(self, protocol, executor):
        """Iterating again continues where the previous loop stopped."""
        await seed(protocol, 4)
        result = executor.get_by(Task, "owner", "alice", page_size=2)

        first = []
        async for task in result:
            first.append(task)
            if len(first) == 3:
                break
        rest = await result.to_list()

        assert len(first) + len(rest) == 4
        assert len({t.identifier for t in first + rest}) == 4

    @pytest.mark.asyncio
    async def test_resume_from_descriptor(self, protocol, executor):
        """A persisted descriptor continues after the last delivered entity."""
        created = await seed(protocol, 5)
        result = executor.get_by(Task, "owner", "alice", page_size=2)
        first_page = await result.pages().__anext__()

        descriptor = result.descriptor
        resumed = executor.resume(Task, descriptor)
        rest = await resumed.to_list()

        assert descriptor.cursor is not None
        assert [t.identifier for t in first_page + rest] == [t.identifier for t in created]

    @pytest.mark.asyncio
    async def test_resume_mid_page(self, protocol, executor):
        """The cursor points after the last entity handed out, not the page end."""
        created = await seed(protocol, 4)
        result = executor.get_by(Task, "owner", "alice", page_size=3)
        await result.__anext__()

        rest = await executor.get_by(Task, "owner", "alice", page_size=3, cursor=result.cursor).to_list()

        assert [t.identifier for t in rest] == [t.identifier for t in created[1:]]

    @pytest.mark.asyncio
    async def test_truncated_batches_continue(self, protocol, executor, store):
        """A short page flagged NOT_FINISHED does not end the iteration."""
        await seed(protocol, 5)
        store.batch_limit = 2

        tasks = await executor.get_by(Task, "owner", "alice", page_size=4).to_list()

        assert len(tasks) == 5

    @pytest.mark.asyncio
    async def test_default_page_size(self, protocol, store):
        """Without a kind page size the executor default applies."""
        executor = QueryExecutor(store, default_page_size=3)

        result = executor.get_by(Task, "owner", "alice")
        override = executor.get_by(Task, "owner", "alice", page_size=10)

        assert result.descriptor.page_size == 3
        assert override.descriptor.page_size == 10

    def test_descriptor_page_size_positive(self):
        """Descriptors need a positive page size."""
        with pytest.raises(ValueError):
            QueryDescriptor(kind="Task", property="owner", value="a", page_size=0)

    def test_resume_wrong_kind(self, executor):
        """A descriptor only resumes for its own kind."""
        descriptor = QueryDescriptor(kind="Note", property="topic", value="x", page_size=2)

        with pytest.raises(SchemaMismatchError):
            executor.resume(Task, descriptor)


class TestTransactionalReads:
    """Tests for reads inside a transaction."""

    @pytest_asyncio.fixture
    async def task(self, protocol):
        [task] = await seed(protocol, 1)
        return task

    @pytest.mark.asyncio
    async def test_read_in_transaction(self, coordinator, task):
        """Entities can be read through a transaction."""
        tx = await coordinator.begin()

        fetched = await tx.get_one(Task, task.identifier)

        assert fetched.version == task.version
        await tx.abandon()

    @pytest.mark.asyncio
    async def test_query_in_transaction(self, executor, coordinator, task):
        """Queries accept a transaction handle."""
        tx = await coordinator.begin()

        tasks = await executor.get_by(Task, "owner", "alice", transaction=tx.handle).to_list()

        assert [t.identifier for t in tasks] == [task.identifier]
        await tx.abandon()
