"""
Tests for the per-tenant offline queue.

Tests cover:
- FIFO enqueue and the pending view
- Drain: strict order, removal only after durable write
- Partial drain when the k-th write fails
- No-op drains (empty queue, store down)
- Per-tenant state reporting and the optional capacity bound
"""

import asyncio
import time

import pytest
from sqlalchemy import func, insert, select

from relay import offline_queue
from relay.errors import QueueFull
from relay.offline_queue import OfflineQueue, TenantQueueState
from relay.storage import StoreState, select_recent_messages
from relay.tasks import TextOnly, WithExistingMedia, WithInlineFile


@pytest.fixture
def queue(store):
    return OfflineQueue(store)


def contents(tasks):
    return [task.payload.content for task in tasks]


def count_media(conn, tables):
    return conn.execute(select(func.count()).select_from(tables.media)).scalar()


async def durable_contents(store, tenant):
    rows = await store.execute(tenant, select_recent_messages, 100)
    return [row["content"] for row in rows]


def fail_on_call(monkeypatch, failing_call: int):
    """Make the failing_call-th durable write raise, like a dropped connection."""
    real_persist = offline_queue.persist_task
    calls = {"n": 0}

    def flaky_persist(conn, tables, task):
        calls["n"] += 1
        if calls["n"] == failing_call:
            raise ConnectionError("connection reset by peer")
        return real_persist(conn, tables, task)

    monkeypatch.setattr(offline_queue, "persist_task", flaky_persist)
    return calls


class TestEnqueue:

    def test_enqueue_preserves_order(self, queue):
        for text in ["one", "two", "three"]:
            queue.enqueue("1234", TextOnly(text))

        assert queue.depth("1234") == 3
        view = queue.pending_view("1234")
        assert [record["content"] for record in view] == ["one", "two", "three"]
        assert [record["id"] for record in view] == ["pending-1", "pending-2", "pending-3"]
        assert all(record["pending"] for record in view)

    def test_enqueue_is_per_tenant(self, queue):
        queue.enqueue("1234", TextOnly("for 1234"))
        queue.enqueue("5678", TextOnly("for 5678"))

        assert [r["content"] for r in queue.pending_view("1234")] == ["for 1234"]
        assert [r["content"] for r in queue.pending_view("5678")] == ["for 5678"]
        assert queue.pending_view("9999") == []

    def test_pending_view_marks_media_unavailable(self, queue):
        queue.enqueue("1234", WithInlineFile("pic", "a.png", "image/png", b"data"))
        queue.enqueue("1234", WithExistingMedia("again", 7))

        inline, existing = queue.pending_view("1234")
        assert inline["has_media"] is True
        assert inline["media_available"] is False
        assert inline["media_type"] == "image/png"
        assert existing["media_id"] == 7
        assert existing["media_available"] is False

    def test_pending_view_is_capped(self, queue):
        for i in range(120):
            queue.enqueue("1234", TextOnly(f"m{i}"))

        view = queue.pending_view("1234", limit=100)
        assert len(view) == 100
        assert view[0]["content"] == "m20"
        assert view[-1]["content"] == "m119"

    def test_capacity_bound(self, store):
        queue = OfflineQueue(store, max_per_tenant=2)
        queue.enqueue("1234", TextOnly("a"))
        queue.enqueue("1234", TextOnly("b"))
        with pytest.raises(QueueFull):
            queue.enqueue("1234", TextOnly("c"))
        # Other tenants have their own budget
        queue.enqueue("5678", TextOnly("d"))


class TestDrain:

    @pytest.mark.asyncio
    async def test_drain_noop_when_disconnected(self, queue):
        queue.enqueue("1234", TextOnly("waiting"))
        assert await queue.drain("1234") == 0
        assert queue.depth("1234") == 1

    @pytest.mark.asyncio
    async def test_drain_noop_when_empty(self, queue, store):
        await store.connect()
        assert await queue.drain("1234") == 0

    @pytest.mark.asyncio
    async def test_drain_flushes_in_order(self, queue, store):
        for text in ["first", "second", "third"]:
            queue.enqueue("1234", TextOnly(text))

        await store.connect()

        # connect() drains through the listener
        assert queue.depth("1234") == 0
        assert await durable_contents(store, "1234") == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_drain_keeps_accept_time(self, queue, store):
        task = queue.enqueue("1234", TextOnly("timed"))
        await store.connect()

        rows = await store.execute("1234", select_recent_messages, 100)
        assert rows[0]["created_at"] == task.created_at.replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_partial_drain(self, queue, store, monkeypatch):
        await store.connect()
        for i in range(1, 6):
            queue.enqueue("1234", TextOnly(f"m{i}"))

        fail_on_call(monkeypatch, failing_call=3)

        flushed = await queue.drain("1234")

        assert flushed == 2
        assert contents(queue._queues["1234"].tasks) == ["m3", "m4", "m5"]
        assert store.state is StoreState.DISCONNECTED
        assert queue.state("1234") is TenantQueueState.BLOCKED

        # Retry after reconnect delivers the rest, in order, without duplicates
        monkeypatch.undo()
        await store.connect()
        assert queue.depth("1234") == 0
        assert await durable_contents(store, "1234") == ["m1", "m2", "m3", "m4", "m5"]

    @pytest.mark.asyncio
    async def test_failure_on_first_task_keeps_everything(self, queue, store, monkeypatch):
        await store.connect()
        for i in range(3):
            queue.enqueue("1234", TextOnly(f"m{i}"))
        fail_on_call(monkeypatch, failing_call=1)

        assert await queue.drain("1234") == 0
        assert contents(queue._queues["1234"].tasks) == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_failed_inline_file_leaves_no_orphan_media(self, queue, store, monkeypatch):
        await store.connect()
        queue.enqueue("1234", WithInlineFile("pic", "a.png", "image/png", b"png"))

        def media_then_fail(conn, tables, task):
            conn.execute(insert(tables.media).values(
                filename="a.png", mime_type="image/png", data=b"png", created_at=task.created_at,
            ))
            raise ConnectionError("lost connection before message insert")

        monkeypatch.setattr(offline_queue, "persist_task", media_then_fail)
        await queue.drain("1234")
        monkeypatch.undo()

        assert queue.depth("1234") == 1
        await store.connect()
        rows = await store.execute("1234", select_recent_messages, 100)
        assert len(rows) == 1
        assert await store.execute("1234", count_media) == 1

    @pytest.mark.asyncio
    async def test_timed_out_write_is_flushed_once(self, queue, store, monkeypatch):
        await store.connect()
        store.timeout = 0.1
        queue.enqueue("1234", TextOnly("slow"))
        real_persist = offline_queue.persist_task

        def slow_persist(conn, tables, task):
            time.sleep(0.4)
            return real_persist(conn, tables, task)

        monkeypatch.setattr(offline_queue, "persist_task", slow_persist)
        assert await queue.drain("1234") == 0
        assert queue.depth("1234") == 1

        # The worker finishes after the timeout and must not commit
        await asyncio.sleep(0.8)
        monkeypatch.undo()
        store.timeout = 5.0
        assert await store.connect() is True

        assert queue.depth("1234") == 0
        assert await durable_contents(store, "1234") == ["slow"]

    @pytest.mark.asyncio
    async def test_missing_media_reference_does_not_block_drain(self, queue, store):
        # Accepted offline, where the reference cannot be checked
        queue.enqueue("1234", WithExistingMedia("points nowhere", 2**70))
        queue.enqueue("1234", WithExistingMedia("also nowhere", 42))
        queue.enqueue("5678", TextOnly("innocent"))

        assert await store.connect() is True

        assert store.is_connected
        assert queue.depths() == {"1234": 0, "5678": 0}
        rows = await store.execute("1234", select_recent_messages, 100)
        assert [(row["content"], row["media_id"]) for row in rows] == [
            ("points nowhere", None),
            ("also nowhere", None),
        ]
        assert await durable_contents(store, "5678") == ["innocent"]

    @pytest.mark.asyncio
    async def test_drain_all_drains_every_tenant(self, queue, store):
        queue.enqueue("1234", TextOnly("a"))
        queue.enqueue("5678", TextOnly("b"))
        queue.enqueue("5678", TextOnly("c"))

        await store.connect()

        assert queue.depths() == {"1234": 0, "5678": 0}
        assert await durable_contents(store, "1234") == ["a"]
        assert await durable_contents(store, "5678") == ["b", "c"]

    @pytest.mark.asyncio
    async def test_drain_all_skips_tenant_already_draining(self, queue, store):
        await store.connect()
        queue.enqueue("1234", TextOnly("a"))

        async with queue.lock_for("1234"):
            assert await queue.drain_all() == 0
            assert queue.depth("1234") == 1

        assert await queue.drain_all() == 1

    @pytest.mark.asyncio
    async def test_concurrent_drains_do_not_duplicate(self, queue, store):
        await store.connect()
        for i in range(10):
            queue.enqueue("1234", TextOnly(f"m{i}"))

        results = await asyncio.gather(queue.drain("1234"), queue.drain("1234"))

        assert sum(results) == 10
        assert await durable_contents(store, "1234") == [f"m{i}" for i in range(10)]


class TestQueueState:

    @pytest.mark.asyncio
    async def test_states(self, queue, store):
        assert queue.state("1234") is TenantQueueState.IDLE

        queue.enqueue("1234", TextOnly("a"))
        assert queue.state("1234") is TenantQueueState.BLOCKED

        await store.connect()
        assert queue.state("1234") is TenantQueueState.IDLE

        # Connected with work waiting and no drain running yet
        queue.enqueue("1234", TextOnly("b"))
        assert queue.state("1234") is TenantQueueState.PENDING

        store.mark_disconnected("test")
        assert queue.states() == {"1234": "blocked"}

        await store.connect()
        assert queue.state("1234") is TenantQueueState.IDLE

    @pytest.mark.asyncio
    async def test_draining_state(self, queue, store, monkeypatch):
        await store.connect()
        queue.enqueue("1234", TextOnly("a"))
        seen = []

        real_persist = offline_queue.persist_task

        def observing_persist(conn, tables, task):
            seen.append(queue.state("1234"))
            return real_persist(conn, tables, task)

        monkeypatch.setattr(offline_queue, "persist_task", observing_persist)
        await queue.drain("1234")

        assert seen == [TenantQueueState.DRAINING]
        assert queue.state("1234") is TenantQueueState.IDLE
