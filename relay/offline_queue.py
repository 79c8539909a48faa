"""
Per-tenant offline queue for message writes.

Writes that could not be confirmed durable wait here, in acceptance order,
until the store is reachable again. Each tenant has its own FIFO and its own
asyncio.Lock; queue mutation, drains and direct writes for a tenant all hold
that lock, so a tenant never has two drains in flight and ids are assigned
in acceptance order.

The queue lives in process memory only. Tasks still queued when the process
exits are lost.
"""

import asyncio
import enum
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from relay.errors import QueueFull, StoreUnavailable
from relay.metrics import record_drain_task, set_queue_depth
from relay.storage import DurableStore, persist_task
from relay.tasks import QueuedTask, TaskPayload, WithExistingMedia

logger = logging.getLogger(__name__)


class TenantQueueState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    DRAINING = "draining"
    BLOCKED = "blocked"


class TenantQueue:
    def __init__(self, tenant: str):
        self.tenant = tenant
        self.tasks: Deque[QueuedTask] = deque()
        self.lock = asyncio.Lock()
        self.draining = False
        self.blocked = False
        self.next_seq = 1


class OfflineQueue:
    """
    Queue manager for all tenants.

    Registers itself with the store so every successful connect drains all
    tenants.
    """

    def __init__(self, store: DurableStore, max_per_tenant: Optional[int] = None):
        self.store = store
        self.max_per_tenant = max_per_tenant
        self._queues: Dict[str, TenantQueue] = {}
        store.add_connect_listener(self.drain_all)

    def _queue(self, tenant: str) -> TenantQueue:
        queue = self._queues.get(tenant)
        if queue is None:
            queue = TenantQueue(tenant)
            self._queues[tenant] = queue
        return queue

    def lock_for(self, tenant: str) -> asyncio.Lock:
        return self._queue(tenant).lock

    def depth(self, tenant: str) -> int:
        queue = self._queues.get(tenant)
        return len(queue.tasks) if queue else 0

    def depths(self) -> Dict[str, int]:
        return {tenant: len(queue.tasks) for tenant, queue in self._queues.items()}

    def is_pending(self, task: QueuedTask) -> bool:
        queue = self._queues.get(task.tenant)
        return queue is not None and task in queue.tasks

    def state(self, tenant: str) -> TenantQueueState:
        queue = self._queues.get(tenant)
        if queue is None:
            return TenantQueueState.IDLE
        if queue.draining:
            return TenantQueueState.DRAINING
        if not queue.tasks:
            return TenantQueueState.IDLE
        if queue.blocked or not self.store.is_connected:
            return TenantQueueState.BLOCKED
        return TenantQueueState.PENDING

    def states(self) -> Dict[str, str]:
        return {tenant: self.state(tenant).value for tenant in self._queues}

    def enqueue(
        self,
        tenant: str,
        payload: TaskPayload,
        created_at: Optional[datetime] = None,
    ) -> QueuedTask:
        """
        Append a write to the tail of the tenant's queue.

        Never waits on I/O. Callers that need ordering against a concurrent
        drain hold lock_for(tenant) around the call.

        Raises:
            QueueFull: when max_per_tenant is set and the queue is at capacity.
        """
        queue = self._queue(tenant)
        if self.max_per_tenant is not None and len(queue.tasks) >= self.max_per_tenant:
            logger.warning(f"Offline queue full for tenant {tenant} ({len(queue.tasks)} tasks)")
            raise QueueFull()

        task = QueuedTask(
            tenant=tenant,
            payload=payload,
            created_at=created_at or datetime.now(timezone.utc),
            seq=queue.next_seq,
        )
        queue.next_seq += 1
        queue.tasks.append(task)
        set_queue_depth(tenant, len(queue.tasks))
        logger.info(f"Queued message for tenant {tenant}, depth={len(queue.tasks)}")
        return task

    async def drain(self, tenant: str) -> int:
        """
        Replay a tenant's queued tasks against the store, head first.

        Returns:
            Number of tasks flushed.
        """
        queue = self._queues.get(tenant)
        if queue is None or not queue.tasks or not self.store.is_connected:
            return 0
        async with queue.lock:
            return await self.drain_locked(tenant)

    async def drain_locked(self, tenant: str) -> int:
        """
        Drain body; the caller must already hold lock_for(tenant).

        A task is popped only after its media and message rows are committed.
        On the first failure the batch stops: the failed task and everything
        behind it stay queued in order, the store is left DISCONNECTED and the
        tenant is BLOCKED until the next successful connect.
        """
        queue = self._queues.get(tenant)
        if queue is None or not queue.tasks or not self.store.is_connected:
            return 0

        flushed = 0
        queue.draining = True
        queue.blocked = False
        logger.info(f"Draining {len(queue.tasks)} queued tasks for tenant {tenant}")
        try:
            async with self.store.session(tenant) as session:
                while queue.tasks:
                    task = queue.tasks[0]
                    message_id = await session.run(persist_task, task)
                    queue.tasks.popleft()
                    flushed += 1
                    record_drain_task("flushed")
                    logger.debug(f"Flushed queued task {task.seq} for tenant {tenant} as message {message_id}")
        except StoreUnavailable:
            queue.blocked = True
            self.store.mark_disconnected(f"drain failed for tenant {tenant}")
            record_drain_task("failed")
            logger.warning(
                f"Drain for tenant {tenant} stopped after {flushed} tasks, "
                f"{len(queue.tasks)} remain queued"
            )
        finally:
            queue.draining = False
            set_queue_depth(tenant, len(queue.tasks))

        if not queue.blocked:
            logger.info(f"Drained {flushed} tasks for tenant {tenant}")
        return flushed

    async def drain_all(self) -> int:
        """Drain every tenant with queued work, skipping drains already running."""
        total = 0
        for tenant, queue in list(self._queues.items()):
            if not self.store.is_connected:
                break
            if not queue.tasks or queue.lock.locked():
                continue
            total += await self.drain(tenant)
        return total

    def pending_view(self, tenant: str, limit: int = 100) -> List[dict]:
        """
        Render the most recent ``limit`` queued tasks as unpersisted messages.

        Temporary ids are ``pending-<seq>``. Media is marked present but not
        fetchable, since nothing is served from the queue.
        """
        queue = self._queues.get(tenant)
        if queue is None:
            return []

        records = []
        for task in list(queue.tasks)[-limit:]:
            payload = task.payload
            records.append({
                "id": f"pending-{task.seq}",
                "content": payload.content,
                "created_at": task.created_at,
                "media_id": payload.media_id if isinstance(payload, WithExistingMedia) else None,
                "media_type": task.mime_type,
                "has_media": task.has_media,
                "media_available": False,
                "pending": True,
            })
        return records
