import asyncio
import logging
from typing import Optional

from relay.offline_queue import OfflineQueue
from relay.storage import DurableStore

logger = logging.getLogger(__name__)


class ReconnectMonitor:
    """
    Background loop that brings the store back and flushes queued writes.

    Every ``interval`` seconds it reconnects a DISCONNECTED store (a
    successful connect drains all tenants) or drains all tenants of a
    CONNECTED one. Fixed interval, no backoff.
    """

    def __init__(self, store: DurableStore, queue: OfflineQueue, interval: float = 10.0):
        self.store = store
        self.queue = queue
        self.interval = interval
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> None:
        if self.store.is_connected:
            await self.queue.drain_all()
        else:
            logger.debug("Store disconnected, attempting reconnect")
            await self.store.connect()

    async def _run(self) -> None:
        logger.debug("Reconnect monitor started")
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.tick()
            except Exception as exc:
                logger.exception(f"Unhandled error in reconnect monitor: {exc}")
        logger.debug("Reconnect monitor stopped")

    def start(self) -> None:
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="reconnect-monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
