import logging

from relay.config import Settings
from relay.monitor import ReconnectMonitor
from relay.offline_queue import OfflineQueue
from relay.service import MessageService
from relay.storage import DurableStore
from relay.tenants import TenantRegistry

logger = logging.getLogger(__name__)


class Relay:
    """
    Process-wide state: the tenant registry, the store adapter, the offline
    queues and the service built on them.

    Starts with empty queues and a DISCONNECTED store. One instance lives on
    ``app.state.relay`` and is handed to request handlers from there.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.registry = TenantRegistry(settings.TENANTS, settings.TENANT_ID_LENGTH)
        self.store = DurableStore(
            settings.DATABASE_URL,
            self.registry,
            timeout=settings.STORE_TIMEOUT_SECONDS,
        )
        self.queue = OfflineQueue(self.store, max_per_tenant=settings.QUEUE_MAX_PER_TENANT)
        self.service = MessageService(
            self.registry,
            self.store,
            self.queue,
            list_limit=settings.MESSAGE_LIST_LIMIT,
            max_content_length=settings.MAX_CONTENT_LENGTH,
            max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        )
        self.monitor = ReconnectMonitor(
            self.store,
            self.queue,
            interval=settings.RECONNECT_INTERVAL_SECONDS,
        )

    async def start(self) -> None:
        if not await self.store.connect():
            logger.warning(
                "Database unreachable at startup, messages will be queued "
                f"and retried every {self.settings.RECONNECT_INTERVAL_SECONDS}s"
            )
        self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()
        pending = {tenant: depth for tenant, depth in self.queue.depths().items() if depth}
        if pending:
            logger.warning(f"Shutting down with unflushed queued messages: {pending}")
        await self.store.close()
