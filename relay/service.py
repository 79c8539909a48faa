"""
Message and media operations for an authenticated tenant.

Posting never surfaces a store failure: a write that cannot be confirmed
durable is queued and reported as ``queued``. Reads come from exactly one
source per tenant at a time: the durable tables while the store is
connected, the offline queue's pending view while it is not.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from relay.errors import NotFound, QueueFull, StoreUnavailable, Unexpected, ValidationError
from relay.metrics import record_post_outcome
from relay.models import MAX_ROW_ID
from relay.offline_queue import OfflineQueue
from relay.storage import (
    DurableStore,
    media_exists,
    persist_task,
    select_media,
    select_recent_messages,
)
from relay.tasks import QueuedTask, TaskPayload, build_payload
from relay.tenants import TenantRegistry

logger = logging.getLogger(__name__)

PERSISTED = "persisted"
QUEUED = "queued"
REJECTED = "rejected"


@dataclass
class UploadedFile:
    filename: str
    mime_type: str
    data: bytes = field(repr=False)


@dataclass
class PostResult:
    status: str
    message_id: Optional[int] = None

    @property
    def queued(self) -> bool:
        return self.status == QUEUED


@dataclass
class MediaContent:
    filename: str
    mime_type: str
    data: bytes = field(repr=False)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageService:
    def __init__(
        self,
        registry: TenantRegistry,
        store: DurableStore,
        queue: OfflineQueue,
        list_limit: int = 100,
        max_content_length: int = 4096,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ):
        self.registry = registry
        self.store = store
        self.queue = queue
        self.list_limit = list_limit
        self.max_content_length = max_content_length
        self.max_upload_bytes = max_upload_bytes

    def validate_post(
        self,
        content: Optional[str],
        file: Optional[UploadedFile],
        media_id: Optional[int],
    ) -> str:
        """Return normalized content or raise ValidationError."""
        content = content or ""
        if not content.strip() and file is None and media_id is None:
            raise ValidationError("Content required")
        if len(content) > self.max_content_length:
            raise ValidationError("Content too long")
        if file is not None and len(file.data) > self.max_upload_bytes:
            raise ValidationError("File too large")
        if media_id is not None and not 1 <= media_id <= MAX_ROW_ID:
            raise ValidationError("Invalid media id")
        return content

    async def check_media_reference(self, tenant: str, media_id: int) -> None:
        """
        Reject a reference to media the tenant does not have.

        Only checked while connected; a reference accepted offline is
        resolved when the queued write is flushed (missing media is dropped
        from the message there).
        """
        if not self.store.is_connected:
            return
        try:
            exists = await self.store.execute(tenant, media_exists, media_id)
        except StoreUnavailable:
            return
        if not exists:
            raise ValidationError("Unknown media id")

    async def post_message(
        self,
        tenant: str,
        content: Optional[str],
        file: Optional[UploadedFile] = None,
        media_id: Optional[int] = None,
    ) -> PostResult:
        """
        Accept a message (and optional attachment) for the tenant.

        With an empty queue and a connected store the message is written
        directly. Otherwise it goes to the back of the tenant's queue and, if
        the store is connected, the queue is drained right away so it cannot
        overtake earlier queued messages.

        Raises:
            ValidationError: content blank with no attachment, limits
                exceeded, or a media id the tenant does not have.
            QueueFull: the tenant's offline queue is at capacity.
        """
        try:
            content = self.validate_post(content, file, media_id)
            if media_id is not None:
                await self.check_media_reference(tenant, media_id)
        except ValidationError:
            record_post_outcome("validation_error")
            raise

        payload = build_payload(
            content,
            filename=file.filename if file else None,
            mime_type=file.mime_type if file else None,
            data=file.data if file else None,
            media_id=media_id,
        )
        try:
            result = await self._accept(tenant, payload, datetime.now(timezone.utc))
        except QueueFull:
            record_post_outcome(REJECTED)
            raise
        record_post_outcome(result.status)
        return result

    async def _accept(self, tenant: str, payload: TaskPayload, accepted_at: datetime) -> PostResult:
        async with self.queue.lock_for(tenant):
            if self.store.is_connected and self.queue.depth(tenant) == 0:
                task = QueuedTask(tenant=tenant, payload=payload, created_at=accepted_at)
                try:
                    message_id = await self.store.execute(tenant, persist_task, task)
                except StoreUnavailable:
                    logger.warning(f"Direct write failed for tenant {tenant}, queueing message")
                else:
                    return PostResult(status=PERSISTED, message_id=message_id)
                self.queue.enqueue(tenant, payload, created_at=accepted_at)
                return PostResult(status=QUEUED)

            task = self.queue.enqueue(tenant, payload, created_at=accepted_at)
            if self.store.is_connected:
                await self.queue.drain_locked(tenant)
                if not self.queue.is_pending(task):
                    return PostResult(status=PERSISTED)

        return PostResult(status=QUEUED)

    async def list_messages(self, tenant: str) -> List[dict]:
        """
        Return the tenant's most recent messages, oldest first.

        Raises:
            Unexpected: the durable read failed while the store was connected.
        """
        if self.store.is_connected and self.queue.depth(tenant):
            await self.queue.drain(tenant)

        if not self.store.is_connected:
            return self.queue.pending_view(tenant, self.list_limit)

        try:
            rows = await self.store.execute(tenant, select_recent_messages, self.list_limit)
        except StoreUnavailable as e:
            logger.error(f"Failed to list messages for tenant {tenant}: {e.__cause__!r}")
            raise Unexpected() from e

        return [
            {
                "id": row["id"],
                "content": row["content"],
                "created_at": _as_utc(row["created_at"]),
                "media_id": row["media_id"],
                "media_type": row["mime_type"],
                "has_media": row["media_id"] is not None,
                "media_available": row["media_id"] is not None,
                "pending": False,
            }
            for row in rows
        ]

    async def fetch_media(self, tenant: str, media_id: int) -> MediaContent:
        """
        Load one attachment. Only possible while the store is connected.

        Raises:
            StoreUnavailable: the store is disconnected.
            NotFound: no media with that id for this tenant.
        """
        if not self.store.is_connected:
            raise StoreUnavailable("Media unavailable while offline")

        try:
            row = await self.store.execute(tenant, select_media, media_id)
        except StoreUnavailable as e:
            raise StoreUnavailable("Media unavailable while offline") from e

        if row is None:
            raise NotFound("Media not found")
        return MediaContent(filename=row["filename"], mime_type=row["mime_type"], data=row["data"])

    def health(self) -> dict:
        return {
            "status": "ok",
            "store": self.store.state.value,
            "queues": {tenant: self.queue.depth(tenant) for tenant in self.registry.tenants},
            "queue_states": {tenant: self.queue.state(tenant).value for tenant in self.registry.tenants},
            "tenants": {
                "configured": list(self.registry.tenants),
                "initialized": self.store.provisioned_tenants,
            },
        }
