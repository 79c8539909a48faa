"""
Write tasks accepted by the relay.

A message post becomes exactly one of three payload shapes, wrapped in a
QueuedTask envelope that records when it was accepted. The envelope is what
sits in the offline queue; the payload is what gets persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class TextOnly:
    content: str


@dataclass(frozen=True)
class WithInlineFile:
    content: str
    filename: str
    mime_type: str
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class WithExistingMedia:
    content: str
    media_id: int


TaskPayload = Union[TextOnly, WithInlineFile, WithExistingMedia]


@dataclass(frozen=True)
class QueuedTask:
    """
    A message write that has been accepted but not yet confirmed durable.

    seq is a per-tenant counter assigned at enqueue time and is used for the
    temporary id shown in the pending view.
    """
    tenant: str
    payload: TaskPayload
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    seq: Optional[int] = None
    type: str = "message"

    @property
    def has_media(self) -> bool:
        return not isinstance(self.payload, TextOnly)

    @property
    def mime_type(self) -> Optional[str]:
        if isinstance(self.payload, WithInlineFile):
            return self.payload.mime_type
        return None


def build_payload(
    content: str,
    filename: Optional[str] = None,
    mime_type: Optional[str] = None,
    data: Optional[bytes] = None,
    media_id: Optional[int] = None,
) -> TaskPayload:
    """Pick the payload shape for a post. An inline file wins over a media id."""
    if data is not None:
        return WithInlineFile(
            content=content,
            filename=filename or "file",
            mime_type=mime_type or "application/octet-stream",
            data=data,
        )
    if media_id is not None:
        return WithExistingMedia(content=content, media_id=media_id)
    return TextOnly(content=content)
