"""
Error taxonomy for the chat relay.

Each error carries the HTTP status it maps to; the handlers registered in
main.py render them as ``{"error": message}``.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class RelayError(Exception):
    """Base class for errors surfaced to HTTP clients."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(RelayError):
    """Client input rejected before anything is written."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthError(RelayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class NotFound(RelayError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class StoreUnavailable(RelayError):
    """
    The durable store is disconnected, or an operation against it failed.

    Message posts absorb this into the offline queue; it only reaches a
    client from paths with no queued fallback (media fetch).
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Store unavailable"


class QueueFull(RelayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Message queue is full, try again later"


class Unexpected(RelayError):
    """Durable read failed while connected. Detail is logged, never returned."""

    default_message = "Database error"


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
