"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class LoginRequest(BaseModel):
    """
    Login body.

    password is typed loosely on purpose: a non-string passcode must be
    answered with 401 "Invalid password format", not a 422.
    """
    password: Any = Field(None, description="Today's passcode")

    model_config = {
        "json_schema_extra": {
            "examples": [{"password": "191234"}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class LoginResponse(BaseModel):
    success: bool = Field(default=True)
    ui: str = Field(..., description="Chat UI fragment, only sent after auth")


class SuccessResponse(BaseModel):
    success: bool = Field(default=True)


class PostMessageResponse(BaseModel):
    """queued is true when the message is held in the offline queue."""
    success: bool = Field(default=True)
    queued: bool = Field(default=False)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class MessageRecord(BaseModel):
    """
    A message as returned by GET /api/messages.

    Durable messages have an integer id. Messages still in the offline queue
    have a temporary ``pending-<n>`` id and pending=true.
    """
    id: Union[int, str] = Field(..., description="Message id, or pending-<n> while queued")
    content: str = Field(..., description="Message text, may be empty when media is attached")
    created_at: datetime = Field(..., description="Time the message was accepted")
    media_id: Optional[int] = Field(None, description="Attached media id")
    media_type: Optional[str] = Field(None, description="Mime type of the attachment")
    has_media: bool = Field(default=False)
    media_available: bool = Field(default=False, description="Whether /api/media/{id} can serve it now")
    pending: bool = Field(default=False, description="True until the message is persisted")


class TenantsStatus(BaseModel):
    configured: List[str] = Field(default_factory=list)
    initialized: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class RelayHealthResponse(BaseModel):
    """
    Response model for GET /health.

    Reports store connectivity, per-tenant queue depth and state, and which
    tenants have their tables provisioned.
    """
    status: str = Field(..., description="Health status")
    store: str = Field(..., description="connected or disconnected")
    queues: Dict[str, int] = Field(default_factory=dict, description="Queued messages per tenant")
    queue_states: Dict[str, str] = Field(default_factory=dict, description="Queue state per tenant")
    tenants: TenantsStatus
