"""
Session-based admission control.

The session cookie carries two keys, ``authenticated`` and ``tenant``, set
on login and cleared on logout. Every message/media route depends on
require_tenant.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import Request

from relay.errors import AuthError
from relay.tenants import TenantRegistry, date_prefix

logger = logging.getLogger(__name__)


def authenticate(registry: TenantRegistry, credential, now: Optional[datetime] = None) -> str:
    """
    Resolve a passcode to a tenant id.

    Raises:
        AuthError: "Invalid password format" for malformed input (checked
            before any tenant lookup), "Invalid password" when no tenant
            matches today's passcode.
    """
    if not registry.is_well_formed(credential):
        raise AuthError("Invalid password format")

    tenant = registry.extract_tenant(credential, date_prefix(now))
    if tenant is None:
        raise AuthError("Invalid password")
    return tenant


def start_session(request: Request, tenant: str) -> None:
    request.session.clear()
    request.session["authenticated"] = True
    request.session["tenant"] = tenant


def end_session(request: Request) -> None:
    request.session.clear()


def require_tenant(request: Request) -> str:
    """FastAPI dependency returning the session's tenant, or raising AuthError."""
    if not request.session.get("authenticated"):
        raise AuthError()

    tenant = request.session.get("tenant")
    registry = request.app.state.relay.registry
    if not registry.is_valid_tenant(tenant):
        logger.warning(f"Session references unknown tenant {tenant!r}")
        raise AuthError()
    return tenant
