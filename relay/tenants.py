"""
Tenant registry and passcode parsing.

A tenant ("server") is a fixed-length numeric id from a configured
allow-list. Each tenant owns two tables, ``messages_<id>`` and ``media_<id>``;
isolation is structural, there is no tenant column.

Passcodes rotate daily. A credential is accepted when it ends with today's
zero-padded day of month followed by a tenant id, e.g. ``"071234"`` on the
7th selects tenant ``1234``. Leading digits before that suffix are ignored.
"""

import logging
from datetime import datetime
from typing import Iterable, NamedTuple, Optional

logger = logging.getLogger(__name__)

DATE_PREFIX_LENGTH = 2


class TenantNamespace(NamedTuple):
    """Table names holding one tenant's data."""
    messages: str
    media: str


def date_prefix(now: Optional[datetime] = None) -> str:
    """Return the daily rotating component of the passcode (day of month)."""
    now = now or datetime.now()
    return f"{now.day:02d}"


class TenantRegistry:
    """Process-wide list of configured tenants."""

    def __init__(self, tenants: Iterable[str], id_length: int = 4):
        self.tenants = tuple(tenants)
        self.id_length = id_length
        self._tenant_set = frozenset(self.tenants)

    @property
    def min_credential_length(self) -> int:
        return DATE_PREFIX_LENGTH + self.id_length

    def is_valid_tenant(self, tenant_id) -> bool:
        return isinstance(tenant_id, str) and tenant_id in self._tenant_set

    def namespace_for(self, tenant_id: str) -> TenantNamespace:
        """
        Map a tenant to its table names.

        Raises:
            ValueError: if the tenant is not configured. Table names are
                never built from unvalidated input.
        """
        if not self.is_valid_tenant(tenant_id):
            raise ValueError(f"Unknown tenant: {tenant_id!r}")
        return TenantNamespace(
            messages=f"messages_{tenant_id}",
            media=f"media_{tenant_id}",
        )

    def is_well_formed(self, credential) -> bool:
        """Cheap format check done before any tenant lookup."""
        return (
            isinstance(credential, str)
            and len(credential) >= self.min_credential_length
            and credential.isdigit()
        )

    def extract_tenant(self, credential, prefix: str) -> Optional[str]:
        """
        Find the tenant whose ``<prefix><tenant>`` pattern ends the credential.

        Pure: no I/O and never raises. Returns None for non-strings, short
        input, or when no configured tenant matches.
        """
        if not credential or not isinstance(credential, str) or not prefix:
            return None
        if len(credential) < len(prefix) + self.id_length:
            return None

        for tenant_id in self.tenants:
            if credential.endswith(prefix + tenant_id):
                return tenant_id

        return None
