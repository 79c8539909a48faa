"""
SQLAlchemy table definitions for tenant data.

Every tenant gets its own pair of tables built from the same shape, so the
tables are declared with SQLAlchemy Core against a per-tenant MetaData
instead of a single declarative model.
For Pydantic request/response schemas, see schemas.py.
"""

from typing import NamedTuple

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
)

from relay.tenants import TenantNamespace

# Largest value an Integer id column holds on every supported backend (int4)
MAX_ROW_ID = 2**31 - 1


class TenantTables(NamedTuple):
    metadata: MetaData
    messages: Table
    media: Table


def build_tenant_tables(namespace: TenantNamespace) -> TenantTables:
    """
    Declare the media and messages tables for one tenant.

    Tables: media_<tenant>, messages_<tenant>
    messages.media_id references media.id of the same tenant only.
    """
    metadata = MetaData()

    media = Table(
        namespace.media,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("filename", String(255), nullable=False),
        Column("mime_type", String(255), nullable=False),
        Column("data", LargeBinary, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )

    messages = Table(
        namespace.messages,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("content", Text, nullable=False, default=""),
        Column(
            "media_id",
            Integer,
            ForeignKey(f"{namespace.media}.id"),
            nullable=True,
        ),
        # Accept time, not flush time
        Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    )

    return TenantTables(metadata=metadata, messages=messages, media=media)
