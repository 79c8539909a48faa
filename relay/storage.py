import asyncio
import enum
import logging
import math
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import create_engine, insert, select, text
from sqlalchemy.engine import Connection, Engine, make_url
from starlette.concurrency import run_in_threadpool

from relay.errors import StoreUnavailable
from relay.metrics import set_store_connected
from relay.models import MAX_ROW_ID, TenantTables, build_tenant_tables
from relay.tasks import QueuedTask, WithExistingMedia, WithInlineFile
from relay.tenants import TenantRegistry

logger = logging.getLogger(__name__)

# An operation runs on a worker thread inside a transaction:
# operation(connection, tenant_tables, *args)
Operation = Callable[..., Any]


class StoreState(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class DurableStore:
    """
    Lazily connected SQLAlchemy store with per-tenant tables.

    The adapter starts DISCONNECTED. connect() probes the database and, on
    success, provisions every configured tenant and notifies connect
    listeners. Any failed operation flips the whole adapter back to
    DISCONNECTED; there is no per-query retry; the reconnect monitor is the
    only way back.

    SQLAlchemy calls are blocking, so they run in Starlette's threadpool and
    are bounded by ``timeout`` seconds. A timeout counts as a failure, and
    the timed-out transaction is rolled back rather than committed late
    (see CommitGate), so a retried write cannot land twice.
    """

    def __init__(self, url: str, registry: TenantRegistry, timeout: float = 10.0):
        self.url = url
        self.registry = registry
        self.timeout = timeout
        self.state = StoreState.DISCONNECTED
        self._engine: Optional[Engine] = None
        self._tables: Dict[str, TenantTables] = {}
        self._provisioned: Set[str] = set()
        self._provision_locks: Dict[str, asyncio.Lock] = {}
        self._connect_lock = asyncio.Lock()
        self._connect_listeners: List[Callable[[], Awaitable[None]]] = []
        set_store_connected(False)

    @property
    def is_connected(self) -> bool:
        return self.state is StoreState.CONNECTED

    @property
    def provisioned_tenants(self) -> List[str]:
        return sorted(self._provisioned)

    def add_connect_listener(self, listener: Callable[[], Awaitable[None]]) -> None:
        """Register a coroutine function awaited after every successful connect."""
        self._connect_listeners.append(listener)

    def tables_for(self, tenant: str) -> TenantTables:
        tables = self._tables.get(tenant)
        if tables is None:
            tables = build_tenant_tables(self.registry.namespace_for(tenant))
            self._tables[tenant] = tables
        return tables

    # -------------------------------------------------------------- state

    def mark_disconnected(self, reason: str = None) -> None:
        if self.is_connected:
            logger.warning(f"Database marked disconnected: {reason or 'unknown error'}")
        self.state = StoreState.DISCONNECTED
        set_store_connected(False)

    def _connect_args(self) -> Dict[str, Any]:
        """Driver-side limits so a stuck statement is aborted by the database itself."""
        url = make_url(self.url)
        backend = url.get_backend_name()
        if backend == "sqlite":
            # check_same_thread=False is required for SQLite since operations
            # run on threadpool workers; timeout bounds waits on a locked file
            return {"check_same_thread": False, "timeout": self.timeout}
        if backend == "postgresql" and url.get_driver_name() in ("psycopg2", "psycopg"):
            return {
                "connect_timeout": max(1, math.ceil(self.timeout)),
                "options": f"-c statement_timeout={int(self.timeout * 1000)}",
            }
        return {}

    def _create_engine(self) -> Engine:
        connect_args = self._connect_args()
        return create_engine(
            self.url,
            connect_args=connect_args,
            pool_pre_ping=True,
            echo=False,
        )

    def _dispose_engine(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def _require_engine(self) -> Engine:
        if not self.is_connected or self._engine is None:
            raise StoreUnavailable()
        return self._engine

    async def _call(self, fn: Callable[..., Any], *args, gate: Optional["CommitGate"] = None) -> Any:
        """
        Run ``fn`` on a worker thread, waiting at most ``timeout`` seconds.

        A timeout does not stop the thread. With a gate, the worker is told
        not to commit; if it had already started committing, the outcome is
        awaited for one more timeout period so a committed write is never
        reported as failed.
        """
        work = asyncio.ensure_future(run_in_threadpool(fn, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(work), timeout=self.timeout)
        except asyncio.TimeoutError:
            if gate is None or gate.give_up():
                work.add_done_callback(_discard_outcome)
                raise

        logger.warning("Database call timed out during commit, waiting for its outcome")
        try:
            return await asyncio.wait_for(asyncio.shield(work), timeout=self.timeout)
        except asyncio.TimeoutError:
            gate.give_up(force=True)
            work.add_done_callback(_discard_outcome)
            raise

    # ---------------------------------------------------------- lifecycle

    async def connect(self) -> bool:
        """
        Try to (re)establish the database connection.

        Returns:
            True if the store is CONNECTED and all tenants are provisioned,
            False otherwise.
        """
        async with self._connect_lock:
            if self.is_connected:
                return True

            logger.debug("Probing database connection...")
            try:
                if self._engine is None:
                    self._engine = self._create_engine()
                await self._call(_probe, self._engine)
            except Exception as e:
                logger.warning(f"Database connection failed: {e}")
                self._dispose_engine()
                return False

            self.state = StoreState.CONNECTED
            set_store_connected(True)
            # The database may have been replaced while we were away
            self._provisioned.clear()
            logger.info("Database connected")

        for tenant in self.registry.tenants:
            try:
                await self.ensure_tenant_provisioned(tenant)
            except StoreUnavailable:
                logger.warning(f"Provisioning failed for tenant {tenant}, staying disconnected")
                return False

        for listener in list(self._connect_listeners):
            await listener()

        return self.is_connected

    async def close(self) -> None:
        self.mark_disconnected("shutdown")
        if self._engine is not None:
            try:
                await self._call(self._dispose_engine)
            except Exception as e:
                logger.warning(f"Failed to dispose database engine: {e!r}")

    async def ensure_tenant_provisioned(self, tenant: str) -> None:
        """
        Create the tenant's tables if they do not exist yet.

        Idempotent and memoized; concurrent first use by two requests creates
        the tables once.
        """
        if tenant in self._provisioned:
            return

        lock = self._provision_locks.setdefault(tenant, asyncio.Lock())
        async with lock:
            if tenant in self._provisioned:
                return
            engine = self._require_engine()
            tables = self.tables_for(tenant)
            try:
                await self._call(_create_tables, engine, tables)
            except Exception as e:
                self.mark_disconnected(f"provisioning {tenant}: {e}")
                raise StoreUnavailable() from e
            self._provisioned.add(tenant)
            logger.info(f"Tables ready for tenant {tenant}")

    # --------------------------------------------------------- operations

    async def execute(self, tenant: str, operation: Operation, *args) -> Any:
        """
        Run one operation against the tenant's tables in its own transaction.

        Raises:
            StoreUnavailable: if not connected, or if the operation fails (the
                adapter is then DISCONNECTED).
        """
        await self.ensure_tenant_provisioned(tenant)
        engine = self._require_engine()
        tables = self.tables_for(tenant)
        gate = CommitGate()
        try:
            return await self._call(_run_in_transaction, engine, tables, operation, args, gate, gate=gate)
        except Exception as e:
            self.mark_disconnected(f"{type(e).__name__}: {e}")
            raise StoreUnavailable() from e

    @asynccontextmanager
    async def session(self, tenant: str) -> AsyncIterator["StoreSession"]:
        """Hold one connection for a batch of operations (used by drain)."""
        await self.ensure_tenant_provisioned(tenant)
        engine = self._require_engine()
        try:
            conn = await self._call(engine.connect)
        except Exception as e:
            self.mark_disconnected(f"{type(e).__name__}: {e}")
            raise StoreUnavailable() from e

        session = StoreSession(self, conn, self.tables_for(tenant))
        try:
            yield session
        finally:
            if session.detached:
                # A timed-out worker still owns the connection and closes it
                logger.warning(f"Connection for tenant {tenant} left to its timed-out worker")
            else:
                try:
                    await self._call(conn.close)
                except Exception as e:
                    logger.warning(f"Failed to release database connection: {e!r}")


class StoreSession:
    """A connection held for a batch; each run() is its own transaction."""

    def __init__(self, store: DurableStore, conn: Connection, tables: TenantTables):
        self._store = store
        self._conn = conn
        self._tables = tables
        self.detached = False

    async def run(self, operation: Operation, *args) -> Any:
        if not self._store.is_connected or self.detached:
            raise StoreUnavailable()
        gate = CommitGate()
        try:
            return await self._store._call(
                _run_on_connection, self._conn, self._tables, operation, args, gate, gate=gate
            )
        except Exception as e:
            self.detached = gate.abandoned
            self._store.mark_disconnected(f"{type(e).__name__}: {e}")
            raise StoreUnavailable() from e


class OperationAbandoned(Exception):
    """The awaiting caller timed out before the worker reached its commit."""


class CommitGate:
    """
    Handshake between a worker-thread transaction and the coroutine awaiting it.

    Once the caller gives up, the worker rolls back instead of committing
    and takes over releasing its connection. A worker that already started
    committing is left to finish unless the caller forces the hand-over.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._committing = False
        self._finished = False
        self.abandoned = False

    def may_commit(self) -> bool:
        with self._lock:
            if self.abandoned:
                return False
            self._committing = True
            return True

    def finish(self) -> bool:
        """Mark the worker done; True when the worker must release the connection."""
        with self._lock:
            self._finished = True
            return self.abandoned

    def give_up(self, force: bool = False) -> bool:
        """
        Called by the awaiting side on timeout.

        Returns:
            True when the worker will not commit (or, forced, will not be
            waited on); False when the outcome is, or is about to be, known.
        """
        with self._lock:
            if self._finished:
                return False
            if self._committing and not force:
                return False
            self.abandoned = True
            return True


# =============================================================================
# Worker-thread helpers
# =============================================================================

def _probe(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def _create_tables(engine: Engine, tables: TenantTables) -> None:
    with engine.begin() as conn:
        tables.metadata.create_all(conn, checkfirst=True)


def _discard_outcome(future: "asyncio.Future") -> None:
    # Nobody awaits an abandoned call; retrieve its error so it is not reported
    if not future.cancelled() and future.exception() is not None:
        logger.debug(f"Abandoned database call ended with {future.exception()!r}")


def _commit(transaction, gate: CommitGate) -> None:
    if not gate.may_commit():
        raise OperationAbandoned("caller timed out before commit")
    transaction.commit()


def _run_in_transaction(
    engine: Engine, tables: TenantTables, operation: Operation, args: tuple, gate: CommitGate
) -> Any:
    try:
        with engine.connect() as conn:
            with conn.begin() as transaction:
                result = operation(conn, tables, *args)
                _commit(transaction, gate)
        return result
    finally:
        gate.finish()


def _run_on_connection(
    conn: Connection, tables: TenantTables, operation: Operation, args: tuple, gate: CommitGate
) -> Any:
    try:
        with conn.begin() as transaction:
            result = operation(conn, tables, *args)
            _commit(transaction, gate)
        return result
    finally:
        if gate.finish():
            conn.close()


# =============================================================================
# Message Repository Functions
# =============================================================================

def persist_task(conn: Connection, tables: TenantTables, task: QueuedTask) -> int:
    """
    Write a task's media row (if any) and then its message row.

    The caller wraps both statements in one transaction, so a failed message
    insert never leaves an orphaned media row behind.

    Returns:
        The new message id.
    """
    payload = task.payload
    media_id = None

    if isinstance(payload, WithExistingMedia):
        # The reference may have been accepted while offline, unchecked
        if media_exists(conn, tables, payload.media_id):
            media_id = payload.media_id
        else:
            logger.warning(f"Media {payload.media_id} does not exist, storing message without it")
    elif isinstance(payload, WithInlineFile):
        result = conn.execute(
            insert(tables.media).values(
                filename=payload.filename,
                mime_type=payload.mime_type,
                data=payload.data,
                created_at=task.created_at,
            )
        )
        media_id = result.inserted_primary_key[0]
        logger.debug(f"Inserted media {media_id} ({len(payload.data)} bytes)")

    result = conn.execute(
        insert(tables.messages).values(
            content=payload.content,
            media_id=media_id,
            created_at=task.created_at,
        )
    )
    return result.inserted_primary_key[0]


def select_recent_messages(conn: Connection, tables: TenantTables, limit: int = 100) -> list:
    """
    Return the most recent ``limit`` messages, oldest first.

    Media is joined for its mime type only; the binary payload is never
    loaded by the listing.
    """
    messages, media = tables.messages, tables.media
    stmt = (
        select(
            messages.c.id,
            messages.c.content,
            messages.c.media_id,
            messages.c.created_at,
            media.c.mime_type,
        )
        .select_from(messages.outerjoin(media, messages.c.media_id == media.c.id))
        .order_by(messages.c.id.desc())
        .limit(limit)
    )
    rows = conn.execute(stmt).mappings().all()
    return [dict(row) for row in reversed(rows)]


def media_exists(conn: Connection, tables: TenantTables, media_id: int) -> bool:
    """Check a media id without loading its payload."""
    if not 1 <= media_id <= MAX_ROW_ID:
        return False
    media = tables.media
    return conn.execute(select(media.c.id).where(media.c.id == media_id)).first() is not None


def select_media(conn: Connection, tables: TenantTables, media_id: int) -> Optional[dict]:
    if not 1 <= media_id <= MAX_ROW_ID:
        return None
    media = tables.media
    row = conn.execute(
        select(media.c.id, media.c.filename, media.c.mime_type, media.c.data)
        .where(media.c.id == media_id)
    ).mappings().first()
    return dict(row) if row is not None else None
