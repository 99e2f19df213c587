"""Connection management shared by the SQLite adapters."""

import asyncio
import sqlite3
import threading
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

import aiosqlite

DEFAULT_BUSY_TIMEOUT = 30.0


def is_unique_violation(error: sqlite3.Error) -> bool:
    """Return True if the error is a primary key / unique constraint failure."""
    return isinstance(error, sqlite3.IntegrityError) and "UNIQUE constraint failed" in str(
        error
    )


def is_locked(error: sqlite3.Error) -> bool:
    """Return True if the error means another connection holds the lock."""
    return isinstance(error, sqlite3.OperationalError) and (
        "database is locked" in str(error) or "database is busy" in str(error)
    )


def bootstrap_schema(db_path: str, schema: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
    """Create a file database schema once, in WAL mode.

    Every statement of ``schema`` must be idempotent (``IF NOT EXISTS``).
    """
    conn = sqlite3.connect(db_path, timeout=busy_timeout)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(schema)
        conn.commit()
    finally:
        conn.close()


class AsyncConnectionManager:
    """Manages async (aiosqlite) database connections.

    Handles schema initialization and connection lifecycle for async contexts.
    For :memory: databases, maintains a persistent connection since SQLite
    in-memory databases are connection-scoped.
    """

    def __init__(
        self, db_path: str, schema: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    ) -> None:
        self._db_path = db_path
        self._schema = schema
        self._busy_timeout = busy_timeout
        self._initialized = False
        self._init_lock: asyncio.Lock | None = None
        self._persistent_conn: aiosqlite.Connection | None = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the initialization lock (lazy to avoid event loop issues)."""
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        return self._init_lock

    @property
    def _should_close_connection(self) -> bool:
        """Return True if connections should be closed after use."""
        return self._db_path != ":memory:"

    async def _ensure_initialized(self) -> None:
        """Initialize database schema once."""
        if self._initialized:
            return
        async with self._get_lock():
            if self._initialized:
                return
            if self._db_path == ":memory:":
                self._persistent_conn = await aiosqlite.connect(":memory:")
                await self._persistent_conn.executescript(self._schema)
            else:
                async with aiosqlite.connect(self._db_path, timeout=self._busy_timeout) as db:
                    await db.executescript(self._schema)
            self._initialized = True

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a database connection."""
        await self._ensure_initialized()
        if self._db_path == ":memory:":
            if self._persistent_conn is None:
                raise RuntimeError("Memory database connection not initialized")
            return self._persistent_conn
        return await aiosqlite.connect(self._db_path, timeout=self._busy_timeout)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for async database connections.

        Automatically closes connections for file-based databases.
        For :memory: databases, keeps connections open (they're persistent).
        """
        db = await self._get_connection()
        try:
            yield db
        finally:
            if self._should_close_connection:
                await db.close()

    async def close(self) -> None:
        """Close persistent connection (for :memory: databases)."""
        if self._persistent_conn is not None:
            await self._persistent_conn.close()
            self._persistent_conn = None
            self._initialized = False


class SyncConnectionManager:
    """Owns one sqlite3 connection for the lifetime of a store handle.

    The connection runs in autocommit mode (``isolation_level=None``);
    callers group writes with explicit ``BEGIN``/``COMMIT``. Unless
    ``shared`` is set it is bound to the thread that opens it, which is how a
    handle stays private to the worker that created it. A shared connection
    must be serialized by its owner.

    IMPORTANT: For :memory: databases, this manager maintains a completely
    separate database instance from AsyncConnectionManager.
    """

    def __init__(
        self,
        db_path: str,
        schema: str,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        initialize: bool = True,
        shared: bool = False,
    ) -> None:
        self._db_path = db_path
        self._schema = schema
        self._busy_timeout = busy_timeout
        self._initialize = initialize
        self._shared = shared
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def _open(self) -> sqlite3.Connection:
        """Open the connection and initialize the schema if requested."""
        if self._conn is not None:
            return self._conn
        with self._lock:
            if self._conn is not None:
                return self._conn
            conn = sqlite3.connect(
                self._db_path,
                timeout=self._busy_timeout,
                isolation_level=None,
                check_same_thread=not self._shared,
            )
            if self._initialize:
                if self._db_path != ":memory:":
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(self._schema)
            self._conn = conn
            return conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager yielding the handle's connection."""
        yield self._open()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class SQLiteStorageBase:
    """Base class for SQLite storage adapters.

    Delegates connection lifecycle to AsyncConnectionManager and
    SyncConnectionManager. Subclasses provide the schema and implement
    domain-specific read/write methods.

    IMPORTANT - :memory: Database Isolation:
    When using :memory: databases, the sync (sqlite3) and async (aiosqlite)
    connections do NOT share data; each manager keeps its own in-memory
    database. Use file databases when writes and async reads must meet.
    """

    def __init__(
        self,
        db_path: str,
        schema: str,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        initialize: bool = True,
        shared: bool = False,
    ) -> None:
        self._db_path = db_path
        self._schema = schema
        self._async_manager = AsyncConnectionManager(db_path, schema, busy_timeout)
        self._sync_manager = SyncConnectionManager(
            db_path, schema, busy_timeout, initialize, shared
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    async def aclose(self) -> None:
        """Close the persistent async connection (for :memory: databases)."""
        await self._async_manager.close()

    def close(self) -> None:
        """Close the sync connection of this handle."""
        self._sync_manager.close()

    # --- Connection context managers (delegate to managers) ---

    @asynccontextmanager
    async def async_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for async database connections."""
        async with self._async_manager.connection() as conn:
            yield conn

    @contextmanager
    def sync_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for the sync connection of this handle."""
        with self._sync_manager.connection() as conn:
            yield conn
