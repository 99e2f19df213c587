"""SQLite storage adapter for metric samples and node metadata."""

import logging
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

from diagbundle.adapters.storage.sqlite_base import (
    DEFAULT_BUSY_TIMEOUT,
    SQLiteStorageBase,
    bootstrap_schema,
    is_locked,
    is_unique_violation,
)
from diagbundle.core.models import (
    PERSISTED_SAMPLE_TYPES,
    STORE_DATE_FORMAT,
    GenericMetric,
    LogFileRecord,
    MetricSource,
    NodeIngestRecord,
    PersistedSample,
    ServerInfo,
    SSTableCount,
    WriteResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_METRICS_SCHEMA = """
CREATE TABLE IF NOT EXISTS tablehistograms (
    node TEXT NOT NULL,
    keyspace TEXT NOT NULL,
    tablename TEXT NOT NULL,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, keyspace, tablename, name, key)
);
CREATE INDEX IF NOT EXISTS idx_tablehistograms_name_key ON tablehistograms(name, key);
CREATE TABLE IF NOT EXISTS keyspacehistograms (
    node TEXT NOT NULL,
    keyspace TEXT NOT NULL,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, keyspace, name, key)
);
CREATE TABLE IF NOT EXISTS metrics (
    node TEXT NOT NULL,
    type TEXT NOT NULL,
    scope TEXT NOT NULL,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, type, scope, name, key)
);
CREATE TABLE IF NOT EXISTS db (
    node TEXT NOT NULL,
    keyspace TEXT NOT NULL,
    tablename TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, keyspace, tablename, key)
);
CREATE TABLE IF NOT EXISTS internal (
    node TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, type, key)
);
CREATE TABLE IF NOT EXISTS service (
    node TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, type, key)
);
CREATE TABLE IF NOT EXISTS runtime (
    node TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, type, key)
);
CREATE TABLE IF NOT EXISTS garbage_collector (
    node TEXT NOT NULL,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    pkey TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, type, name, pkey, key)
);
CREATE TABLE IF NOT EXISTS memory_pool (
    node TEXT NOT NULL,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (node, name, key)
);
CREATE TABLE IF NOT EXISTS servers (
    host TEXT PRIMARY KEY,
    memory_in_gb INTEGER NOT NULL,
    aws_region TEXT NOT NULL,
    aws_instance_type TEXT NOT NULL,
    has_jmx INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS node_ingest (
    host TEXT PRIMARY KEY,
    metric_source TEXT NOT NULL,
    valid_entries INTEGER NOT NULL,
    invalid_entries INTEGER NOT NULL,
    min_log_date TEXT,
    max_log_date TEXT
);
CREATE TABLE IF NOT EXISTS log_files (
    host TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    path TEXT NOT NULL,
    valid_entries INTEGER NOT NULL,
    invalid_entries INTEGER NOT NULL,
    PRIMARY KEY (host, fingerprint)
);
"""

_INSERT_SERVER = """
INSERT INTO servers (host, memory_in_gb, aws_region, aws_instance_type, has_jmx)
VALUES (?, ?, ?, ?, ?)
"""

_INSERT_NODE_INGEST = """
INSERT INTO node_ingest
    (host, metric_source, valid_entries, invalid_entries, min_log_date, max_log_date)
VALUES (?, ?, ?, ?, ?, ?)
"""

_INSERT_LOG_FILE = """
INSERT OR IGNORE INTO log_files (host, fingerprint, path, valid_entries, invalid_entries)
VALUES (?, ?, ?, ?, ?)
"""

_SELECT_INGEST_SOURCES = """
SELECT host, metric_source FROM node_ingest
"""

_DELETE_LOG_RECORDS = ("DELETE FROM log_files", "DELETE FROM node_ingest")

_SELECT_FINGERPRINT = """
SELECT 1 FROM log_files WHERE host = ? AND fingerprint = ?
"""

_SELECT_HISTOGRAM = """
SELECT node, CAST(value AS REAL) FROM tablehistograms
WHERE keyspace = ? AND tablename = ? AND name = ? AND key = ?
ORDER BY node
"""

_SELECT_KEYSPACE_HISTOGRAM = """
SELECT node, CAST(value AS REAL) FROM keyspacehistograms
WHERE keyspace = ? AND name = ? AND key = ?
ORDER BY node
"""

# scope is the message type, e.g. MUTATION or READ
_SELECT_DROPPED_COUNTS = """
SELECT node, CAST(value AS INTEGER) FROM metrics
WHERE type = 'DroppedMessage' AND key = 'Count' AND scope = ?
"""

_SELECT_BLOCKED_TASKS = """
SELECT node, CAST(value AS INTEGER) FROM internal
WHERE key = 'TotalBlockedTasks' AND type = ?
"""

_SELECT_SSTABLE_COUNTS = """
SELECT node, keyspace, tablename, CAST(value AS INTEGER) FROM tablehistograms
WHERE name = 'LiveSSTableCount'
ORDER BY node, keyspace, tablename
"""

_SELECT_RUNTIME_VARIABLES = """
SELECT key, value FROM db WHERE node = ? AND keyspace = '' AND tablename = ''
"""

_SELECT_HOST_METRICS = """
SELECT node, type, scope, name, key, value FROM metrics WHERE node = ?
ORDER BY type, scope, name, key
"""

_SELECT_SCHEMA_VERSIONS = """
SELECT node, value FROM db WHERE key = 'SchemaVersion' OR key LIKE '%.SchemaVersion'
"""

_SELECT_UNUSED_KEYSPACES = """
SELECT a.keyspace
FROM tablehistograms a
JOIN tablehistograms b
    ON a.node = b.node AND a.keyspace = b.keyspace AND a.tablename = b.tablename
WHERE a.name = 'WriteLatency' AND a.key = 'Count'
    AND b.name = 'ReadLatency' AND b.key = 'Count'
    AND a.keyspace != '' AND a.keyspace NOT LIKE 'system%' AND a.tablename != ''
GROUP BY a.keyspace
HAVING SUM(CAST(a.value AS REAL) + CAST(b.value AS REAL)) = 0
ORDER BY a.keyspace
"""

_SELECT_SERVERS = """
SELECT host, memory_in_gb, aws_region, aws_instance_type, has_jmx FROM servers
ORDER BY host
"""

_SELECT_LOG_DURATIONS = """
SELECT host, min_log_date, max_log_date FROM node_ingest
WHERE min_log_date IS NOT NULL AND max_log_date IS NOT NULL
"""

_SELECT_LOG_STATS = """
SELECT host, valid_entries, invalid_entries FROM node_ingest
"""

_SELECT_NODE_INGEST = """
SELECT host, metric_source, valid_entries, invalid_entries, min_log_date, max_log_date
FROM node_ingest
ORDER BY host
"""

_SELECT_LOG_FILES = """
SELECT host, path, fingerprint, valid_entries, invalid_entries FROM log_files
ORDER BY host, path
"""

_COUNTABLE_TABLES = frozenset(
    [t.table_name for t in PERSISTED_SAMPLE_TYPES] + ["servers", "node_ingest", "log_files"]
)

Row = Sequence[Any]


class StatementCache:
    """Reusable cursors keyed by statement text.

    Owned by one store handle, so it is never shared between workers.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._cursors: dict[str, sqlite3.Cursor] = {}
        self.hits = 0
        self.misses = 0

    def cursor(self, query: str) -> sqlite3.Cursor:
        """Return the cursor for ``query``, creating it on first use."""
        cursor = self._cursors.get(query)
        if cursor is None:
            self.misses += 1
            cursor = self._conn.cursor()
            self._cursors[query] = cursor
        else:
            self.hits += 1
        return cursor

    def __len__(self) -> int:
        return len(self._cursors)

    def __contains__(self, query: object) -> bool:
        return query in self._cursors

    def close(self) -> None:
        for cursor in self._cursors.values():
            cursor.close()
        self._cursors.clear()


def _format_date(value: datetime | None) -> str | None:
    return value.strftime(STORE_DATE_FORMAT) if value is not None else None


def _parse_date(value: str | None) -> datetime | None:
    return datetime.strptime(value, STORE_DATE_FORMAT) if value else None


def _server_from_row(row: Row) -> ServerInfo:
    return ServerInfo(
        host=row[0],
        memory_in_gb=int(row[1]),
        aws_region=row[2],
        aws_instance_type=row[3],
        has_jmx=bool(row[4]),
    )


def _host_pairs(rows: list[Row]) -> list[tuple[str, float]]:
    return [(row[0], float(row[1] or 0.0)) for row in rows]


def _host_counts(rows: list[Row]) -> dict[str, int]:
    return {row[0]: int(row[1] or 0) for row in rows}


def _sstable_counts(rows: list[Row], over_threshold: int) -> list[SSTableCount]:
    counts = [SSTableCount(row[0], row[1], row[2], int(row[3] or 0)) for row in rows]
    return [c for c in counts if c.count > over_threshold]


def _generic_metrics(rows: list[Row]) -> list[GenericMetric]:
    return [GenericMetric(*row) for row in rows]


def _ingest_records(ingest_rows: list[Row], file_rows: list[Row]) -> list[NodeIngestRecord]:
    files: dict[str, list[LogFileRecord]] = {}
    for host, path, fingerprint, valid, invalid in file_rows:
        files.setdefault(host, []).append(LogFileRecord(path, fingerprint, valid, invalid))
    return [
        NodeIngestRecord(
            host=row[0],
            metric_source=MetricSource(row[1]),
            valid_entries=row[2],
            invalid_entries=row[3],
            min_log_date=_parse_date(row[4]),
            max_log_date=_parse_date(row[5]),
            log_files=tuple(files.get(row[0], [])),
        )
        for row in ingest_rows
    ]


def _count_query(table: str) -> str:
    if table not in _COUNTABLE_TABLES:
        raise ValueError(f"Unknown table: {table}")
    return f"SELECT COUNT(*) FROM {table}"


class SQLiteMetricStore(SQLiteStorageBase):
    """SQLite implementation of MetricSinkPort and MetricQueryPort.

    Each sample variant lands in its own table whose primary key is the
    variant's natural key, so a second write of the same key is reported
    as a duplicate instead of overwriting the first one.

    A handle owns one sqlite3 connection bound to the thread that first
    uses it; every worker creates its own handle. The schema is created
    once per file with ``SQLiteMetricStore.bootstrap(path)`` before
    workers start, and workers open their handles with ``bootstrap=False``.

    Read methods are async (aiosqlite) with ``_sync`` twins for non-async
    callers. For :memory: databases, sync and async have separate in-memory
    DBs.

    Example:
        SQLiteMetricStore.bootstrap("metrics.db")
        store = SQLiteMetricStore("metrics.db", bootstrap=False)
        with store.transaction():
            store.write(sample)
        rows = await store.get_histogram("ks1", "t1", "ReadLatency", "Count")
    """

    def __init__(
        self,
        db_path: str,
        bootstrap: bool = True,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        super().__init__(db_path, _METRICS_SCHEMA, busy_timeout, initialize=bootstrap)
        self._busy_timeout = busy_timeout
        self._statements: StatementCache | None = None

    @classmethod
    def bootstrap(cls, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        """Create the schema of a file database; safe to call repeatedly."""
        bootstrap_schema(db_path, _METRICS_SCHEMA, busy_timeout)

    @property
    def statements(self) -> StatementCache:
        if self._statements is None:
            with self.sync_connection() as conn:
                self._statements = StatementCache(conn)
        return self._statements

    # --- Write side ---

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one transaction.

        Commits once on success and rolls back if the block raises. A
        nested call joins the transaction already open.

        Only one handle of a file can hold the write lock. Starting a
        transaction waits until the lock is free, however long the holder
        keeps it; each attempt waits up to the busy timeout.
        """
        with self.sync_connection() as conn:
            if conn.in_transaction:
                yield
                return
            self._begin(conn)
            try:
                yield
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _begin(self, conn: sqlite3.Connection) -> None:
        while True:
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if not is_locked(e):
                    raise
                logger.info(f"Waiting for the write lock of {self.db_path}")

    def _insert(self, query: str, row: tuple[Any, ...], description: str) -> WriteResult:
        cursor = self.statements.cursor(query)
        try:
            cursor.execute(query, row)
        except sqlite3.Error as e:
            if is_unique_violation(e):
                logger.debug(f"Duplicate record skipped: {description}")
                return WriteResult.DUPLICATE
            logger.warning(f"Failed to write record {description}: {e}")
            return WriteResult.FAILED
        return WriteResult.WRITTEN

    def write(self, sample: PersistedSample) -> WriteResult:
        """Persist one sample.

        Returns:
            WRITTEN, DUPLICATE when the natural key already exists, or
            FAILED for any other storage error (logged, never raised).
        """
        return self._insert(sample.insert_query, sample.to_row(), repr(sample))

    def write_server(self, info: ServerInfo) -> WriteResult:
        """Persist host metadata; a second write for the host is logged and skipped."""
        row = (
            info.host,
            info.memory_in_gb,
            info.aws_region,
            info.aws_instance_type,
            int(info.has_jmx),
        )
        result = self._insert(_INSERT_SERVER, row, repr(info))
        if result is WriteResult.DUPLICATE:
            logger.warning(f"Server {info.host} already recorded, keeping the first entry")
        return result

    def write_ingest_record(self, record: NodeIngestRecord) -> WriteResult:
        """Persist a node's bookkeeping record and its processed log files."""
        row = (
            record.host,
            record.metric_source.value,
            record.valid_entries,
            record.invalid_entries,
            _format_date(record.min_log_date),
            _format_date(record.max_log_date),
        )
        with self.transaction():
            result = self._insert(_INSERT_NODE_INGEST, row, f"ingest record of {record.host}")
            if result is not WriteResult.WRITTEN:
                if result is WriteResult.DUPLICATE:
                    logger.warning(f"Ingest record of {record.host} already written")
                return result
            for f in record.log_files:
                self._insert(
                    _INSERT_LOG_FILE,
                    (record.host, f.fingerprint, f.path, f.valid_entries, f.invalid_entries),
                    f"log file {f.path}",
                )
        return result

    def clear_log_records(self) -> dict[str, MetricSource]:
        """Forget every processed log file and node ingest record.

        Called before the search index is rebuilt, so fingerprints of a
        previous run no longer mark files as already indexed.

        Returns:
            host -> metric source of the removed ingest records.
        """
        with self.sync_connection() as conn:
            sources = {
                host: MetricSource(source)
                for host, source in conn.execute(_SELECT_INGEST_SOURCES)
            }
        with self.transaction():
            with self.sync_connection() as conn:
                for statement in _DELETE_LOG_RECORDS:
                    conn.execute(statement)
        if sources:
            logger.info(f"Cleared log records of {len(sources)} hosts from {self.db_path}")
        return sources

    def has_fingerprint(self, host: str, fingerprint: str) -> bool:
        with self.sync_connection() as conn:
            return conn.execute(_SELECT_FINGERPRINT, (host, fingerprint)).fetchone() is not None

    def close(self) -> None:
        if self._statements is not None:
            self._statements.close()
            self._statements = None
        super().close()

    # --- Query helpers ---

    async def _fetchall(self, query: str, params: tuple[Any, ...] = ()) -> list[Row]:
        async with self.async_connection() as db:
            async with db.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    def _fetchall_sync(self, query: str, params: tuple[Any, ...] = ()) -> list[Row]:
        with self.sync_connection() as conn:
            return conn.execute(query, params).fetchall()

    async def _query(
        self, query: str, params: tuple[Any, ...], convert: Callable[[list[Row]], T]
    ) -> T:
        return convert(await self._fetchall(query, params))

    def _query_sync(
        self, query: str, params: tuple[Any, ...], convert: Callable[[list[Row]], T]
    ) -> T:
        return convert(self._fetchall_sync(query, params))

    # --- Read surface ---

    async def get_histogram(
        self, keyspace: str, table: str, histogram: str, key: str
    ) -> list[tuple[str, float]]:
        """Return (host, value) pairs of one table histogram sub-key.

        Args:
            keyspace: Keyspace name.
            table: Table name.
            histogram: Histogram name, e.g. ReadLatency.
            key: Sub-key, e.g. Count or 99thPercentile.
        """
        return await self._query(
            _SELECT_HISTOGRAM, (keyspace, table, histogram, key), _host_pairs
        )

    def get_histogram_sync(
        self, keyspace: str, table: str, histogram: str, key: str
    ) -> list[tuple[str, float]]:
        return self._query_sync(
            _SELECT_HISTOGRAM, (keyspace, table, histogram, key), _host_pairs
        )

    async def get_keyspace_histogram(
        self, keyspace: str, histogram: str, key: str
    ) -> list[tuple[str, float]]:
        return await self._query(
            _SELECT_KEYSPACE_HISTOGRAM, (keyspace, histogram, key), _host_pairs
        )

    def get_keyspace_histogram_sync(
        self, keyspace: str, histogram: str, key: str
    ) -> list[tuple[str, float]]:
        return self._query_sync(
            _SELECT_KEYSPACE_HISTOGRAM, (keyspace, histogram, key), _host_pairs
        )

    async def get_dropped_counts(self, message_type: str) -> dict[str, int]:
        """Return host -> dropped message count for one message type (e.g. MUTATION)."""
        return await self._query(_SELECT_DROPPED_COUNTS, (message_type,), _host_counts)

    def get_dropped_counts_sync(self, message_type: str) -> dict[str, int]:
        return self._query_sync(_SELECT_DROPPED_COUNTS, (message_type,), _host_counts)

    async def get_blocked_task_counts(self, stage: str) -> dict[str, int]:
        """Return host -> total blocked tasks of one internal stage."""
        return await self._query(_SELECT_BLOCKED_TASKS, (stage,), _host_counts)

    def get_blocked_task_counts_sync(self, stage: str) -> dict[str, int]:
        return self._query_sync(_SELECT_BLOCKED_TASKS, (stage,), _host_counts)

    async def get_sstable_counts(self, over_threshold: int = 0) -> list[SSTableCount]:
        """Return live SSTable counts above ``over_threshold``."""
        rows = await self._fetchall(_SELECT_SSTABLE_COUNTS)
        return _sstable_counts(rows, over_threshold)

    def get_sstable_counts_sync(self, over_threshold: int = 0) -> list[SSTableCount]:
        return _sstable_counts(self._fetchall_sync(_SELECT_SSTABLE_COUNTS), over_threshold)

    async def get_runtime_variables(self, host: str) -> dict[str, str]:
        """Return the node-wide storage-engine attributes of one host."""
        return await self._query(_SELECT_RUNTIME_VARIABLES, (host,), dict)

    def get_runtime_variables_sync(self, host: str) -> dict[str, str]:
        return self._query_sync(_SELECT_RUNTIME_VARIABLES, (host,), dict)

    async def get_host_metrics(self, host: str) -> list[GenericMetric]:
        return await self._query(_SELECT_HOST_METRICS, (host,), _generic_metrics)

    def get_host_metrics_sync(self, host: str) -> list[GenericMetric]:
        return self._query_sync(_SELECT_HOST_METRICS, (host,), _generic_metrics)

    async def get_schema_versions(self) -> dict[str, str]:
        return await self._query(_SELECT_SCHEMA_VERSIONS, (), dict)

    def get_schema_versions_sync(self) -> dict[str, str]:
        return self._query_sync(_SELECT_SCHEMA_VERSIONS, (), dict)

    async def get_unused_keyspaces(self) -> list[str]:
        """Return user keyspaces with no reads and no writes on any host."""
        return [row[0] for row in await self._fetchall(_SELECT_UNUSED_KEYSPACES)]

    def get_unused_keyspaces_sync(self) -> list[str]:
        return [row[0] for row in self._fetchall_sync(_SELECT_UNUSED_KEYSPACES)]

    async def get_servers(self) -> list[ServerInfo]:
        return [_server_from_row(row) for row in await self._fetchall(_SELECT_SERVERS)]

    def get_servers_sync(self) -> list[ServerInfo]:
        return [_server_from_row(row) for row in self._fetchall_sync(_SELECT_SERVERS)]

    async def get_log_durations(self) -> dict[str, tuple[str, str]]:
        """Return host -> (oldest, newest) log timestamp text."""
        rows = await self._fetchall(_SELECT_LOG_DURATIONS)
        return {row[0]: (row[1], row[2]) for row in rows}

    def get_log_durations_sync(self) -> dict[str, tuple[str, str]]:
        return {row[0]: (row[1], row[2]) for row in self._fetchall_sync(_SELECT_LOG_DURATIONS)}

    async def get_log_stats(self) -> dict[str, tuple[int, int]]:
        """Return host -> (valid entries, invalid entries)."""
        rows = await self._fetchall(_SELECT_LOG_STATS)
        return {row[0]: (row[1], row[2]) for row in rows}

    def get_log_stats_sync(self) -> dict[str, tuple[int, int]]:
        return {row[0]: (row[1], row[2]) for row in self._fetchall_sync(_SELECT_LOG_STATS)}

    async def get_ingest_records(self) -> list[NodeIngestRecord]:
        return _ingest_records(
            await self._fetchall(_SELECT_NODE_INGEST), await self._fetchall(_SELECT_LOG_FILES)
        )

    def get_ingest_records_sync(self) -> list[NodeIngestRecord]:
        return _ingest_records(
            self._fetchall_sync(_SELECT_NODE_INGEST), self._fetchall_sync(_SELECT_LOG_FILES)
        )

    async def count(self, table: str) -> int:
        """Return the number of rows of one store table."""
        rows = await self._fetchall(_count_query(table))
        return int(rows[0][0]) if rows else 0

    def count_sync(self, table: str) -> int:
        rows = self._fetchall_sync(_count_query(table))
        return int(rows[0][0]) if rows else 0


