"""SQLite full-text search index for log entries."""

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from diagbundle.adapters.storage.sqlite_base import DEFAULT_BUSY_TIMEOUT, SQLiteStorageBase
from diagbundle.core.errors import SearchQueryError
from diagbundle.core.models import INDEX_TIMESTAMP_FORMAT, LogEntry

logger = logging.getLogger(__name__)

_LOGS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS log_entries USING fts5(
    message,
    host UNINDEXED,
    level UNINDEXED,
    timestamp UNINDEXED,
    date UNINDEXED
);
"""

_INSERT_ENTRY = """
INSERT INTO log_entries (message, host, level, timestamp, date) VALUES (?, ?, ?, ?, ?)
"""

_SELECT_ENTRIES = """
SELECT host, timestamp, level, message FROM log_entries
"""

_COUNT_ENTRIES = """
SELECT COUNT(*) FROM log_entries
"""

_COUNT_HOST_ENTRIES = """
SELECT COUNT(*) FROM log_entries WHERE host = ?
"""


def _to_row(entry: LogEntry) -> tuple[str, str, str, str, str]:
    return (entry.message, entry.host, entry.level, entry.index_timestamp, entry.date)


def _from_row(row: Any) -> LogEntry:
    return LogEntry(
        host=row[0],
        timestamp=datetime.strptime(row[1], INDEX_TIMESTAMP_FORMAT),
        level=row[2],
        message=row[3],
    )


def _build_search(
    query: str,
    level: str | None,
    limit: int,
    min_dates: dict[str, datetime] | None,
) -> tuple[str, list[Any]]:
    """Build the search statement and its parameters."""
    if limit < 1:
        raise ValueError("limit must be positive")
    where: list[str] = []
    params: list[Any] = []
    if query.strip():
        where.append("log_entries MATCH ?")
        params.append(query)
    if level:
        where.append("level = ?")
        params.append(level.strip().upper())
    for host, min_date in (min_dates or {}).items():
        where.append("(host != ? OR timestamp >= ?)")
        params.extend([host, min_date.strftime(INDEX_TIMESTAMP_FORMAT)])
    sql = _SELECT_ENTRIES
    if where:
        sql += f"WHERE {' AND '.join(where)}\n"
    sql += "ORDER BY timestamp DESC LIMIT ?"
    params.append(limit)
    return sql, params


def _search_error(query: str, error: sqlite3.OperationalError) -> SearchQueryError:
    return SearchQueryError(f"Invalid search query {query!r}: {error}")


class SQLiteLogIndex(SQLiteStorageBase):
    """Append-only FTS5 index of log entries.

    One instance is shared by every log worker of a run. Appends go through
    a single writer connection serialized by a lock; entries are never
    updated or deleted. The message column supports FTS5 query syntax
    (keywords, ``AND``/``OR``/``NOT``, quoted phrases, prefix ``*``).

    Example:
        index = SQLiteLogIndex("logSearchIndex.db")
        index.add_entries(entries)
        hits = await index.search("compaction AND large", level="WARN", limit=50)
    """

    def __init__(self, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        super().__init__(db_path, _LOGS_SCHEMA, busy_timeout, shared=True)
        self._write_lock = threading.Lock()

    def add_entries(self, entries: Iterable[LogEntry]) -> int:
        """Append entries in one transaction.

        Returns:
            Number of entries appended.
        """
        rows = [_to_row(entry) for entry in entries]
        if not rows:
            return 0
        with self._write_lock, self.sync_connection() as conn:
            conn.execute("BEGIN")
            try:
                conn.executemany(_INSERT_ENTRY, rows)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return len(rows)

    async def search(
        self,
        query: str,
        level: str | None = None,
        limit: int = 100,
        min_dates: dict[str, datetime] | None = None,
    ) -> list[LogEntry]:
        """Search the index.

        Args:
            query: FTS5 query on the message; blank matches every entry.
            level: Only entries of this level (e.g. WARN).
            limit: Maximum number of entries returned.
            min_dates: host -> oldest timestamp to return for that host.

        Returns:
            Matching entries, newest first.

        Raises:
            SearchQueryError: If the query is not valid FTS5 syntax.
        """
        sql, params = _build_search(query, level, limit, min_dates)
        try:
            async with self.async_connection() as db:
                async with db.execute(sql, params) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.OperationalError as e:
            raise _search_error(query, e) from e
        return [_from_row(row) for row in rows]

    def search_sync(
        self,
        query: str,
        level: str | None = None,
        limit: int = 100,
        min_dates: dict[str, datetime] | None = None,
    ) -> list[LogEntry]:
        """Synchronous search for non-async contexts."""
        sql, params = _build_search(query, level, limit, min_dates)
        try:
            with self._write_lock, self.sync_connection() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise _search_error(query, e) from e
        return [_from_row(row) for row in rows]

    async def count(self, host: str | None = None) -> int:
        """Return the number of indexed entries, optionally for one host."""
        async with self.async_connection() as db:
            if host is None:
                cursor = await db.execute(_COUNT_ENTRIES)
            else:
                cursor = await db.execute(_COUNT_HOST_ENTRIES, (host,))
            async with cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    def count_sync(self, host: str | None = None) -> int:
        with self._write_lock, self.sync_connection() as conn:
            if host is None:
                row = conn.execute(_COUNT_ENTRIES).fetchone()
            else:
                row = conn.execute(_COUNT_HOST_ENTRIES, (host,)).fetchone()
        return row[0] if row else 0
