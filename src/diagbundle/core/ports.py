"""Port interfaces for the metric store and the log index.

Ingestion code writes through the sink ports; external report logic only
reads through the query/search ports, so either side can be replaced by a
substitute (e.g. the in-memory adapters) without touching the other.
"""

from collections.abc import Iterable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from diagbundle.core.models import (
    LogEntry,
    NodeIngestRecord,
    PersistedSample,
    ServerInfo,
    WriteResult,
)


@runtime_checkable
class MetricSinkPort(Protocol):
    """Write side of the metric store.

    A sink handle is owned by one worker and is not shared across threads.
    """

    def write(self, sample: PersistedSample) -> WriteResult:
        """Persist one sample; an existing natural key is a duplicate."""
        ...

    def write_server(self, info: ServerInfo) -> WriteResult:
        """Persist per-host metadata once."""
        ...

    def write_ingest_record(self, record: NodeIngestRecord) -> WriteResult:
        """Persist a node's bookkeeping record once."""
        ...

    def has_fingerprint(self, host: str, fingerprint: str) -> bool:
        """Return True if a log file with this fingerprint was processed."""
        ...

    def transaction(self) -> AbstractContextManager[None]:
        """Group the writes of one node into a single commit."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class MetricQueryPort(Protocol):
    """Read surface consumed by report logic."""

    async def get_histogram(
        self, keyspace: str, table: str, histogram: str, key: str
    ) -> list[tuple[str, float]]:
        """Return (host, value) pairs for one table histogram sub-key.

        Args:
            keyspace: Keyspace name.
            table: Table name.
            histogram: Histogram name, e.g. ReadLatency.
            key: Sub-key, e.g. Count or 99thPercentile.
        """
        ...

    async def get_servers(self) -> list[ServerInfo]:
        """Return metadata of every host."""
        ...

    async def get_log_durations(self) -> dict[str, tuple[str, str]]:
        """Return host -> (min log date, max log date)."""
        ...

    async def get_log_stats(self) -> dict[str, tuple[int, int]]:
        """Return host -> (valid entries, invalid entries)."""
        ...


@runtime_checkable
class LogIndexPort(Protocol):
    """Append side of the log search index; safe for concurrent workers."""

    def add_entries(self, entries: Iterable[LogEntry]) -> int:
        """Append entries and return how many were added."""
        ...


@runtime_checkable
class LogSearchPort(Protocol):
    """Search side of the log index."""

    async def search(
        self,
        query: str,
        level: str | None = None,
        limit: int = 100,
        min_dates: dict[str, datetime] | None = None,
    ) -> list[LogEntry]:
        """Return matching entries, newest first, at most ``limit``."""
        ...
