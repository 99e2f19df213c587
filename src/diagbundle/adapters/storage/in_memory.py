"""In-memory adapters for the metric store and the log index."""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime

from diagbundle.core.models import (
    STORE_DATE_FORMAT,
    LogEntry,
    NodeIngestRecord,
    PersistedSample,
    ServerInfo,
    TableHistogram,
    WriteResult,
    natural_key,
)


class InMemoryMetricStore:
    """In-memory implementation of MetricSinkPort and MetricQueryPort.

    Keeps the first sample written for each natural key. Suitable for
    testing report logic without a database file. Unlike the SQLite store a
    single instance may be shared between threads.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._samples: dict[tuple[str, ...], PersistedSample] = {}
        self._servers: dict[str, ServerInfo] = {}
        self._records: dict[str, NodeIngestRecord] = {}
        self._pending: list[tuple[str, ...]] | None = None

    def write(self, sample: PersistedSample) -> WriteResult:
        key = natural_key(sample)
        with self._lock:
            if key in self._samples:
                return WriteResult.DUPLICATE
            self._samples[key] = sample
            if self._pending is not None:
                self._pending.append(key)
        return WriteResult.WRITTEN

    def write_server(self, info: ServerInfo) -> WriteResult:
        with self._lock:
            if info.host in self._servers:
                return WriteResult.DUPLICATE
            self._servers[info.host] = info
        return WriteResult.WRITTEN

    def write_ingest_record(self, record: NodeIngestRecord) -> WriteResult:
        with self._lock:
            if record.host in self._records:
                return WriteResult.DUPLICATE
            self._records[record.host] = record
        return WriteResult.WRITTEN

    def has_fingerprint(self, host: str, fingerprint: str) -> bool:
        record = self._records.get(host)
        return record is not None and fingerprint in record.fingerprints

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Discard the samples written in the block if it raises."""
        with self._lock:
            if self._pending is not None:
                yield
                return
            self._pending = []
            try:
                yield
            except BaseException:
                for key in self._pending:
                    self._samples.pop(key, None)
                raise
            finally:
                self._pending = None

    def close(self) -> None:
        pass

    @property
    def samples(self) -> list[PersistedSample]:
        """All stored samples in write order."""
        with self._lock:
            return list(self._samples.values())

    async def get_histogram(
        self, keyspace: str, table: str, histogram: str, key: str
    ) -> list[tuple[str, float]]:
        result = []
        for sample in self.samples:
            if (
                isinstance(sample, TableHistogram)
                and (sample.keyspace, sample.table, sample.name, sample.key)
                == (keyspace, table, histogram, key)
            ):
                try:
                    value = float(sample.value)
                except ValueError:
                    value = 0.0
                result.append((sample.host, value))
        return sorted(result)

    async def get_servers(self) -> list[ServerInfo]:
        return sorted(self._servers.values(), key=lambda s: s.host)

    async def get_log_durations(self) -> dict[str, tuple[str, str]]:
        return {
            r.host: (
                r.min_log_date.strftime(STORE_DATE_FORMAT),
                r.max_log_date.strftime(STORE_DATE_FORMAT),
            )
            for r in self._records.values()
            if r.min_log_date is not None and r.max_log_date is not None
        }

    async def get_log_stats(self) -> dict[str, tuple[int, int]]:
        return {r.host: (r.valid_entries, r.invalid_entries) for r in self._records.values()}


class InMemoryLogIndex:
    """In-memory implementation of LogIndexPort and LogSearchPort.

    Matches every word of the query case-insensitively (boolean operator
    words are ignored). Suitable for testing.
    """

    _OPERATORS = frozenset({"AND", "OR", "NOT"})

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []

    def add_entries(self, entries: Iterable[LogEntry]) -> int:
        batch = list(entries)
        with self._lock:
            self._entries.extend(batch)
        return len(batch)

    async def search(
        self,
        query: str,
        level: str | None = None,
        limit: int = 100,
        min_dates: dict[str, datetime] | None = None,
    ) -> list[LogEntry]:
        words = [
            w.strip('"').lower() for w in query.split() if w not in self._OPERATORS
        ]
        min_dates = min_dates or {}
        with self._lock:
            entries = list(self._entries)
        hits = [
            e
            for e in entries
            if all(w in e.message.lower() for w in words)
            and (level is None or e.level == level.upper())
            and (e.host not in min_dates or e.timestamp >= min_dates[e.host])
        ]
        hits.sort(key=lambda e: e.timestamp, reverse=True)
        return hits[:limit]

    @property
    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)
