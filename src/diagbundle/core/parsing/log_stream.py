"""Streaming reader that turns log lines into indexed entries."""

import logging
from collections.abc import Iterable, Sequence

from diagbundle.core.models import LogEntry, LogFileStats
from diagbundle.core.parsing.log_pattern import LogPattern
from diagbundle.core.ports import LogIndexPort

logger = logging.getLogger(__name__)

DEFAULT_SKIP_MARKERS = ("StatusLogger.java",)


class LogStreamReader:
    """Reads one log stream against a compiled layout.

    A line matching the layout starts a new entry and counts as valid. A
    non-matching, non-blank line counts as invalid and is appended to the
    message of the entry in progress, so stack traces stay searchable.
    Entries whose message contains a skip marker are counted but not
    indexed. Indexed entries are sent in batches of ``batch_size``.

    Example:
        reader = LogStreamReader(pattern, "node1", index)
        with open(path, encoding="utf-8", errors="replace") as f:
            stats = reader.read(f, path=path)
    """

    def __init__(
        self,
        pattern: LogPattern,
        host: str,
        index: LogIndexPort,
        batch_size: int = 1000,
        skip_markers: Sequence[str] = DEFAULT_SKIP_MARKERS,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._pattern = pattern
        self._host = host
        self._index = index
        self._batch_size = batch_size
        self._skip_markers = tuple(skip_markers)

    def read(self, lines: Iterable[str], path: str = "") -> LogFileStats:
        """Parse and index every entry of a stream.

        Args:
            lines: Lines of one log file.
            path: File path, recorded in the returned stats.

        Returns:
            LogFileStats for the stream.
        """
        stats = LogFileStats(path=path)
        batch: list[LogEntry] = []
        current: LogEntry | None = None
        continuation: list[str] = []

        for raw in lines:
            line = raw.rstrip("\r\n")
            if not line.strip():
                continue
            entry = self._pattern.match(line, self._host)
            if entry is None:
                stats.invalid_entries += 1
                if current is not None:
                    continuation.append(line)
                continue
            stats.observe(entry)
            if current is not None:
                self._collect(current, continuation, batch, stats)
            current = entry
            continuation = []

        if current is not None:
            self._collect(current, continuation, batch, stats)
        self._flush(batch, stats)

        logger.info(
            f"{stats.indexed_entries} log entries indexed for host ({self._host}) from "
            f"{path or '<stream>'}, {stats.invalid_entries} lines not matching the layout"
        )
        return stats

    def _collect(
        self,
        entry: LogEntry,
        continuation: list[str],
        batch: list[LogEntry],
        stats: LogFileStats,
    ) -> None:
        if continuation:
            message = "\n".join([entry.message, *continuation])
            entry = LogEntry(entry.host, entry.timestamp, entry.level, message)
        if not entry.message or any(marker in entry.message for marker in self._skip_markers):
            logger.debug(f"Skipping log entry of {entry.host} at {entry.timestamp}")
            return
        batch.append(entry)
        if len(batch) >= self._batch_size:
            self._flush(batch, stats)

    def _flush(self, batch: list[LogEntry], stats: LogFileStats) -> None:
        if not batch:
            return
        stats.indexed_entries += self._index.add_entries(batch)
        batch.clear()
