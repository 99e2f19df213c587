"""Run configuration for bundle ingestion."""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from diagbundle.adapters.storage.sqlite_base import DEFAULT_BUSY_TIMEOUT


@dataclass(frozen=True)
class IngestConfig:
    """Settings of one ingestion run.

    Attributes:
        overwrite: Delete existing outputs instead of refusing to run.
        skip_logs: Skip the logs phase.
        skip_metrics: Skip the metrics phase.
        parallel_metrics: One worker thread per node for metrics.
        parallel_logs: Process node logs concurrently, log_batch_size at a time.
        max_workers: Upper bound of worker threads per phase (None: one per node).
        log_batch_size: Nodes whose logs are processed concurrently.
        fingerprint_lines: Lines hashed at each end of a log file.
        index_batch_size: Entries sent to the search index per append.
        progress_every: Log progress after this many stored samples.
        busy_timeout: Seconds a store connection waits on a locked database.
        metrics_db_name: File name of the metric store.
        index_name: File name of the search index.
        extracted_dir: Directory holding one subdirectory per node.
        skip_markers: Log messages containing one of these are not indexed.
    """

    overwrite: bool = False
    skip_logs: bool = False
    skip_metrics: bool = False
    parallel_metrics: bool = True
    parallel_logs: bool = True
    max_workers: int | None = None
    log_batch_size: int = 5
    fingerprint_lines: int = 100
    index_batch_size: int = 1000
    progress_every: int = 50000
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    metrics_db_name: str = "metrics.db"
    index_name: str = "logSearchIndex.db"
    extracted_dir: str = "extracted"
    skip_markers: tuple[str, ...] = ("StatusLogger.java",)

    def __post_init__(self) -> None:
        if self.log_batch_size < 1:
            raise ValueError("log_batch_size must be at least 1")
        if self.index_batch_size < 1:
            raise ValueError("index_batch_size must be at least 1")
        if self.fingerprint_lines < 1:
            raise ValueError("fingerprint_lines must be at least 1")

    def replace(self, **changes: Any) -> "IngestConfig":
        """Return a copy with the given fields changed."""
        return replace(self, **changes)

    def metrics_db_path(self, root: Path) -> Path:
        return root / self.metrics_db_name

    def index_path(self, root: Path) -> Path:
        return root / self.index_name

    def extracted_path(self, root: Path) -> Path:
        return root / self.extracted_dir
