"""Ingestion of an extracted diagnostic bundle.

The bundle root holds ``extracted/<node>_artifacts_<suffix>/`` directories.
A run writes two outputs next to ``extracted/``: the metric store
(``metrics.db``) and the log search index (``logSearchIndex.db``).

Example:
    summary = BundleIngestor("/data/bundle", IngestConfig(overwrite=True)).run()
    print(summary.metric_sources)
"""

import gzip
import logging
import os
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, TypeVar

from diagbundle.adapters.filesystem.fingerprint import fingerprint
from diagbundle.adapters.filesystem.log_files import find_log_files
from diagbundle.adapters.filesystem.node_dirs import (
    find_duplicates,
    find_file,
    list_node_dirs,
    resolve_host,
)
from diagbundle.adapters.filesystem.server_info import read_server_info
from diagbundle.adapters.storage.sqlite_logs import SQLiteLogIndex
from diagbundle.adapters.storage.sqlite_metrics import SQLiteMetricStore
from diagbundle.config import IngestConfig
from diagbundle.core.errors import (
    DuplicateNodeError,
    IngestError,
    MetricsSourceError,
    OutputExistsError,
    SourceUnavailableError,
)
from diagbundle.core.models import LogFileRecord, MetricSource, NodeIngestRecord
from diagbundle.core.parsing.dumps import (
    LoadStats,
    iter_json_dump,
    iter_plain_dump,
    load_metrics,
    store_samples,
)
from diagbundle.core.parsing.log_pattern import compile_layout
from diagbundle.core.parsing.log_stream import LogStreamReader
from diagbundle.core.parsing.report import parse_report
from diagbundle.core.ports import LogIndexPort, MetricSinkPort
from diagbundle.core.timing import PhaseTiming, timed_phase

logger = logging.getLogger(__name__)

T = TypeVar("T")

RAW_DUMP_FILE = "metrics.jmx"
JSON_DUMP_FILE = "jmx_dump.json"
REPORT_FILES = ("nodetool/cfstats", "nodetool/tablestats")


@dataclass
class RunSummary:
    """Outcome of one run.

    Attributes:
        nodes: Hosts that were processed, in directory order.
        metric_sources: host -> metric source tier used.
        entries_indexed: Log entries added to the search index.
        failed_nodes: host (or directory name) -> error of the aborted scope.
        timings: Elapsed time of each phase.
    """

    nodes: list[str] = field(default_factory=list)
    metric_sources: dict[str, MetricSource] = field(default_factory=dict)
    entries_indexed: int = 0
    failed_nodes: dict[str, str] = field(default_factory=dict)
    timings: list[PhaseTiming] = field(default_factory=list)


@dataclass(frozen=True)
class _Node:
    directory: Path
    host: str


def _chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _non_empty(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


@contextmanager
def _open_log(path: Path) -> Iterator[IO[str]]:
    if path.suffix == ".gz":
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as f:
            yield f
    else:
        with open(path, encoding="utf-8", errors="replace") as f:
            yield f


def _remove_sqlite_file(path: Path) -> None:
    for candidate in (path, Path(f"{path}-wal"), Path(f"{path}-shm")):
        if candidate.exists():
            os.remove(candidate)


class BundleIngestor:
    """Builds the metric store and the log search index of a bundle.

    Nodes are independent: an error while reading one node is logged and
    recorded in the summary, and the run goes on. Only an existing output
    (without ``overwrite``) and duplicate node directories abort the run,
    both before anything is written.
    """

    def __init__(self, root: Path | str, config: IngestConfig | None = None) -> None:
        self._root = Path(root).absolute()
        self._config = config or IngestConfig()
        self._db_path = self._config.metrics_db_path(self._root)
        self._index_path = self._config.index_path(self._root)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def index_path(self) -> Path:
        return self._index_path

    def run(self) -> RunSummary:
        """Run both phases over every node directory.

        Raises:
            OutputExistsError: If the metric store exists and overwrite is off.
            DuplicateNodeError: If two directories resolve to the same node.
        """
        summary = RunSummary()
        self._check_outputs()
        nodes = self._resolve_nodes(summary)
        self._prepare_outputs()
        summary.nodes = [node.host for node in nodes]

        if not self._config.skip_metrics:
            with timed_phase("metrics", logger) as timing:
                self._metrics_phase(nodes, summary)
            summary.timings.append(timing)

        if self._config.skip_logs:
            logger.warning("Skipping logs")
            self._write_records_without_logs(nodes, summary)
        else:
            with timed_phase("logs", logger) as timing:
                self._logs_phase(nodes, summary)
            summary.timings.append(timing)

        logger.info(
            f"Ingested {len(nodes)} nodes, {summary.entries_indexed} log entries indexed, "
            f"{len(summary.failed_nodes)} failed"
        )
        return summary

    # --- Preparation ---

    def _outputs(self) -> list[Path]:
        """Output files rebuilt by the phases that will run."""
        outputs = []
        if not self._config.skip_metrics:
            outputs.append(self._db_path)
        if not self._config.skip_logs:
            outputs.append(self._index_path)
        return outputs

    def _check_outputs(self) -> None:
        existing = [path for path in self._outputs() if path.exists()]
        if existing and not self._config.overwrite:
            names = ", ".join(str(path) for path in existing)
            raise OutputExistsError(f"{names} already exists, use overwrite to replace it")

    def _resolve_nodes(self, summary: RunSummary) -> list[_Node]:
        node_dirs = list_node_dirs(self._config.extracted_path(self._root))
        duplicates = find_duplicates(node_dirs)
        if duplicates:
            raise DuplicateNodeError(duplicates)

        nodes: list[_Node] = []
        by_host: dict[str, list[str]] = {}
        for node_dir in node_dirs:
            try:
                host = resolve_host(node_dir)
            except IngestError as e:
                logger.error(f"Skipping node directory {node_dir.name}: {e}")
                summary.failed_nodes[node_dir.name] = str(e)
                continue
            by_host.setdefault(host, []).append(node_dir.name)
            nodes.append(_Node(node_dir, host))

        host_duplicates = {host: dirs for host, dirs in by_host.items() if len(dirs) > 1}
        if host_duplicates:
            raise DuplicateNodeError(host_duplicates)
        return nodes

    def _prepare_outputs(self) -> None:
        if self._config.overwrite:
            for path in self._outputs():
                _remove_sqlite_file(path)
        logger.info(f"Creating metric store at {self._db_path}")
        SQLiteMetricStore.bootstrap(str(self._db_path), self._config.busy_timeout)

    def _open_store(self) -> SQLiteMetricStore:
        return SQLiteMetricStore(
            str(self._db_path), bootstrap=False, busy_timeout=self._config.busy_timeout
        )

    # --- Worker dispatch ---

    def _run_workers(
        self,
        nodes: Sequence[_Node],
        work: Callable[[_Node], T],
        parallel: bool,
        summary: RunSummary,
        phase: str,
    ) -> dict[str, T]:
        """Run ``work`` for each node and collect results by host.

        A node whose work raises is recorded as failed; the others go on.
        """
        results: dict[str, T] = {}
        if not nodes:
            return results
        if not parallel:
            for node in nodes:
                try:
                    results[node.host] = work(node)
                except Exception as e:
                    self._record_failure(node, phase, e, summary)
            return results

        workers = self._config.max_workers or len(nodes)
        with ThreadPoolExecutor(max_workers=min(workers, len(nodes))) as executor:
            futures: list[tuple[_Node, Future[T]]] = [
                (node, executor.submit(work, node)) for node in nodes
            ]
            for node, future in futures:
                try:
                    results[node.host] = future.result()
                except Exception as e:
                    self._record_failure(node, phase, e, summary)
        return results

    @staticmethod
    def _record_failure(node: _Node, phase: str, error: Exception, summary: RunSummary) -> None:
        logger.error(f"Failed to process {phase} for host {node.host}", exc_info=error)
        summary.failed_nodes[node.host] = f"{phase}: {error}"

    # --- Metrics phase ---

    def _metrics_phase(self, nodes: Sequence[_Node], summary: RunSummary) -> None:
        results = self._run_workers(
            nodes, self._ingest_metrics, self._config.parallel_metrics, summary, "metrics"
        )
        summary.metric_sources.update(results)

    def _ingest_metrics(self, node: _Node) -> MetricSource:
        """Load the best available metric source of one node.

        The store handle is created here, inside the worker, and is used by
        this worker only. All writes of the node go into one transaction.
        """
        logger.info(f"Processing metrics for host '{node.host}'")
        store = self._open_store()
        try:
            with store.transaction():
                try:
                    source = self._load_best_source(node, store)
                except SourceUnavailableError as e:
                    logger.warning(str(e))
                    return MetricSource.NONE
                store.write_server(read_server_info(node.directory, node.host, source.has_jmx))
            return source
        finally:
            store.close()

    def _candidate_sources(self, node_dir: Path) -> list[tuple[MetricSource, Path]]:
        candidates = [
            (MetricSource.RAW_DUMP, node_dir / RAW_DUMP_FILE),
            (MetricSource.JSON_DUMP, node_dir / JSON_DUMP_FILE),
        ]
        available = [(source, path) for source, path in candidates if _non_empty(path)]
        report = find_file(node_dir, REPORT_FILES)
        if report is not None and _non_empty(report):
            available.append((MetricSource.ADMIN_REPORT, report))
        return available

    def _load_best_source(self, node: _Node, store: MetricSinkPort) -> MetricSource:
        """Load the highest tier that parses; fall back on failure.

        Raises:
            SourceUnavailableError: If no tier is present or every tier failed.
        """
        candidates = self._candidate_sources(node.directory)
        if not candidates:
            raise SourceUnavailableError(f"No metrics file for host {node.host}")
        for source, path in candidates:
            try:
                stats = self._load_source(source, path, node.host, store)
            except (MetricsSourceError, OSError, ValueError) as e:
                logger.warning(
                    f"Failed to parse the metrics file {path.name} for host {node.host}: {e}"
                )
                continue
            logger.info(
                f"Processed metrics for {node.host} from {path.name}: {stats.written} stored"
            )
            return source
        raise SourceUnavailableError(f"Every metrics source failed for host {node.host}")

    def _load_source(
        self, source: MetricSource, path: Path, host: str, store: MetricSinkPort
    ) -> LoadStats:
        progress = self._config.progress_every
        if source is MetricSource.RAW_DUMP:
            with open(path, encoding="utf-8", errors="replace") as f:
                return load_metrics(iter_plain_dump(f), host, store, progress)
        text = path.read_text(encoding="utf-8", errors="replace")
        if source is MetricSource.JSON_DUMP:
            return load_metrics(iter_json_dump(text), host, store, progress)
        return store_samples(parse_report(text, host), host, store, progress)

    # --- Logs phase ---

    def _logs_phase(self, nodes: Sequence[_Node], summary: RunSummary) -> None:
        self._reset_log_records(summary)
        index = SQLiteLogIndex(str(self._index_path), self._config.busy_timeout)
        try:
            for batch in _chunked(nodes, self._config.log_batch_size):
                results = self._run_workers(
                    batch,
                    lambda node: self._ingest_logs(node, index, summary.metric_sources),
                    self._config.parallel_logs,
                    summary,
                    "logs",
                )
                summary.entries_indexed += sum(results.values())
        finally:
            index.close()

    def _reset_log_records(self, summary: RunSummary) -> None:
        """Drop log bookkeeping left in a kept metric store.

        The index is always new when the logs phase runs, so fingerprints
        from an earlier run would hide every file from it. Metric sources
        of the dropped records survive into the new ones.
        """
        store = self._open_store()
        try:
            previous = store.clear_log_records()
        finally:
            store.close()
        for host, source in previous.items():
            if host in summary.nodes:
                summary.metric_sources.setdefault(host, source)

    def _ingest_logs(
        self,
        node: _Node,
        index: LogIndexPort,
        metric_sources: dict[str, MetricSource],
    ) -> int:
        """Index the log files of one node and write its ingest record.

        Returns:
            Number of entries indexed for the node.
        """
        logger.info(f"Processing logs for host '{node.host}'")
        store = self._open_store()
        try:
            files, appender = find_log_files(node.directory)
            if not files:
                logger.warning(f"No log files found for host {node.host}")
            reader = LogStreamReader(
                compile_layout(appender.encoder_pattern),
                node.host,
                index,
                batch_size=self._config.index_batch_size,
                skip_markers=self._config.skip_markers,
            )
            records, indexed = self._index_files(node.host, files, reader, store)
            store.write_ingest_record(
                self._build_record(node.host, metric_sources.get(node.host), records)
            )
            return indexed
        finally:
            store.close()

    def _index_files(
        self,
        host: str,
        files: Iterable[Path],
        reader: LogStreamReader,
        store: MetricSinkPort,
    ) -> tuple[list[tuple[LogFileRecord, datetime | None, datetime | None]], int]:
        seen: set[str] = set()
        records: list[tuple[LogFileRecord, datetime | None, datetime | None]] = []
        indexed = 0
        for path in files:
            if path.suffix == ".zip":
                logger.info(f"Skipping zipped log file {path}")
                continue
            try:
                digest = fingerprint(path, self._config.fingerprint_lines)
                if digest in seen or store.has_fingerprint(host, digest):
                    logger.warning(f"Skipping duplicate log file {path} for {host}")
                    continue
                seen.add(digest)
                logger.info(f"Loading {path}")
                with _open_log(path) as f:
                    stats = reader.read(f, path=str(path))
            except OSError as e:
                logger.warning(f"Unable to read log file {path} for {host}: {e}")
                continue
            indexed += stats.indexed_entries
            records.append(
                (
                    LogFileRecord(str(path), digest, stats.valid_entries, stats.invalid_entries),
                    stats.min_date,
                    stats.max_date,
                )
            )
        return records, indexed

    @staticmethod
    def _build_record(
        host: str,
        metric_source: MetricSource | None,
        records: Sequence[tuple[LogFileRecord, datetime | None, datetime | None]],
    ) -> NodeIngestRecord:
        min_dates = [low for _, low, _ in records if low is not None]
        max_dates = [high for _, _, high in records if high is not None]
        return NodeIngestRecord(
            host=host,
            metric_source=metric_source or MetricSource.NONE,
            valid_entries=sum(r.valid_entries for r, _, _ in records),
            invalid_entries=sum(r.invalid_entries for r, _, _ in records),
            min_log_date=min(min_dates) if min_dates else None,
            max_log_date=max(max_dates) if max_dates else None,
            log_files=tuple(r for r, _, _ in records),
        )

    def _write_records_without_logs(self, nodes: Sequence[_Node], summary: RunSummary) -> None:
        store = self._open_store()
        try:
            for node in nodes:
                store.write_ingest_record(
                    self._build_record(node.host, summary.metric_sources.get(node.host), [])
                )
        finally:
            store.close()


def ingest_bundle(root: Path | str, config: IngestConfig | None = None) -> RunSummary:
    """Ingest a bundle with the given configuration."""
    return BundleIngestor(root, config).run()
