"""Core domain models for ingested diagnostic data."""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum, IntEnum
from typing import ClassVar

INDEX_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
STORE_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class MetricSource(Enum):
    """Metric source tiers, in priority order."""

    RAW_DUMP = "raw_dump"
    JSON_DUMP = "json_dump"
    ADMIN_REPORT = "admin_report"
    NONE = "none"

    @property
    def has_jmx(self) -> bool:
        return self in (MetricSource.RAW_DUMP, MetricSource.JSON_DUMP)


class WriteResult(Enum):
    """Outcome of persisting a single record."""

    WRITTEN = "written"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class LogLevel(IntEnum):
    """Log levels ordered by severity."""

    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    @classmethod
    def parse(cls, text: str | None, default: "LogLevel | None" = None) -> "LogLevel":
        """Parse a level name, tolerating logback and python spellings.

        Args:
            text: Level name such as "WARN", "warning" or "FATAL".
            default: Level returned for unknown names. Defaults to INFO.

        Returns:
            The matching LogLevel.
        """
        name = (text or "").strip().upper()
        aliases = {"WARNING": "WARN", "FATAL": "ERROR", "CRITICAL": "ERROR"}
        name = aliases.get(name, name)
        if name in cls.__members__:
            return cls[name]
        return default if default is not None else cls.INFO


# --- Metric samples ---


class _PersistedSample:
    """Mixin for sample variants that map onto one store table.

    Field order of the dataclass must match ``columns``.
    """

    table_name: ClassVar[str]
    columns: ClassVar[tuple[str, ...]]

    @property
    def insert_query(self) -> str:
        """INSERT statement text for this variant's record shape."""
        placeholders = ", ".join("?" for _ in self.columns)
        return (
            f"INSERT INTO {self.table_name} ({', '.join(self.columns)}) "
            f"VALUES ({placeholders})"
        )

    def to_row(self) -> tuple[str, ...]:
        return tuple(getattr(self, f.name) for f in fields(self))  # type: ignore[arg-type]


@dataclass(frozen=True)
class TableHistogram(_PersistedSample):
    """Table-scoped histogram or gauge (e.g. ReadLatency of ks1.t1)."""

    table_name: ClassVar[str] = "tablehistograms"
    columns: ClassVar[tuple[str, ...]] = (
        "node",
        "keyspace",
        "tablename",
        "name",
        "key",
        "value",
    )

    host: str
    keyspace: str
    table: str
    name: str
    key: str
    value: str


@dataclass(frozen=True)
class KeyspaceHistogram(_PersistedSample):
    """Keyspace-scoped histogram or gauge."""

    table_name: ClassVar[str] = "keyspacehistograms"
    columns: ClassVar[tuple[str, ...]] = ("node", "keyspace", "name", "key", "value")

    host: str
    keyspace: str
    name: str
    key: str
    value: str


@dataclass(frozen=True)
class GenericMetric(_PersistedSample):
    """Counter outside table/keyspace scope (DroppedMessage, ThreadPools...)."""

    table_name: ClassVar[str] = "metrics"
    columns: ClassVar[tuple[str, ...]] = ("node", "type", "scope", "name", "key", "value")

    host: str
    mtype: str
    scope: str
    name: str
    key: str
    value: str


@dataclass(frozen=True)
class DbCounter(_PersistedSample):
    """Storage-engine level attribute (schema version, commitlog...)."""

    table_name: ClassVar[str] = "db"
    columns: ClassVar[tuple[str, ...]] = ("node", "keyspace", "tablename", "key", "value")

    host: str
    keyspace: str
    table: str
    key: str
    value: str


@dataclass(frozen=True)
class InternalTask(_PersistedSample):
    """Internal stage/task counter."""

    table_name: ClassVar[str] = "internal"
    columns: ClassVar[tuple[str, ...]] = ("node", "type", "key", "value")

    host: str
    mtype: str
    key: str
    value: str


@dataclass(frozen=True)
class ServiceMetric(_PersistedSample):
    """Service-level attribute (StorageService, CacheService...)."""

    table_name: ClassVar[str] = "service"
    columns: ClassVar[tuple[str, ...]] = ("node", "type", "key", "value")

    host: str
    mtype: str
    key: str
    value: str


@dataclass(frozen=True)
class RuntimeMetric(_PersistedSample):
    """Platform/runtime attribute; key is a composite natural key."""

    table_name: ClassVar[str] = "runtime"
    columns: ClassVar[tuple[str, ...]] = ("node", "type", "key", "value")

    host: str
    mtype: str
    key: str
    value: str


@dataclass(frozen=True)
class GarbageCollectorMetric(_PersistedSample):
    """Garbage collector attribute; key includes array indices."""

    table_name: ClassVar[str] = "garbage_collector"
    columns: ClassVar[tuple[str, ...]] = ("node", "type", "name", "pkey", "key", "value")

    host: str
    mtype: str
    name: str
    pkey: str
    key: str
    value: str


@dataclass(frozen=True)
class MemoryPoolMetric(_PersistedSample):
    """Memory pool attribute; key includes array indices."""

    table_name: ClassVar[str] = "memory_pool"
    columns: ClassVar[tuple[str, ...]] = ("node", "name", "key", "value")

    host: str
    name: str
    key: str
    value: str


@dataclass(frozen=True)
class Ignored:
    """Recognised category that downstream logic has no use for."""

    category: str


@dataclass(frozen=True)
class NoMatch:
    """Line outside every known grammar or namespace."""

    namespace: str = ""


PersistedSample = (
    TableHistogram
    | KeyspaceHistogram
    | GenericMetric
    | DbCounter
    | InternalTask
    | ServiceMetric
    | RuntimeMetric
    | GarbageCollectorMetric
    | MemoryPoolMetric
)

MetricSample = PersistedSample | Ignored | NoMatch

PERSISTED_SAMPLE_TYPES: tuple[type, ...] = (
    TableHistogram,
    KeyspaceHistogram,
    GenericMetric,
    DbCounter,
    InternalTask,
    ServiceMetric,
    RuntimeMetric,
    GarbageCollectorMetric,
    MemoryPoolMetric,
)


def is_persisted(sample: MetricSample) -> bool:
    """Return True if the sample variant is stored."""
    return isinstance(sample, _PersistedSample)


def natural_key(sample: PersistedSample) -> tuple[str, ...]:
    """Deduplication key: table name plus every column except the value."""
    return (sample.table_name, *sample.to_row()[:-1])


@dataclass(frozen=True)
class SSTableCount:
    """Live SSTable count of one table on one host."""

    host: str
    keyspace: str
    table: str
    count: int


# --- Host metadata and log bookkeeping ---


@dataclass(frozen=True)
class ServerInfo:
    """Per-host metadata.

    Attributes:
        host: Logical node identity.
        memory_in_gb: Total memory, -1 when unknown.
        aws_region: Cloud placement (availability zone), empty when absent.
        aws_instance_type: Cloud instance type, empty when absent.
        has_jmx: True when metrics came from a bean dump.
    """

    host: str
    memory_in_gb: int = -1
    aws_region: str = ""
    aws_instance_type: str = ""
    has_jmx: bool = False


@dataclass(frozen=True)
class LogEntry:
    """A single parsed log line (plus continuation lines).

    Attributes:
        host: Node the line came from.
        timestamp: Parsed event time, truncated to whole seconds. Fractional
            seconds in the log are matched but dropped, so a rendered entry
            round-trips to the same second, not the same instant.
        level: Level name as written in the log (e.g. WARN).
        message: Text after the layout's header fields.
    """

    host: str
    timestamp: datetime
    level: str
    message: str

    @property
    def index_timestamp(self) -> str:
        """Sortable timestamp text used by the search index."""
        return self.timestamp.strftime(INDEX_TIMESTAMP_FORMAT)

    @property
    def date(self) -> str:
        return self.timestamp.strftime("%Y-%m-%d")


@dataclass
class LogFileStats:
    """Running aggregation over the entries of one log file."""

    path: str = ""
    valid_entries: int = 0
    invalid_entries: int = 0
    indexed_entries: int = 0
    min_date: datetime | None = None
    max_date: datetime | None = None

    def observe(self, entry: LogEntry) -> None:
        """Count a valid entry and widen the min/max window."""
        self.valid_entries += 1
        if self.min_date is None or entry.timestamp < self.min_date:
            self.min_date = entry.timestamp
        if self.max_date is None or entry.timestamp > self.max_date:
            self.max_date = entry.timestamp


@dataclass(frozen=True)
class LogFileRecord:
    """A processed log file identified by its partial fingerprint."""

    path: str
    fingerprint: str
    valid_entries: int
    invalid_entries: int


@dataclass(frozen=True)
class NodeIngestRecord:
    """Per-node bookkeeping, written once at the end of a node's run."""

    host: str
    metric_source: MetricSource = MetricSource.NONE
    valid_entries: int = 0
    invalid_entries: int = 0
    min_log_date: datetime | None = None
    max_log_date: datetime | None = None
    log_files: tuple[LogFileRecord, ...] = field(default_factory=tuple)

    @property
    def fingerprints(self) -> tuple[str, ...]:
        return tuple(f.fingerprint for f in self.log_files)

    @property
    def log_span_days(self) -> int:
        """Whole days between the oldest and newest entry, 0 without logs."""
        if self.min_log_date is None or self.max_log_date is None:
            return 0
        return (self.max_log_date - self.min_log_date).days
