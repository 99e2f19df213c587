"""Shared test fixtures for all test modules."""

from collections.abc import Callable
from pathlib import Path

import pytest

RAW_DUMP = """\
JMImplementation{type=MBeanServerDelegate}[]ImplementationName: JMX
org.apache.cassandra.metrics{type=Table,keyspace=ks1,scope=t1,name=ReadLatency}[]Count: 100
org.apache.cassandra.metrics{type=Table,keyspace=ks1,scope=t1,name=ReadLatency}[]Mean: NaN
org.apache.cassandra.metrics{type=Table,keyspace=ks1,scope=t1,name=TombstoneScannedHistogram}[]Max: Na getting attribute Max of org.apache.cassandra.metrics: java.lang.IllegalStateException
\tat org.apache.cassandra.metrics.TableMetrics.max(TableMetrics.java:10)
\tat org.apache.cassandra.metrics.TableMetrics.read(TableMetrics.java:12)
N
org.apache.cassandra.metrics{type=Table,keyspace=ks1,scope=t1,name=WriteLatency}[]Count: 0
org.apache.cassandra.metrics{type=Table,keyspace=ks1,scope=t1,name=LiveSSTableCount}[]Value: 12
org.apache.cassandra.metrics{type=Table,keyspace=ks2,scope=idle,name=ReadLatency}[]Count: 0
org.apache.cassandra.metrics{type=Table,keyspace=ks2,scope=idle,name=WriteLatency}[]Count: 0
org.apache.cassandra.metrics{type=Keyspace,keyspace=ks1,name=ReadLatency}[]Count: 100
org.apache.cassandra.metrics{type=DroppedMessage,scope=MUTATION,name=Dropped}[]Count: 7
org.apache.cassandra.db{type=StorageService}[]SchemaVersion: 5a7e-11
org.apache.cassandra.internal{type=CompactionExecutor}[]TotalBlockedTasks: 3
org.apache.cassandra.net{type=MessagingService}[]TimeoutsPerHost: {}
java.lang{type=Memory}[]HeapMemoryUsage.used: 1024
"""

# Samples of RAW_DUMP that are stored (the bean server header and net are not)
RAW_DUMP_STORED = 12

JSON_DUMP = """\
{"beans": [
  {"name": "org.apache.cassandra.metrics:type=Table,keyspace=ks1,scope=t1,name=ReadLatency",
   "modelerType": "com.codahale.metrics.Timer", "Count": 42, "Mean": "NaN"},
  {"name": "java.lang:type=Runtime", "Uptime": 1000},
  {"name": "not-an-object-name", "Value": 1}
]}
"""

REPORT = """\
Total number of tables: 2
----------------
Keyspace : ks1
\tRead Count: 100
\tRead Latency: 5 ms
\tWrite Count: 50
\tWrite Latency: 0.5 ms
\tPending Flushes: 0
\t\tTable: t1
\t\tSSTable count: 3
\t\tSpace used (live): 1024
\t\tSpace used (total): 2048
\t\tLocal read count: 100
\t\tLocal read latency: 5 ms
\t\tLocal write count: 50
\t\tLocal write latency: NaN ms
\t\tPending flushes: 0
\t\tNumber of partitions (estimate): 12
\t\tDropped Mutations: 0

----------------
"""

SYSTEM_LOG = """\
INFO  [main] 2024-01-15 10:23:45,123 CassandraDaemon.java:123 - Startup complete
WARN  [CompactionExecutor:1] 2024-01-15 10:25:00,001 BigTableWriter.java:211 - Writing large partition ks1/t1:key (120 MB)
ERROR [ReadStage-2] 2024-01-16 08:00:00,500 StorageProxy.java:77 - Read timeout
java.lang.RuntimeException: boom
\tat org.apache.cassandra.service.StorageProxy.read(StorageProxy.java:77)
INFO  [ScheduledTasks:1] 2024-01-16 09:00:00,000 StatusLogger.java:51 - Pool Name  Active  Pending
INFO  [GossipStage:1] 2024-01-17 12:00:00,000 Gossiper.java:1011 - Node /10.0.0.2 is now UP
"""

# Entries of SYSTEM_LOG: 5 valid lines, 2 continuation lines, 4 indexed
SYSTEM_LOG_VALID = 5
SYSTEM_LOG_INVALID = 2
SYSTEM_LOG_INDEXED = 4

LOGBACK_XML = """\
<configuration scan="true">
  <appender name="SYSTEMLOG" class="ch.qos.logback.core.rolling.RollingFileAppender">
    <filter class="ch.qos.logback.classic.filter.ThresholdFilter">
      <level>INFO</level>
    </filter>
    <file>${cassandra.logdir}/system.log</file>
    <encoder>
      <pattern>%-5level [%thread] %date{ISO8601} %F:%L - %msg%n</pattern>
    </encoder>
  </appender>
  <appender name="DEBUGLOG" class="ch.qos.logback.core.rolling.RollingFileAppender">
    <filter class="ch.qos.logback.classic.filter.ThresholdFilter">
      <level>DEBUG</level>
    </filter>
    <file>${cassandra.logdir}/debug.log</file>
    <encoder>
      <pattern>%-5level [%thread] %date{ISO8601} %F:%L - %msg%n</pattern>
    </encoder>
  </appender>
  <appender name="STDOUT" class="ch.qos.logback.core.ConsoleAppender">
    <encoder>
      <pattern>%-5level %date{"HH:mm:ss,SSS"} %msg%n</pattern>
    </encoder>
  </appender>
  <root level="INFO">
    <appender-ref ref="SYSTEMLOG" />
    <appender-ref ref="STDOUT" />
  </root>
</configuration>
"""

MEMINFO = """\
MemTotal:       32780000 kB
MemFree:         1024000 kB
"""


@pytest.fixture
def metrics_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for metric store tests."""
    return str(tmp_path / "metrics.db")


@pytest.fixture
def index_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for log index tests."""
    return str(tmp_path / "logSearchIndex.db")


@pytest.fixture
def raw_dump() -> str:
    return RAW_DUMP


@pytest.fixture
def json_dump() -> str:
    return JSON_DUMP


@pytest.fixture
def report_text() -> str:
    return REPORT


@pytest.fixture
def system_log() -> str:
    return SYSTEM_LOG


@pytest.fixture
def logback_xml() -> str:
    return LOGBACK_XML


NodeFactory = Callable[..., Path]


@pytest.fixture
def bundle_root(tmp_path: Path) -> Path:
    """Empty bundle root with an ``extracted`` directory."""
    root = tmp_path / "bundle"
    (root / "extracted").mkdir(parents=True)
    return root


@pytest.fixture
def make_node(bundle_root: Path) -> NodeFactory:
    """Factory fixture creating one node directory of the bundle.

    Keyword arguments map node-relative paths to file content, e.g.
    ``make_node("10.0.0.1_artifacts_x", **{"metrics.jmx": RAW_DUMP})``.
    With ``defaults=True`` meminfo, logback.xml and a system.log are added.
    """

    def _make(dirname: str, defaults: bool = False, **files: str) -> Path:
        node_dir = bundle_root / "extracted" / dirname
        node_dir.mkdir(parents=True, exist_ok=True)
        content = {}
        if defaults:
            content = {
                "os/meminfo": MEMINFO,
                "conf/logback.xml": LOGBACK_XML,
                "logs/cassandra/system.log": SYSTEM_LOG,
            }
        content.update(files)
        for relative, text in content.items():
            path = node_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        return node_dir

    return _make
