"""Integration tests for SQLiteMetricStore."""

import threading
import time
from datetime import datetime

import pytest

from diagbundle.adapters.storage.sqlite_metrics import SQLiteMetricStore
from diagbundle.core.models import (
    DbCounter,
    GenericMetric,
    KeyspaceHistogram,
    LogFileRecord,
    MetricSource,
    NodeIngestRecord,
    ServerInfo,
    SSTableCount,
    TableHistogram,
    WriteResult,
)
from diagbundle.core.parsing.dumps import iter_plain_dump, load_metrics
from diagbundle.core.ports import MetricQueryPort, MetricSinkPort

pytestmark = [pytest.mark.tier(2), pytest.mark.tra("Adapter.SQLiteStorage.Metrics")]


def _histogram(host: str, value: str, key: str = "Count") -> TableHistogram:
    return TableHistogram(host, "ks1", "t1", "ReadLatency", key, value)


@pytest.fixture
def store(metrics_db_path: str):  # type: ignore[no-untyped-def]
    store = SQLiteMetricStore(metrics_db_path)
    yield store
    store.close()


@pytest.fixture
def loaded_store(store: SQLiteMetricStore, raw_dump: str) -> SQLiteMetricStore:
    """Store holding RAW_DUMP for host n1."""
    with store.transaction():
        load_metrics(iter_plain_dump(raw_dump.splitlines()), "n1", store)
    return store


class TestWrites:
    """Tests for the write side."""

    @pytest.mark.storage
    def test_implements_ports(self, store: SQLiteMetricStore) -> None:
        assert isinstance(store, MetricSinkPort)
        assert isinstance(store, MetricQueryPort)

    @pytest.mark.storage
    def test_write_each_variant_to_its_table(self, store: SQLiteMetricStore) -> None:
        store.write(_histogram("n1", "1"))
        store.write(KeyspaceHistogram("n1", "ks1", "ReadLatency", "Count", "1"))
        store.write(DbCounter("n1", "", "", "StorageService.SchemaVersion", "v1"))

        assert store.count_sync("tablehistograms") == 1
        assert store.count_sync("keyspacehistograms") == 1
        assert store.count_sync("db") == 1
        assert store.count_sync("metrics") == 0

    @pytest.mark.storage
    def test_duplicate_natural_key_keeps_first_value(self, store: SQLiteMetricStore) -> None:
        """A second write of the same natural key is a duplicate, not an update."""
        assert store.write(_histogram("n1", "1")) is WriteResult.WRITTEN
        assert store.write(_histogram("n1", "2")) is WriteResult.DUPLICATE

        assert store.get_histogram_sync("ks1", "t1", "ReadLatency", "Count") == [("n1", 1.0)]

    @pytest.mark.storage
    def test_statement_cache_reuses_cursors(self, store: SQLiteMetricStore) -> None:
        """One cursor per distinct statement text, reused on every write."""
        for i in range(5):
            store.write(_histogram(f"n{i}", "1"))
        store.write(DbCounter("n1", "ks1", "t1", "Key", "1"))

        assert len(store.statements) == 2
        assert store.statements.misses == 2
        assert store.statements.hits == 4
        assert _histogram("n1", "1").insert_query in store.statements

    @pytest.mark.storage
    def test_transaction_commits_once(self, store: SQLiteMetricStore, metrics_db_path: str) -> None:
        """Writes of a transaction become visible to other handles on commit."""
        other = SQLiteMetricStore(metrics_db_path, bootstrap=False)
        try:
            with store.transaction():
                store.write(_histogram("n1", "1"))
                assert other.count_sync("tablehistograms") == 0
            assert other.count_sync("tablehistograms") == 1
        finally:
            other.close()

    @pytest.mark.storage
    def test_transaction_rolls_back_on_error(self, store: SQLiteMetricStore) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.write(_histogram("n1", "1"))
                raise RuntimeError("boom")

        assert store.count_sync("tablehistograms") == 0

    @pytest.mark.storage
    def test_nested_transaction_joins_outer(self, store: SQLiteMetricStore) -> None:
        with store.transaction():
            store.write(_histogram("n1", "1"))
            with store.transaction():
                store.write(_histogram("n2", "1"))

        assert store.count_sync("tablehistograms") == 2

    @pytest.mark.storage
    def test_server_written_once(self, store: SQLiteMetricStore) -> None:
        assert store.write_server(ServerInfo("n1", 16, "us-east-1a", "i3", True)) is (
            WriteResult.WRITTEN
        )
        assert store.write_server(ServerInfo("n1", 32)) is WriteResult.DUPLICATE

        assert store.get_servers_sync() == [ServerInfo("n1", 16, "us-east-1a", "i3", True)]

    @pytest.mark.storage
    def test_ingest_record_round_trip(self, store: SQLiteMetricStore) -> None:
        record = NodeIngestRecord(
            "n1",
            MetricSource.JSON_DUMP,
            valid_entries=10,
            invalid_entries=1,
            min_log_date=datetime(2024, 1, 1, 8),
            max_log_date=datetime(2024, 1, 3, 9),
            log_files=(LogFileRecord("/logs/system.log", "abc", 10, 1),),
        )

        assert store.write_ingest_record(record) is WriteResult.WRITTEN
        assert store.write_ingest_record(record) is WriteResult.DUPLICATE

        assert store.get_ingest_records_sync() == [record]
        assert store.has_fingerprint("n1", "abc")
        assert not store.has_fingerprint("n2", "abc")

    @pytest.mark.storage
    def test_workers_write_concurrently_with_own_handles(self, metrics_db_path: str) -> None:
        """Each worker thread opens its own handle; no write is lost."""
        SQLiteMetricStore.bootstrap(metrics_db_path)
        errors: list[Exception] = []

        def worker(host: str) -> None:
            store = SQLiteMetricStore(metrics_db_path, bootstrap=False)
            try:
                with store.transaction():
                    for i in range(50):
                        store.write(TableHistogram(host, "ks1", f"t{i}", "ReadLatency", "Count", "1"))
            except Exception as e:
                errors.append(e)
            finally:
                store.close()

        threads = [threading.Thread(target=worker, args=(f"n{i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        reader = SQLiteMetricStore(metrics_db_path, bootstrap=False)
        try:
            assert errors == []
            assert reader.count_sync("tablehistograms") == 200
        finally:
            reader.close()

    @pytest.mark.storage
    def test_transaction_waits_longer_than_busy_timeout(self, metrics_db_path: str) -> None:
        """A writer blocked past the busy timeout keeps waiting instead of failing."""
        SQLiteMetricStore.bootstrap(metrics_db_path)
        locked = threading.Event()
        errors: list[Exception] = []

        def holder() -> None:
            store = SQLiteMetricStore(metrics_db_path, bootstrap=False, busy_timeout=0.1)
            try:
                with store.transaction():
                    store.write(_histogram("n1", "1"))
                    locked.set()
                    time.sleep(0.5)
            except Exception as e:
                errors.append(e)
            finally:
                store.close()

        thread = threading.Thread(target=holder)
        thread.start()
        assert locked.wait(5)
        waiter = SQLiteMetricStore(metrics_db_path, bootstrap=False, busy_timeout=0.1)
        try:
            with waiter.transaction():
                assert waiter.write(_histogram("n2", "1")) is WriteResult.WRITTEN
            thread.join()

            assert errors == []
            assert waiter.count_sync("tablehistograms") == 2
        finally:
            waiter.close()

    @pytest.mark.storage
    def test_clear_log_records(self, store: SQLiteMetricStore) -> None:
        """Log bookkeeping is dropped and the metric sources are handed back."""
        store.write_ingest_record(
            NodeIngestRecord(
                "n1",
                MetricSource.RAW_DUMP,
                log_files=(LogFileRecord("/logs/system.log", "abc", 10, 1),),
            )
        )
        store.write(_histogram("n1", "1"))

        assert store.clear_log_records() == {"n1": MetricSource.RAW_DUMP}

        assert not store.has_fingerprint("n1", "abc")
        assert store.get_ingest_records_sync() == []
        assert store.count_sync("tablehistograms") == 1
        assert store.write_ingest_record(NodeIngestRecord("n1")) is WriteResult.WRITTEN

    @pytest.mark.storage
    def test_count_rejects_unknown_table(self, store: SQLiteMetricStore) -> None:
        with pytest.raises(ValueError, match="Unknown table"):
            store.count_sync("sqlite_master")


class TestReadSurface:
    """Tests for the queries consumed by report logic."""

    @pytest.mark.storage
    async def test_get_histogram(self, loaded_store: SQLiteMetricStore) -> None:
        result = await loaded_store.get_histogram("ks1", "t1", "ReadLatency", "Count")

        assert result == [("n1", 100.0)]

    @pytest.mark.storage
    async def test_nan_stored_as_zero(self, loaded_store: SQLiteMetricStore) -> None:
        mean = await loaded_store.get_histogram("ks1", "t1", "ReadLatency", "Mean")
        tombstones = await loaded_store.get_histogram("ks1", "t1", "TombstoneScannedHistogram", "Max")

        assert mean == [("n1", 0.0)]
        assert tombstones == [("n1", 0.0)]

    @pytest.mark.storage
    async def test_get_keyspace_histogram(self, loaded_store: SQLiteMetricStore) -> None:
        assert await loaded_store.get_keyspace_histogram("ks1", "ReadLatency", "Count") == [
            ("n1", 100.0)
        ]

    @pytest.mark.storage
    async def test_dropped_and_blocked_counts(self, loaded_store: SQLiteMetricStore) -> None:
        assert await loaded_store.get_dropped_counts("MUTATION") == {"n1": 7}
        assert await loaded_store.get_dropped_counts("READ") == {}
        assert await loaded_store.get_blocked_task_counts("CompactionExecutor") == {"n1": 3}

    @pytest.mark.storage
    async def test_sstable_counts(self, loaded_store: SQLiteMetricStore) -> None:
        assert await loaded_store.get_sstable_counts() == [SSTableCount("n1", "ks1", "t1", 12)]
        assert await loaded_store.get_sstable_counts(over_threshold=20) == []

    @pytest.mark.storage
    async def test_runtime_variables_and_schema_versions(
        self, loaded_store: SQLiteMetricStore
    ) -> None:
        assert await loaded_store.get_runtime_variables("n1") == {
            "StorageService.SchemaVersion": "5a7e-11"
        }
        assert await loaded_store.get_schema_versions() == {"n1": "5a7e-11"}

    @pytest.mark.storage
    async def test_unused_keyspaces(self, loaded_store: SQLiteMetricStore) -> None:
        """Only keyspaces without reads and writes on any host are unused."""
        assert await loaded_store.get_unused_keyspaces() == ["ks2"]

    @pytest.mark.storage
    async def test_host_metrics(self, loaded_store: SQLiteMetricStore) -> None:
        assert await loaded_store.get_host_metrics("n1") == [
            GenericMetric("n1", "DroppedMessage", "MUTATION", "Dropped", "Count", "7")
        ]

    @pytest.mark.storage
    async def test_log_durations_and_stats(self, store: SQLiteMetricStore) -> None:
        store.write_ingest_record(
            NodeIngestRecord(
                "n1",
                valid_entries=5,
                invalid_entries=2,
                min_log_date=datetime(2024, 1, 15, 10, 23, 45),
                max_log_date=datetime(2024, 1, 17, 12),
            )
        )
        store.write_ingest_record(NodeIngestRecord("n2"))

        assert await store.get_log_durations() == {
            "n1": ("2024-01-15T10:23:45", "2024-01-17T12:00:00")
        }
        assert await store.get_log_stats() == {"n1": (5, 2), "n2": (0, 0)}

    @pytest.mark.storage
    async def test_sync_and_async_reads_agree(self, loaded_store: SQLiteMetricStore) -> None:
        assert await loaded_store.count("tablehistograms") == loaded_store.count_sync(
            "tablehistograms"
        )
        assert await loaded_store.get_servers() == loaded_store.get_servers_sync()
        assert await loaded_store.get_unused_keyspaces() == loaded_store.get_unused_keyspaces_sync()
