"""Storage adapters implementing core ports."""

from diagbundle.adapters.storage.in_memory import InMemoryLogIndex, InMemoryMetricStore
from diagbundle.adapters.storage.sqlite_logs import SQLiteLogIndex
from diagbundle.adapters.storage.sqlite_metrics import SQLiteMetricStore, StatementCache

__all__ = [
    "InMemoryLogIndex",
    "InMemoryMetricStore",
    "SQLiteLogIndex",
    "SQLiteMetricStore",
    "StatementCache",
]
