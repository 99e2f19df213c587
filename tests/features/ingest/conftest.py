"""BDD step definitions for bundle ingestion features."""

from dataclasses import dataclass, field
from pathlib import Path

import pytest
from pytest_bdd import given, parsers, then, when

from diagbundle import IngestConfig, RunSummary, ingest_bundle
from diagbundle.adapters.storage.sqlite_logs import SQLiteLogIndex
from diagbundle.adapters.storage.sqlite_metrics import SQLiteMetricStore
from diagbundle.core.errors import DuplicateNodeError, IngestError, OutputExistsError
from diagbundle.core.models import MetricSource


@dataclass
class IngestScenarioContext:
    """State shared by the steps of one scenario."""

    root: Path | None = None
    summaries: list[RunSummary] = field(default_factory=list)
    error: IngestError | None = None

    @property
    def summary(self) -> RunSummary:
        assert self.summaries, "the bundle was not ingested"
        return self.summaries[-1]

    def run(self, config: IngestConfig) -> None:
        assert self.root is not None
        try:
            self.summaries.append(ingest_bundle(self.root, config))
        except IngestError as e:
            self.error = e

    def store(self) -> SQLiteMetricStore:
        assert self.root is not None
        return SQLiteMetricStore(str(self.root / "metrics.db"), bootstrap=False)

    def index(self) -> SQLiteLogIndex:
        assert self.root is not None
        return SQLiteLogIndex(str(self.root / "logSearchIndex.db"))


@pytest.fixture
def ctx() -> IngestScenarioContext:
    """Fresh scenario context for each test."""
    return IngestScenarioContext()


# === Background Steps ===
@given("an extracted bundle")
def step_bundle(ctx: IngestScenarioContext, bundle_root: Path) -> None:
    ctx.root = bundle_root


# === Node Steps ===
@given(parsers.parse('node "{host}" with a raw bean dump'))
def step_node_with_dump(make_node, raw_dump: str, host: str) -> None:  # type: ignore[no-untyped-def]
    make_node(f"{host}_artifacts_2024_01_17", defaults=True, **{"metrics.jmx": raw_dump})


@given(parsers.parse('node "{host}" with only an admin report'))
def step_node_with_report(make_node, report_text: str, host: str) -> None:  # type: ignore[no-untyped-def]
    make_node(f"{host}_artifacts_2024_01_17", defaults=True, **{"nodetool/cfstats": report_text})


@given(parsers.parse('node "{host}" without metrics'))
def step_node_without_metrics(make_node, host: str) -> None:  # type: ignore[no-untyped-def]
    make_node(f"{host}_artifacts_2024_01_17", defaults=True)


@given(parsers.parse('a second folder for node "{host}"'))
def step_second_folder(make_node, raw_dump: str, host: str) -> None:  # type: ignore[no-untyped-def]
    make_node(f"{host}_artifacts_2024_01_18", **{"metrics.jmx": raw_dump})


@given("a metric store from a previous run")
def step_previous_store(ctx: IngestScenarioContext) -> None:
    assert ctx.root is not None
    SQLiteMetricStore.bootstrap(str(ctx.root / "metrics.db"))


# === Run Steps ===
@when("the bundle is ingested")
def step_ingest(ctx: IngestScenarioContext) -> None:
    ctx.run(IngestConfig())


@when("the bundle is ingested sequentially")
def step_ingest_sequentially(ctx: IngestScenarioContext) -> None:
    ctx.run(IngestConfig(parallel_metrics=False, parallel_logs=False))


@when("the bundle is ingested again in parallel with overwrite")
def step_ingest_parallel(ctx: IngestScenarioContext) -> None:
    ctx.run(IngestConfig(overwrite=True, log_batch_size=1))


# === Outcome Steps ===
@then(parsers.parse('node "{host}" used the "{source}" source'))
def step_check_source(ctx: IngestScenarioContext, host: str, source: str) -> None:
    assert ctx.summary.metric_sources[host] is MetricSource(source)


@then(parsers.parse("the metric store lists {count:d} servers"))
def step_check_servers(ctx: IngestScenarioContext, count: int) -> None:
    store = ctx.store()
    try:
        assert len(store.get_servers_sync()) == count
    finally:
        store.close()


@then(parsers.parse('searching "{query}" at level "{level}" returns {count:d} entry'))
def step_search_level(ctx: IngestScenarioContext, query: str, level: str, count: int) -> None:
    index = ctx.index()
    try:
        assert len(index.search_sync(query, level=level)) == count
    finally:
        index.close()


@then(parsers.parse('searching for "{query}" returns {count:d} entry'))
def step_search(ctx: IngestScenarioContext, query: str, count: int) -> None:
    index = ctx.index()
    try:
        assert len(index.search_sync(query)) == count
    finally:
        index.close()


@then(parsers.parse('node "{host}" has {valid:d} valid and {invalid:d} invalid log lines'))
def step_check_log_stats(ctx: IngestScenarioContext, host: str, valid: int, invalid: int) -> None:
    store = ctx.store()
    try:
        assert store.get_log_stats_sync()[host] == (valid, invalid)
    finally:
        store.close()


@then(parsers.parse("both runs indexed {count:d} entries"))
def step_check_both_runs(ctx: IngestScenarioContext, count: int) -> None:
    first, second = ctx.summaries
    assert first.entries_indexed == second.entries_indexed == count
    assert first.metric_sources == second.metric_sources


@then("the run fails with a duplicate node error")
def step_check_duplicate(ctx: IngestScenarioContext) -> None:
    assert isinstance(ctx.error, DuplicateNodeError)


@then("no metric store was created")
def step_check_no_store(ctx: IngestScenarioContext) -> None:
    assert ctx.root is not None
    assert not (ctx.root / "metrics.db").exists()


@then("the run fails because the output exists")
def step_check_output_exists(ctx: IngestScenarioContext) -> None:
    assert isinstance(ctx.error, OutputExistsError)
