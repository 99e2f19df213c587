"""diagbundle - ingest cluster diagnostic bundles into a metric store and a log index."""

from diagbundle.config import IngestConfig
from diagbundle.orchestrator import BundleIngestor, RunSummary, ingest_bundle

__all__ = ["BundleIngestor", "IngestConfig", "RunSummary", "ingest_bundle"]
