"""Errors raised by the ingestion pipeline.

Each error aborts exactly one scope: a metric source tier, a node, or the
whole run. Record-level problems are never raised, they are reported as a
``WriteResult`` and logged.
"""


class IngestError(Exception):
    """Base class for ingestion errors."""


class OutputExistsError(IngestError):
    """Output store already exists and overwriting was not requested."""


class DuplicateNodeError(IngestError):
    """Two node directories resolve to the same logical node (run-fatal)."""

    def __init__(self, duplicates: dict[str, list[str]]) -> None:
        self.duplicates = duplicates
        detail = "; ".join(
            f"{name}: {', '.join(sorted(dirs))}" for name, dirs in sorted(duplicates.items())
        )
        super().__init__(f"Duplicate node folders detected ({detail})")


class NodeIdentityError(IngestError):
    """A node directory's host identity could not be determined."""


class SourceUnavailableError(IngestError):
    """No metric source tier is available for a node."""


class MetricsSourceError(IngestError):
    """A metric source exists but could not be parsed."""


class SearchQueryError(ValueError):
    """A search query could not be parsed by the index."""
