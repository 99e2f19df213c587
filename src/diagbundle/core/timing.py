"""Timing helper for logging the phases of a run."""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class PhaseTiming:
    """Result object for timed_phase context manager."""

    name: str
    elapsed_seconds: float = 0.0


@contextmanager
def timed_phase(
    name: str,
    log: logging.Logger | None = None,
    level: int = logging.INFO,
) -> Iterator[PhaseTiming]:
    """Context manager that logs entry and exit of a phase with elapsed time.

    Args:
        name: Phase name used in the log messages.
        log: Logger to write to (default: this module's logger).
        level: Logging level for both messages (default INFO).

    Yields:
        PhaseTiming whose elapsed_seconds is set on exit.
    """
    target = log or logger
    result = PhaseTiming(name=name)
    start = time.perf_counter()
    target.log(level, f"{name} [entry]")
    try:
        yield result
    finally:
        result.elapsed_seconds = time.perf_counter() - start
        target.log(level, f"{name} [exit] elapsed={result.elapsed_seconds:.2f}s")
