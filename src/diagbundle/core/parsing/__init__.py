"""Parsers for metric dumps, the table statistics report and log files."""

from diagbundle.core.parsing.dumps import (
    LoadStats,
    iter_json_dump,
    iter_plain_dump,
    load_metrics,
    repair_lines,
    store_samples,
)
from diagbundle.core.parsing.log_pattern import DEFAULT_LAYOUT, LogPattern, compile_layout
from diagbundle.core.parsing.log_stream import LogStreamReader
from diagbundle.core.parsing.metric_line import parse_expression, parse_metric
from diagbundle.core.parsing.report import parse_report

__all__ = [
    "DEFAULT_LAYOUT",
    "LoadStats",
    "LogPattern",
    "LogStreamReader",
    "compile_layout",
    "iter_json_dump",
    "iter_plain_dump",
    "load_metrics",
    "parse_expression",
    "parse_metric",
    "parse_report",
    "repair_lines",
    "store_samples",
]
