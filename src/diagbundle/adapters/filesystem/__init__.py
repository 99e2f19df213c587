"""Helpers reading node directories of an extracted bundle."""

from diagbundle.adapters.filesystem.fingerprint import fingerprint
from diagbundle.adapters.filesystem.log_files import find_log_files, parse_logback
from diagbundle.adapters.filesystem.node_dirs import (
    find_duplicates,
    list_node_dirs,
    node_name,
    resolve_host,
)
from diagbundle.adapters.filesystem.server_info import read_server_info

__all__ = [
    "find_duplicates",
    "find_log_files",
    "fingerprint",
    "list_node_dirs",
    "node_name",
    "parse_logback",
    "read_server_info",
    "resolve_host",
]
