"""Host metadata read from a node directory."""

import logging
import re
from pathlib import Path

from diagbundle.adapters.filesystem.node_dirs import find_file
from diagbundle.core.models import ServerInfo

logger = logging.getLogger(__name__)

MEMINFO_FILES = ("os/meminfo", "os-metrics/meminfo")
AWS_AZ_FILE = "cloud/aws-az.txt"
AWS_INSTANCE_TYPE_FILE = "cloud/aws-instance-type.txt"

_MEM_TOTAL = re.compile(r"MemTotal:\s*(\d+)\s*kB")


def read_memory_gb(node_dir: Path) -> int:
    """Return total memory in GB from meminfo, or -1 when unavailable."""
    meminfo = find_file(node_dir, MEMINFO_FILES)
    if meminfo is None:
        logger.warning(f"No meminfo in {node_dir}")
        return -1
    match = _MEM_TOTAL.search(meminfo.read_text(encoding="utf-8", errors="replace"))
    if match is None:
        logger.warning(f"No MemTotal line in {meminfo}")
        return -1
    return int(match.group(1)) // 1024 // 1024


def _read_optional(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except FileNotFoundError:
        return ""


def read_server_info(node_dir: Path, host: str, has_jmx: bool) -> ServerInfo:
    """Build the ServerInfo of a node from its directory."""
    return ServerInfo(
        host=host,
        memory_in_gb=read_memory_gb(node_dir),
        aws_region=_read_optional(node_dir / AWS_AZ_FILE),
        aws_instance_type=_read_optional(node_dir / AWS_INSTANCE_TYPE_FILE),
        has_jmx=has_jmx,
    )
