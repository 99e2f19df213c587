"""Node directory naming and lookup helpers.

An extracted bundle holds one directory per node, named
``<node>_artifacts_<suffix>``. The text before the first underscore is the
node's identity in the store.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from pathlib import Path

from diagbundle.core.errors import NodeIdentityError

logger = logging.getLogger(__name__)

HOSTNAME_FILES = ("os/hostname", "os-metrics/hostname")


def node_name(dirname: str) -> str:
    """Return the logical node name encoded in a directory name."""
    return dirname.split("_", 1)[0]


def list_node_dirs(extracted_dir: Path) -> list[Path]:
    """Return the node directories of an extracted bundle, sorted by name."""
    if not extracted_dir.is_dir():
        return []
    return sorted(p for p in extracted_dir.iterdir() if p.is_dir())


def find_duplicates(node_dirs: Iterable[Path]) -> dict[str, list[str]]:
    """Group directory names that normalize to the same node name.

    Returns:
        node name -> directory names, only for names seen more than once.
    """
    groups: dict[str, list[str]] = defaultdict(list)
    for node_dir in node_dirs:
        groups[node_name(node_dir.name) or node_dir.name].append(node_dir.name)
    return {name: sorted(dirs) for name, dirs in groups.items() if len(dirs) > 1}


def find_file(root: Path, names: Sequence[str]) -> Path | None:
    """Return the first existing file among ``names`` (with or without ``.txt``).

    Collectors moved some files between releases, so several locations are
    tried in order.
    """
    for name in names:
        for candidate in (root / name, root / f"{name}.txt"):
            if candidate.is_file():
                return candidate
    return None


def resolve_host(node_dir: Path) -> str:
    """Resolve the host identity of a node directory.

    The directory name is used first; a hostname file inside the directory
    is the fallback.

    Raises:
        NodeIdentityError: If neither source yields a usable name.
    """
    name = node_name(node_dir.name).strip()
    if name:
        return name
    hostname_file = find_file(node_dir, HOSTNAME_FILES)
    if hostname_file is not None:
        hostname = hostname_file.read_text(encoding="utf-8", errors="replace").strip()
        if hostname and hostname != "localhost":
            return hostname
    raise NodeIdentityError(
        f"Unable to determine hostname of {node_dir} from either the folder or the hostname file"
    )
