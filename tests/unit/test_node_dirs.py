"""Tests for node directory helpers and host metadata."""

from pathlib import Path

import pytest

from diagbundle.adapters.filesystem.node_dirs import (
    find_duplicates,
    find_file,
    list_node_dirs,
    node_name,
    resolve_host,
)
from diagbundle.adapters.filesystem.server_info import read_memory_gb, read_server_info
from diagbundle.core.errors import NodeIdentityError
from diagbundle.core.models import ServerInfo

pytestmark = [pytest.mark.tier(1), pytest.mark.tra("Adapter.Filesystem.NodeDirs")]


class TestNodeNames:
    """Tests for directory name normalization."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        ("dirname", "expected"),
        [
            ("10.0.0.1_artifacts_2024_01_17_1000_1705485600", "10.0.0.1"),
            ("node-a_artifacts", "node-a"),
            ("plain", "plain"),
            ("_artifacts", ""),
        ],
    )
    def test_node_name(self, dirname: str, expected: str) -> None:
        assert node_name(dirname) == expected

    @pytest.mark.core
    def test_find_duplicates(self) -> None:
        """Two collections of the same node are reported together."""
        dirs = [Path("n1_artifacts_a"), Path("n2_artifacts_a"), Path("n1_artifacts_b")]

        assert find_duplicates(dirs) == {"n1": ["n1_artifacts_a", "n1_artifacts_b"]}

    @pytest.mark.core
    def test_no_duplicates(self) -> None:
        assert find_duplicates([Path("n1_artifacts"), Path("n2_artifacts")]) == {}


class TestListAndFind:
    """Tests for directory listing and file lookup."""

    @pytest.mark.storage
    def test_list_node_dirs_sorted_and_directories_only(self, tmp_path: Path) -> None:
        (tmp_path / "n2_artifacts").mkdir()
        (tmp_path / "n1_artifacts").mkdir()
        (tmp_path / "README").write_text("x")

        assert [p.name for p in list_node_dirs(tmp_path)] == ["n1_artifacts", "n2_artifacts"]

    @pytest.mark.storage
    def test_list_missing_directory(self, tmp_path: Path) -> None:
        assert list_node_dirs(tmp_path / "missing") == []

    @pytest.mark.storage
    def test_find_file_tries_txt_suffix_and_order(self, tmp_path: Path) -> None:
        (tmp_path / "nodetool").mkdir()
        (tmp_path / "nodetool" / "tablestats.txt").write_text("x")

        found = find_file(tmp_path, ["nodetool/cfstats", "nodetool/tablestats"])

        assert found == tmp_path / "nodetool" / "tablestats.txt"


class TestResolveHost:
    """Tests for resolve_host()."""

    @pytest.mark.storage
    def test_uses_directory_name(self, tmp_path: Path) -> None:
        node_dir = tmp_path / "10.0.0.1_artifacts"
        node_dir.mkdir()

        assert resolve_host(node_dir) == "10.0.0.1"

    @pytest.mark.storage
    def test_falls_back_to_hostname_file(self, tmp_path: Path) -> None:
        node_dir = tmp_path / "_artifacts"
        (node_dir / "os").mkdir(parents=True)
        (node_dir / "os" / "hostname").write_text("db-3\n")

        assert resolve_host(node_dir) == "db-3"

    @pytest.mark.storage
    @pytest.mark.parametrize("hostname", [None, "localhost", ""])
    def test_raises_without_identity(self, tmp_path: Path, hostname: str | None) -> None:
        node_dir = tmp_path / "_artifacts"
        (node_dir / "os").mkdir(parents=True)
        if hostname is not None:
            (node_dir / "os" / "hostname").write_text(hostname)

        with pytest.raises(NodeIdentityError, match="Unable to determine hostname"):
            resolve_host(node_dir)


class TestServerInfo:
    """Tests for host metadata."""

    @pytest.mark.storage
    def test_reads_memory_and_cloud_placement(self, tmp_path: Path) -> None:
        (tmp_path / "os").mkdir()
        (tmp_path / "os" / "meminfo").write_text("MemTotal:       32780000 kB\n")
        (tmp_path / "cloud").mkdir()
        (tmp_path / "cloud" / "aws-az.txt").write_text("us-east-1a\n")
        (tmp_path / "cloud" / "aws-instance-type.txt").write_text("i3.2xlarge")

        info = read_server_info(tmp_path, "n1", has_jmx=True)

        assert info == ServerInfo("n1", 31, "us-east-1a", "i3.2xlarge", True)

    @pytest.mark.storage
    def test_unknown_memory_is_minus_one(self, tmp_path: Path) -> None:
        assert read_memory_gb(tmp_path) == -1

    @pytest.mark.storage
    def test_missing_cloud_files_are_empty(self, tmp_path: Path) -> None:
        info = read_server_info(tmp_path, "n1", has_jmx=False)

        assert (info.aws_region, info.aws_instance_type) == ("", "")
