"""
Tests for working-tree scanning and tech stack detection.
"""

import hashlib
from pathlib import Path

import pytest

from devtrack.scanner import ROOT, count_lines, detect_tech_stack, scan_codebase


def _write(root: Path, files: dict[str, str | bytes]) -> None:
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content)


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "shop"
    _write(
        root,
        {
            "main.py": "print('hi')\n",
            "README.md": "# Shop\n",
            "notes.txt": "scratch\n",
            "package.json": "{}\n",
            "src/api/routes.py": "def route():\n    pass\n",
            "src/models.py": "class Item: ...\n",
            "node_modules/lib/index.js": "module.exports = 1\n",
            ".hidden/secret.py": "x = 1\n",
            "assets/logo.png": b"\x89PNG\r\n",
        },
    )
    return root


class TestScan:
    """Test which files and folders a scan records."""

    def test_files_and_ignores(self, tree: Path):
        """Test that ignored folders, hidden entries and binaries are skipped."""
        result = scan_codebase(tree)
        paths = [f.path for f in result.files]

        assert "main.py" in paths
        assert "README.md" in paths
        assert "src/api/routes.py" in paths
        assert "notes.txt" not in paths
        assert "assets/logo.png" not in paths
        assert not any(p.startswith("node_modules") for p in paths)
        assert not any(p.startswith(".hidden") for p in paths)

    def test_folders(self, tree: Path):
        """Test folder paths, depth and parents."""
        result = scan_codebase(tree)

        root = result.folders[ROOT]
        assert root.depth == 0
        assert root.parent_path is None
        assert root.name == "shop"

        api = result.folders["src/api"]
        assert api.depth == 2
        assert api.parent_path == "src"
        assert api.files == ["src/api/routes.py"]
        assert "src/api" in result.folders["src"].subfolders
        assert result.folders["src"].file_count == 1

    def test_fingerprint_is_sha256_of_bytes(self, tree: Path):
        """Test that the content hash is the sha256 of the file bytes."""
        result = scan_codebase(tree)
        expected = hashlib.sha256((tree / "main.py").read_bytes()).hexdigest()
        assert result.fingerprints()["main.py"] == expected

    def test_size_limits(self, tmp_path: Path):
        """Test that oversized files are skipped and large files keep no content."""
        root = tmp_path / "sizes"
        _write(root, {"big.py": "x" * 2000, "medium.py": "y" * 500, "small.py": "z"})

        result = scan_codebase(root, max_file_size=1000, max_content_size=100)
        by_path = {f.path: f for f in result.files}

        assert "big.py" not in by_path
        assert by_path["medium.py"].content == ""
        assert by_path["medium.py"].size == 500
        assert by_path["small.py"].content == "z"

    def test_include_folders(self, tree: Path):
        """Test restricting the scan to selected folders."""
        result = scan_codebase(tree, include_folders=["src/api"])
        assert [f.path for f in result.files] == ["src/api/routes.py"]

        with_root = scan_codebase(tree, include_folders=[".", "src/api"])
        paths = [f.path for f in with_root.files]
        assert "main.py" in paths
        assert "src/models.py" not in paths


class TestHelpers:
    """Test line counting and stack detection."""

    def test_count_lines(self):
        """Test line counts of empty and multi-line content."""
        assert count_lines("") == 0
        assert count_lines("a") == 1
        assert count_lines("a\nb\n") == 3

    def test_tech_stack(self, tree: Path):
        """Test the language and marker-file histogram."""
        stack = detect_tech_stack(scan_codebase(tree).files)
        assert stack["Python"] == 3
        assert stack["Node.js"] == 1
