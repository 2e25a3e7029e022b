"""
Working-tree scanner for the structural indexer.

Walks a repository checkout and produces the folder and file listing, with
a sha256 fingerprint per file, that the indexer reconciles against the
store.
"""

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional

IGNORED_DIRS = {
    ".git",
    "node_modules",
    "vendor",
    ".venv",
    "venv",
    "__pycache__",
    ".idea",
    ".vscode",
    "dist",
    "build",
    "target",
    ".next",
    ".nuxt",
    "coverage",
    ".pytest_cache",
    ".mypy_cache",
}

IGNORED_EXTENSIONS = {
    # binary/media
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg", ".webp", ".mp3", ".mp4",
    ".wav", ".pdf", ".zip", ".tar", ".gz", ".rar", ".exe", ".dll", ".so",
    ".dylib", ".woff", ".woff2", ".ttf", ".eot",
    # lock files
    ".lock", ".sum",
    # prose
    ".md", ".rst", ".txt", ".adoc", ".asciidoc", ".tex", ".mdc",
}

README_NAMES = {"readme", "readme.md"}

LANGUAGE_MAP = {
    ".go": "Go",
    ".py": "Python",
    ".js": "JavaScript",
    ".ts": "TypeScript",
    ".jsx": "JavaScript (React)",
    ".tsx": "TypeScript (React)",
    ".java": "Java",
    ".rs": "Rust",
    ".rb": "Ruby",
    ".php": "PHP",
    ".c": "C",
    ".cpp": "C++",
    ".h": "C/C++ Header",
    ".hpp": "C++ Header",
    ".cs": "C#",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".scala": "Scala",
    ".r": "R",
    ".sql": "SQL",
    ".sh": "Shell",
    ".bash": "Bash",
    ".zsh": "Zsh",
    ".ps1": "PowerShell",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".json": "JSON",
    ".xml": "XML",
    ".html": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".sass": "Sass",
    ".less": "Less",
    ".md": "Markdown",
    ".toml": "TOML",
    ".ini": "INI",
    ".cfg": "Config",
    ".proto": "Protocol Buffers",
    ".graphql": "GraphQL",
    ".vue": "Vue",
    ".svelte": "Svelte",
}

MARKER_FILES = {
    "package.json": "Node.js",
    "go.mod": "Go",
    "Cargo.toml": "Rust",
    "requirements.txt": "Python",
    "setup.py": "Python",
    "pyproject.toml": "Python",
    "Gemfile": "Ruby",
    "pom.xml": "Java",
    "build.gradle": "Java",
    "Dockerfile": "Docker",
    "docker-compose.yml": "Docker",
}

ROOT = "."


@dataclass
class ScannedFile:
    """One file of the working tree."""

    path: str
    name: str
    extension: str
    language: Optional[str]
    size: int
    content_hash: str
    content: str = ""
    line_count: int = 0

    @property
    def folder_path(self) -> str:
        parent = str(PurePosixPath(self.path).parent)
        return ROOT if parent in ("", ".") else parent


@dataclass
class ScannedFolder:
    """One directory of the working tree; ``.`` is the root."""

    path: str
    name: str
    depth: int
    parent_path: Optional[str]
    files: list[str] = field(default_factory=list)
    subfolders: list[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.files)


@dataclass
class ScanResult:
    root: Path
    name: str
    folders: dict[str, ScannedFolder] = field(default_factory=dict)
    files: list[ScannedFile] = field(default_factory=list)

    def fingerprints(self) -> dict[str, str]:
        return {f.path: f.content_hash for f in self.files}


def count_lines(content: str) -> int:
    if not content:
        return 0
    return content.count("\n") + 1


def detect_tech_stack(files: list[ScannedFile]) -> dict[str, int]:
    """Histogram of languages and marker files across the scan."""
    stack: dict[str, int] = {}
    for f in files:
        if f.language:
            stack[f.language] = stack.get(f.language, 0) + 1
        marker = MARKER_FILES.get(f.name)
        if marker:
            stack[marker] = stack.get(marker, 0) + 1
    return stack


def _selected(rel: str, selected: set[str], is_dir: bool) -> bool:
    if not selected:
        return True
    parts = PurePosixPath(rel).parts
    if not is_dir and len(parts) == 1:
        return ROOT in selected
    for sel in selected:
        if sel == ROOT:
            continue
        if rel == sel or rel.startswith(sel + "/"):
            return True
        # ancestors of a selected folder must be walked to reach it
        if is_dir and sel.startswith(rel + "/"):
            return True
    return False


def scan_codebase(
    root: str | Path,
    max_file_size: int = 500 * 1024,
    max_content_size: int = 100 * 1024,
    include_folders: Optional[list[str]] = None,
) -> ScanResult:
    """
    Scan a working tree.

    Args:
        root: Repository working tree
        max_file_size: Files larger than this are skipped
        max_content_size: Files smaller than this have their text content read
        include_folders: Restrict the scan to these relative folders; ``.``
            selects root-level files

    Returns:
        ScanResult with folders keyed by relative POSIX path
    """
    root_path = Path(root).resolve()
    result = ScanResult(root=root_path, name=root_path.name)
    result.folders[ROOT] = ScannedFolder(
        path=ROOT, name=root_path.name, depth=0, parent_path=None
    )
    selected = {
        ROOT if s.strip("/ ") in ("", ".") else s.strip("/ ")
        for s in (include_folders or [])
    }

    for dirpath, dirnames, filenames in os.walk(root_path):
        rel_dir = Path(dirpath).relative_to(root_path).as_posix()
        rel_dir = ROOT if rel_dir == "." else rel_dir

        kept = []
        for d in sorted(dirnames):
            rel = d if rel_dir == ROOT else f"{rel_dir}/{d}"
            if d in IGNORED_DIRS or d.startswith("."):
                continue
            if not _selected(rel, selected, is_dir=True):
                continue
            kept.append(d)
            result.folders[rel] = ScannedFolder(
                path=rel,
                name=d,
                depth=rel.count("/") + 1,
                parent_path=rel_dir,
            )
            result.folders[rel_dir].subfolders.append(rel)
        dirnames[:] = kept

        for name in sorted(filenames):
            if name.startswith("."):
                continue
            rel = name if rel_dir == ROOT else f"{rel_dir}/{name}"
            if not _selected(rel, selected, is_dir=False):
                continue
            ext = os.path.splitext(name)[1].lower()
            if ext in IGNORED_EXTENSIONS and name.lower() not in README_NAMES:
                continue

            full = Path(dirpath) / name
            try:
                size = full.stat().st_size
                if max_file_size and size > max_file_size:
                    continue
                data = full.read_bytes()
            except OSError:
                continue

            content = ""
            if size < max_content_size:
                content = data.decode("utf-8", errors="replace")

            result.files.append(
                ScannedFile(
                    path=rel,
                    name=name,
                    extension=ext,
                    language=LANGUAGE_MAP.get(ext),
                    size=size,
                    content_hash=hashlib.sha256(data).hexdigest(),
                    content=content,
                    line_count=count_lines(content),
                )
            )
            result.folders[rel_dir].files.append(rel)

    return result
