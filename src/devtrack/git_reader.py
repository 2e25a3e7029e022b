"""
Read-only access to git history for devtrack.

This module provides the GitReader class used by commit ingestion: it
lists branches, walks commit ranges oldest to newest, computes merge bases
and extracts per-file change statistics. Uses GitPython for git operations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog
from git import (
    BadName,
    BadObject,
    GitCommandError,
    InvalidGitRepositoryError,
    NoSuchPathError,
    Repo,
)

logger = structlog.get_logger(__name__)

# Patches longer than this are not stored
MAX_PATCH_CHARS = 10000


class SourceControlError(Exception):
    """Raised when reading from a git repository fails."""

    def __init__(self, message: str, path: str | Path = "", ref: str = ""):
        self.path = str(path)
        self.ref = ref
        super().__init__(message)


@dataclass
class FileChangeInfo:
    """One file touched by a commit."""

    path: str
    change_type: str
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None


@dataclass
class CommitInfo:
    """A commit as read from git."""

    hash: str
    author_name: str
    author_email: str
    message: str
    authored_at: datetime
    parent_count: int
    files: list[FileChangeInfo] = field(default_factory=list)

    @property
    def additions(self) -> int:
        return sum(f.additions for f in self.files)

    @property
    def deletions(self) -> int:
        return sum(f.deletions for f in self.files)

    @property
    def files_changed(self) -> int:
        return len(self.files)


@dataclass
class BranchInfo:
    """A local branch and its tip."""

    name: str
    tip: str
    is_default: bool = False


def _to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _count_patch_lines(patch: str) -> tuple[int, int]:
    additions = deletions = 0
    for line in patch.splitlines():
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return additions, deletions


class GitReader:
    """
    Read-only view of one git repository.

    All GitPython failures are wrapped in SourceControlError carrying the
    repository path and the ref being read.
    """

    def __init__(self, repo_path: str | Path):
        """
        Open a repository.

        Args:
            repo_path: Path to the working tree

        Raises:
            SourceControlError: If the path is not a git repository
        """
        self.path = Path(repo_path).resolve()
        try:
            self.repo = Repo(self.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise SourceControlError(
                f"Not a git repository: {self.path}", path=self.path
            ) from e

    def default_branch(self) -> str:
        """
        Detect the default branch.

        Prefers ``main``, then ``master``, then the target of
        ``origin/HEAD``, then the checked-out branch; falls back to ``main``.
        """
        heads = {head.name for head in self.repo.heads}
        for candidate in ("main", "master"):
            if candidate in heads:
                return candidate

        try:
            origin_head = self.repo.remotes.origin.refs.HEAD.reference
            return origin_head.remote_head
        except (AttributeError, IndexError, TypeError, ValueError):
            pass

        try:
            return self.repo.active_branch.name
        except TypeError:
            # detached HEAD
            return "main"

    def list_branches(self) -> list[BranchInfo]:
        """Local branches, default first, the rest by name."""
        default = self.default_branch()
        try:
            branches = [
                BranchInfo(
                    name=head.name,
                    tip=head.commit.hexsha,
                    is_default=head.name == default,
                )
                for head in self.repo.heads
            ]
        except (GitCommandError, ValueError) as e:
            raise SourceControlError(
                f"Failed to list branches: {str(e)}", path=self.path
            ) from e
        return sorted(branches, key=lambda b: (not b.is_default, b.name))

    def branch_tip(self, name: str) -> str:
        try:
            return self.repo.commit(name).hexsha
        except (BadName, BadObject, GitCommandError, ValueError) as e:
            raise SourceControlError(
                f"Unknown branch '{name}': {str(e)}", path=self.path, ref=name
            ) from e

    def has_commit(self, hash: str) -> bool:
        """True if ``hash`` names a commit object present in the repository."""
        # rev-parse accepts any full-length hex, so ask the object store
        try:
            self.repo.git.cat_file("-e", f"{hash}^{{commit}}")
            return True
        except GitCommandError:
            return False

    def merge_base(self, branch_a: str, branch_b: str) -> Optional[str]:
        """Most recent common ancestor of two refs, or None if unrelated."""
        try:
            bases = self.repo.merge_base(branch_a, branch_b)
        except GitCommandError as e:
            # exit status 1 with no output means no common ancestor
            if e.status == 1 and not (e.stderr or "").strip():
                return None
            raise SourceControlError(
                f"Failed to compute merge base of {branch_a} and {branch_b}: {str(e)}",
                path=self.path,
                ref=f"{branch_a}...{branch_b}",
            ) from e
        return bases[0].hexsha if bases else None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        try:
            return self.repo.is_ancestor(ancestor, descendant)
        except GitCommandError as e:
            raise SourceControlError(
                f"Failed ancestry check: {str(e)}",
                path=self.path,
                ref=f"{ancestor}..{descendant}",
            ) from e

    def list_commits(
        self,
        branch: str,
        after_hash: Optional[str] = None,
        exclude: tuple[str, ...] | list[str] = (),
        with_files: bool = True,
    ) -> list[CommitInfo]:
        """
        Commits reachable from ``branch``, oldest to newest.

        Args:
            branch: Branch name or commit to walk from
            after_hash: Only commits after this one (not reachable from it)
            exclude: Refs whose reachable commits are left out
            with_files: Whether to compute per-file changes

        Returns:
            List of CommitInfo, oldest first

        Raises:
            SourceControlError: If git cannot resolve the range
        """
        revs = [branch] + [f"^{ref}" for ref in exclude if ref]
        if after_hash:
            revs.append(f"^{after_hash}")

        try:
            output = self.repo.git.rev_list("--reverse", "--topo-order", *revs)
        except GitCommandError as e:
            raise SourceControlError(
                f"Failed to list commits of {branch}: {str(e)}",
                path=self.path,
                ref=branch,
            ) from e

        hashes = [line.strip() for line in output.splitlines() if line.strip()]
        return [self.read_commit(h, with_files=with_files) for h in hashes]

    def read_commit(self, hash: str, with_files: bool = True) -> CommitInfo:
        """Read one commit and its changes against the first parent."""
        try:
            commit = self.repo.commit(hash)
            info = CommitInfo(
                hash=commit.hexsha,
                author_name=commit.author.name or "",
                author_email=commit.author.email or "",
                message=commit.message.strip() if isinstance(commit.message, str) else "",
                authored_at=_to_utc_naive(commit.authored_datetime),
                parent_count=len(commit.parents),
            )
            if with_files:
                info.files = self._file_changes(commit)
            return info
        except (BadName, BadObject, GitCommandError, ValueError) as e:
            raise SourceControlError(
                f"Failed to read commit {hash}: {str(e)}", path=self.path, ref=hash
            ) from e

    def _file_changes(self, commit) -> list[FileChangeInfo]:
        if not commit.parents:
            # root commit: every file is an addition
            return [
                FileChangeInfo(
                    path=path,
                    change_type="add",
                    additions=int(stat.get("insertions", 0)),
                    deletions=int(stat.get("deletions", 0)),
                )
                for path, stat in sorted(commit.stats.files.items())
            ]

        changes = []
        for diff in commit.parents[0].diff(commit, create_patch=True):
            if diff.new_file:
                change_type = "add"
            elif diff.deleted_file:
                change_type = "delete"
            elif diff.renamed_file:
                change_type = "rename"
            else:
                change_type = "modify"

            raw = diff.diff or b""
            patch = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            additions, deletions = _count_patch_lines(patch)
            changes.append(
                FileChangeInfo(
                    path=diff.b_path or diff.a_path or "",
                    change_type=change_type,
                    additions=additions,
                    deletions=deletions,
                    patch=patch if patch and len(patch) < MAX_PATCH_CHARS else None,
                )
            )
        return sorted(changes, key=lambda c: c.path)
