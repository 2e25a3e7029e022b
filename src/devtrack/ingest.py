"""
Commit ingestion and branch ownership.

Reads new history from git and records it in the store. The default
branch is processed first, then every other selected branch contributes
only the commits that are not reachable from the default tip. A commit
belongs to the first branch that discovers it and is never re-attributed
later, even after that branch is merged elsewhere.

Each pass has two phases. The plan phase only reads from git, so a git
failure aborts the pass before anything is written. The write phase then
commits one transaction per branch, holding that branch's commits and its
advanced cursor together, so an interrupted run resumes from the last
committed branch.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from sqlmodel import Session

from . import repository as repo
from .config import Settings, UserIdentity
from .git_reader import BranchInfo, CommitInfo, GitReader, SourceControlError
from .manager import ProfileStore
from .models import Codebase, Commit, FileChange, embedding_to_json
from .prompts import build_commit_prompt
from .summarizer import (
    CollaboratorError,
    Summarizer,
    embed_with_deadline,
    summarize_with_deadline,
)

logger = structlog.get_logger(__name__)

NOREPLY_RE = re.compile(
    r"^(?:\d+\+)?([^@]+)@users\.noreply\.github\.com$", re.IGNORECASE
)


class IngestError(Exception):
    """Raised when a pass is aborted; no cursor was advanced by it."""

    def __init__(self, message: str, codebase_path: str = "", branch: str = ""):
        self.codebase_path = codebase_path
        self.branch = branch
        super().__init__(message)


def is_user_email(email: str, identity: Optional[UserIdentity]) -> bool:
    """Whether ``email`` belongs to the current user.

    Matches the configured email case-insensitively, or a GitHub noreply
    address whose login equals the configured GitHub username.
    """
    if identity is None or not email:
        return False
    if email.strip().lower() == identity.email.strip().lower():
        return True
    match = NOREPLY_RE.match(email.strip())
    if match and identity.github_username:
        return match.group(1).lower() == identity.github_username.lower()
    return False


@dataclass
class BranchResult:
    name: str
    new_commits: int
    cursor: Optional[str]
    merge_base: Optional[str] = None


@dataclass
class IngestReport:
    """Outcome of one ingestion pass."""

    codebase_id: int
    branches: list[BranchResult] = field(default_factory=list)
    new_commits: int = 0
    user_commits: int = 0
    missing_summaries: int = 0
    summaries_filled: int = 0
    developers_seen: int = 0


@dataclass
class _BranchPlan:
    info: BranchInfo
    commits: list[CommitInfo]
    previous_cursor: Optional[str]
    merge_base: Optional[str]
    base_branch: Optional[str]
    status: str
    stored: Optional[tuple[bool, str]]

    @property
    def needs_write(self) -> bool:
        return (
            bool(self.commits)
            or self.previous_cursor != self.info.tip
            or self.stored != (self.info.is_default, self.status)
        )


class CommitIngestor:
    """Ingests one repository's history into a profile store."""

    def __init__(
        self,
        store: ProfileStore,
        reader: GitReader,
        summarizer: Optional[Summarizer] = None,
        identity: Optional[UserIdentity] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.reader = reader
        self.summarizer = summarizer
        self.settings = settings or store.settings
        self.identity = identity if identity is not None else self.settings.identity()
        self.codebase_path = str(reader.path)

    def ingest(
        self, branches: Optional[list[str]] = None, since: Optional[datetime] = None
    ) -> IngestReport:
        """
        Ingest new commits of the default branch and the selected branches.

        Args:
            branches: Branch names to ingest; all local branches when None.
                The default branch is always processed first.
            since: Skip commits authored before this naive UTC time

        Returns:
            IngestReport

        Raises:
            IngestError: If reading from git fails; nothing was written
        """
        try:
            default = self.reader.default_branch()
        except SourceControlError as e:
            raise IngestError(
                f"Failed to read {self.codebase_path}: {str(e)}",
                codebase_path=self.codebase_path,
                branch=e.ref,
            ) from e

        with self.store.transaction() as session:
            codebase = repo.get_or_create_codebase(
                session, self.codebase_path, self.reader.path.name, default
            )
            if self.identity is not None:
                repo.upsert_developer(session, self.identity.email, self.identity.name)
                repo.set_current_user(session, self.identity.email)
            seen = repo.get_existing_commit_hashes(session, codebase.id)
            cursors = repo.list_cursors(session, codebase.id)
            stored_branches = {
                b.name: (b.is_default, b.status)
                for b in repo.list_branches(session, codebase.id)
            }

        log = logger.bind(codebase=self.codebase_path)
        try:
            plans = self._plan(default, branches, cursors, seen, stored_branches, since)
        except SourceControlError as e:
            log.error("ingest_aborted", branch=e.ref, error=str(e))
            raise IngestError(
                f"Ingest of {self.codebase_path} aborted at '{e.ref}': {str(e)}",
                codebase_path=self.codebase_path,
                branch=e.ref,
            ) from e

        report = IngestReport(codebase_id=codebase.id)
        authors: set[str] = set()
        for plan in plans:
            written = self._write_branch(codebase, plan, report) if plan.needs_write else 0
            authors.update(c.author_email.lower() for c in plan.commits)
            report.branches.append(
                BranchResult(
                    name=plan.info.name,
                    new_commits=written,
                    cursor=plan.info.tip,
                    merge_base=plan.merge_base,
                )
            )
            if written:
                log.info("commits_ingested", branch=plan.info.name, count=written)

        report.developers_seen = len(authors)

        # Commits left without a summary by earlier passes
        if self.summarizer is not None:
            attempted = {c.hash for plan in plans for c in plan.commits}
            report.summaries_filled = self._fill_missing(codebase.id, skip=attempted)

        log.info(
            "ingest_complete",
            new_commits=report.new_commits,
            user_commits=report.user_commits,
            missing_summaries=report.missing_summaries,
            summaries_filled=report.summaries_filled,
        )
        return report

    def _plan(
        self,
        default: str,
        selected: Optional[list[str]],
        cursors: dict[str, str],
        seen: set[str],
        stored_branches: dict[str, tuple[bool, str]],
        since: Optional[datetime],
    ) -> list[_BranchPlan]:
        by_name = {b.name: b for b in self.reader.list_branches()}
        names = list(by_name) if selected is None else list(selected)
        ordered = ([default] if default in by_name else []) + [
            n for n in dict.fromkeys(names) if n != default
        ]

        plans = []
        for name in ordered:
            info = by_name.get(name)
            if info is None:
                raise SourceControlError(
                    f"Unknown branch '{name}'", path=self.codebase_path, ref=name
                )

            cursor = cursors.get(name)
            after = cursor
            if cursor and not self.reader.has_commit(cursor):
                logger.warning(
                    "cursor_unreachable",
                    codebase=self.codebase_path,
                    branch=name,
                    cursor=cursor,
                )
                after = None

            merge_base = None
            base_branch = None
            status = "active"
            if info.is_default:
                listed = self.reader.list_commits(name, after_hash=after, with_files=False)
            else:
                exclude: list[str] = []
                if default in by_name:
                    base_branch = default
                    exclude.append(default)
                    merge_base = self.reader.merge_base(default, name)
                    if self.reader.is_ancestor(info.tip, by_name[default].tip):
                        status = "merged"
                listed = self.reader.list_commits(
                    name, after_hash=after, exclude=exclude, with_files=False
                )

            fresh = []
            for commit in listed:
                if commit.hash in seen:
                    continue
                # first branch to discover a commit owns it
                seen.add(commit.hash)
                if since is not None and commit.authored_at < since:
                    continue
                fresh.append(self.reader.read_commit(commit.hash))

            plans.append(
                _BranchPlan(
                    info=info,
                    commits=fresh,
                    previous_cursor=cursor,
                    merge_base=merge_base,
                    base_branch=base_branch,
                    status=status,
                    stored=stored_branches.get(name),
                )
            )
        return plans

    def _write_branch(self, codebase: Codebase, plan: _BranchPlan, report: IngestReport) -> int:
        summaries: dict[str, tuple[Optional[str], Optional[str]]] = {}
        for info in plan.commits:
            if is_user_email(info.author_email, self.identity):
                summaries[info.hash] = self._summarize_commit(
                    info.hash,
                    info.message,
                    [f.path for f in info.files],
                    "\n".join(f.patch for f in info.files if f.patch),
                )

        name = plan.info.name
        with self.store.transaction() as session:
            if plan.info.is_default:
                repo.clear_default_branch(session, codebase.id)
            branch = repo.upsert_branch(
                session,
                codebase.id,
                name,
                is_default=plan.info.is_default,
                base_branch=plan.base_branch,
                status=plan.status,
            )

            for info in plan.commits:
                self._store_commit(session, codebase.id, branch.id, plan, info, summaries)

            if plan.commits:
                if branch.first_commit_hash is None:
                    branch.first_commit_hash = plan.commits[0].hash
                branch.last_commit_hash = plan.commits[-1].hash
            branch.commit_count = repo.count_branch_commits(session, branch.id)
            session.add(branch)

            if plan.previous_cursor != plan.info.tip:
                repo.update_cursor(session, codebase.id, name, plan.info.tip)

        report.new_commits += len(plan.commits)
        report.user_commits += len(summaries)
        report.missing_summaries += sum(1 for s, _ in summaries.values() if s is None)
        return len(plan.commits)

    def _store_commit(
        self,
        session: Session,
        codebase_id: int,
        branch_id: int,
        plan: _BranchPlan,
        info: CommitInfo,
        summaries: dict[str, tuple[Optional[str], Optional[str]]],
    ) -> None:
        repo.upsert_developer(session, info.author_email, info.author_name)
        summary, embedding = summaries.get(info.hash, (None, None))
        commit = repo.add_commit(
            session,
            Commit(
                codebase_id=codebase_id,
                branch_id=branch_id,
                hash=info.hash,
                author_name=info.author_name,
                author_email=info.author_email,
                message=info.message,
                summary=summary,
                embedding=embedding,
                committed_at=info.authored_at,
                additions=info.additions,
                deletions=info.deletions,
                files_changed=info.files_changed,
                parent_count=info.parent_count,
                is_on_default_branch=plan.info.is_default,
                is_user_commit=info.hash in summaries,
            ),
        )
        for change in info.files:
            repo.add_file_change(
                session,
                FileChange(
                    commit_id=commit.id,
                    file_path=change.path,
                    change_type=change.change_type,
                    additions=change.additions,
                    deletions=change.deletions,
                    patch=change.patch,
                ),
            )

    def _summarize_commit(
        self, hash: str, message: str, files: list[str], patch: str
    ) -> tuple[Optional[str], Optional[str]]:
        """Summary and embedding JSON for one commit; (None, None) when missing."""
        if self.summarizer is None:
            return None, None

        timeout = self.settings.collaborator_timeout
        try:
            summary = summarize_with_deadline(
                self.summarizer,
                "commit",
                build_commit_prompt(message, files, patch),
                timeout,
                key=hash,
            )
        except CollaboratorError as e:
            logger.warning("commit_summary_missing", commit=hash, error=str(e))
            return None, None
        if not summary:
            return None, None

        embedding = None
        try:
            embedding = embedding_to_json(
                embed_with_deadline(self.summarizer, summary, timeout, key=hash)
            )
        except CollaboratorError as e:
            logger.warning("commit_embedding_failed", commit=hash, error=str(e))
        return summary, embedding

    def fill_missing_summaries(self, limit: Optional[int] = None) -> int:
        """
        Retry summaries for user commits stored without one.

        ``ingest`` runs this after its write phase; it is also callable on
        its own once a provider becomes available.

        Args:
            limit: Maximum commits to attempt

        Returns:
            Number of commits that received a summary
        """
        if self.summarizer is None:
            return 0

        with self.store.transaction() as session:
            codebase = repo.get_codebase_by_path(session, self.codebase_path)
        if codebase is None:
            return 0
        return self._fill_missing(codebase.id, limit)

    def _fill_missing(
        self,
        codebase_id: int,
        limit: Optional[int] = None,
        skip: Iterable[str] = (),
    ) -> int:
        skip = set(skip)
        with self.store.transaction() as session:
            candidates = [
                c
                for c in repo.get_user_commits_missing_summaries(session, codebase_id)
                if c.hash not in skip
            ]
            if limit is not None:
                candidates = candidates[:limit]
            pending = [
                (c.id, c.hash, c.message, repo.get_file_changes(session, c.id))
                for c in candidates
            ]

        if not pending:
            return 0

        filled = 0
        for commit_id, hash, message, changes in pending:
            summary, embedding = self._summarize_commit(
                hash,
                message,
                [c.file_path for c in changes],
                "\n".join(c.patch for c in changes if c.patch),
            )
            if summary is None:
                continue
            with self.store.transaction() as session:
                repo.update_commit_summary(session, commit_id, summary, embedding)
            filled += 1

        logger.info(
            "missing_summaries_filled",
            codebase=self.codebase_path,
            filled=filled,
            attempted=len(pending),
        )
        return filled
