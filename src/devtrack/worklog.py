"""
Worklog aggregation cache.

Groups the current user's commits by day, ISO week, calendar month or
branch and keeps one rendered digest per scope. Each digest records the
fingerprint of the commits it was built from (their sorted hashes) and is
returned verbatim while that fingerprint still matches. Digests are built
bottom-up: a week is composed from its day digests and a month from its
week digests, so regenerating a month reuses every cached day and week.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import structlog

from . import repository as repo
from .config import Settings
from .manager import ProfileStore
from .models import Commit, WorklogEntry
from .prompts import build_branch_prompt, build_day_prompt, build_month_prompt, build_week_prompt
from .summarizer import CollaboratorError, Summarizer, summarize_with_deadline

logger = structlog.get_logger(__name__)

ENTRY_TYPES = ("day", "week", "month", "branch")
GROUP_BY = ("date", "branch")

# entry_date recorded for branch-scoped entries
BRANCH_ENTRY_DATE = date(1970, 1, 1)


@dataclass(frozen=True)
class WorklogScope:
    """The window a worklog entry covers."""

    kind: str
    start: date
    branch_id: int = 0

    @classmethod
    def day(cls, day: date) -> "WorklogScope":
        return cls("day", day)

    @classmethod
    def week(cls, day: date) -> "WorklogScope":
        return cls("week", day - timedelta(days=day.weekday()))

    @classmethod
    def month(cls, day: date) -> "WorklogScope":
        return cls("month", day.replace(day=1))

    @classmethod
    def branch(cls, branch_id: int) -> "WorklogScope":
        return cls("branch", BRANCH_ENTRY_DATE, branch_id)

    @property
    def end(self) -> Optional[date]:
        """Exclusive end date, or None for branch scope."""
        if self.kind == "day":
            return self.start + timedelta(days=1)
        if self.kind == "week":
            return self.start + timedelta(days=7)
        if self.kind == "month":
            if self.start.month == 12:
                return date(self.start.year + 1, 1, 1)
            return date(self.start.year, self.start.month + 1, 1)
        return None


@dataclass
class WorklogResult:
    """Content for one scope plus how it was obtained."""

    scope: WorklogScope
    content: str = ""
    fingerprint: str = ""
    commit_count: int = 0
    additions: int = 0
    deletions: int = 0
    found: bool = False
    cached: bool = False
    pending: bool = False


@dataclass
class _CommitView:
    hash: str
    message: str
    summary: Optional[str]
    local_time: datetime
    additions: int
    deletions: int
    branch_name: str

    @property
    def title(self) -> str:
        return self.message.splitlines()[0] if self.message else ""


def fingerprint(hashes: list[str]) -> str:
    return ",".join(sorted(hashes))


def stats_line(commits: list[_CommitView]) -> str:
    additions = sum(c.additions for c in commits)
    deletions = sum(c.deletions for c in commits)
    noun = "commit" if len(commits) == 1 else "commits"
    return f"**{len(commits)} {noun}** | +{additions} / -{deletions} lines"


def render_commit_line(commit: _CommitView, show_branch: bool = True) -> str:
    line = f"- **{commit.local_time:%H:%M}** `{commit.hash[:7]}` {commit.title}"
    if commit.additions or commit.deletions:
        line += f" (+{commit.additions}/-{commit.deletions})"
    if show_branch and commit.branch_name:
        line += f" [{commit.branch_name}]"
    if commit.summary:
        line += f"\n  > {commit.summary}"
    return line


class WorklogCache:
    """Builds and caches worklog digests for one profile."""

    def __init__(
        self,
        store: ProfileStore,
        summarizer: Optional[Summarizer] = None,
        profile_name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.summarizer = summarizer
        self.profile_name = profile_name or store.name
        self.settings = settings or store.settings
        self.tz = self.settings.tz

    def _to_utc(self, day: date) -> datetime:
        local = datetime.combine(day, time.min, tzinfo=self.tz)
        return local.astimezone(timezone.utc).replace(tzinfo=None)

    def _local(self, value: datetime) -> datetime:
        return value.replace(tzinfo=timezone.utc).astimezone(self.tz)

    def _load(self, codebase_id: int, scope: WorklogScope, group_by: str):
        story = None
        with self.store.transaction() as session:
            if scope.kind == "branch":
                rows = repo.get_user_commits(session, codebase_id, branch_id=scope.branch_id)
                branch = repo.get_branch_by_id(session, scope.branch_id)
                story = branch.story if branch is not None else None
            else:
                rows = repo.get_user_commits(
                    session,
                    codebase_id,
                    start=self._to_utc(scope.start),
                    end=self._to_utc(scope.end),
                )
            names = {b.id: b.name for b in repo.list_branches(session, codebase_id)}
            entry = repo.get_worklog_entry(
                session,
                codebase_id,
                self.profile_name,
                scope.start,
                scope.kind,
                group_by,
                scope.branch_id,
            )
        commits = [self._view(row, names) for row in rows]
        return commits, entry, names, story

    def _view(self, row: Commit, names: dict[int, str]) -> _CommitView:
        return _CommitView(
            hash=row.hash,
            message=row.message,
            summary=row.summary,
            local_time=self._local(row.committed_at),
            additions=row.additions,
            deletions=row.deletions,
            branch_name=names.get(row.branch_id, "") if row.branch_id else "",
        )

    def get_or_build(
        self, codebase_id: int, scope: WorklogScope, group_by: str = "date"
    ) -> WorklogResult:
        """
        Return the digest for ``scope``, rebuilding it only if its commits changed.

        Args:
            codebase_id: Codebase whose commits are summarized
            scope: Day, week, month or branch scope
            group_by: "date" or "branch" layout for day sections

        Returns:
            WorklogResult; ``found`` is False when the scope has no commits
        """
        if scope.kind not in ENTRY_TYPES:
            raise ValueError(f"Unknown worklog scope '{scope.kind}'")
        if group_by not in GROUP_BY:
            raise ValueError(f"Unknown group_by '{group_by}', expected one of {GROUP_BY}")

        commits, entry, names, story = self._load(codebase_id, scope, group_by)
        result = WorklogResult(
            scope=scope,
            fingerprint=fingerprint([c.hash for c in commits]),
            commit_count=len(commits),
            additions=sum(c.additions for c in commits),
            deletions=sum(c.deletions for c in commits),
        )
        log = logger.bind(
            codebase_id=codebase_id, scope=scope.kind, start=str(scope.start), group_by=group_by
        )

        if not commits:
            if entry is not None:
                with self.store.transaction() as session:
                    repo.delete_worklog_entry(session, entry.id)
                log.info("worklog_entry_dropped")
            return result

        result.found = True
        # a digest stored without a narrative is rebuilt once a summarizer is available
        if (
            entry is not None
            and entry.fingerprint == result.fingerprint
            and (entry.has_narrative or self.summarizer is None)
        ):
            result.content = entry.content
            result.cached = True
            return result

        narrative = ""
        if scope.kind == "day":
            content, pending = self._build_day(scope, commits, group_by)
        elif scope.kind == "week":
            content, pending = self._build_week(codebase_id, scope, commits, group_by)
        elif scope.kind == "month":
            content, pending = self._build_month(codebase_id, scope, commits, group_by)
        else:
            content, pending, narrative = self._build_branch(scope, commits, names, story)

        result.content = content
        result.pending = pending
        if pending:
            log.warning("worklog_pending", commits=len(commits))
            return result

        with self.store.transaction() as session:
            repo.upsert_worklog_entry(
                session,
                WorklogEntry(
                    codebase_id=codebase_id,
                    profile_name=self.profile_name,
                    entry_date=scope.start,
                    branch_id=scope.branch_id,
                    entry_type=scope.kind,
                    group_by=group_by,
                    fingerprint=result.fingerprint,
                    commit_count=result.commit_count,
                    additions=result.additions,
                    deletions=result.deletions,
                    content=content,
                    has_narrative=self.summarizer is not None,
                ),
            )
            if narrative:
                repo.set_branch_summary(session, scope.branch_id, narrative)
        log.info("worklog_built", commits=len(commits))
        return result

    def _narrative(self, kind: str, prompt: str, key: str) -> tuple[str, bool]:
        """Collaborator text for a digest, and whether it is still pending."""
        if self.summarizer is None:
            return "", False
        try:
            text = summarize_with_deadline(
                self.summarizer, kind, prompt, self.settings.collaborator_timeout, key=key
            )
            return text.strip(), False
        except CollaboratorError as e:
            logger.warning("worklog_summary_failed", kind=kind, key=key, error=str(e))
            return "", True

    def _build_day(
        self, scope: WorklogScope, commits: list[_CommitView], group_by: str
    ) -> tuple[str, bool]:
        lines = [f"## {scope.start:%A, %B} {scope.start.day}, {scope.start.year}", ""]
        lines += [stats_line(commits), ""]

        narrative, pending = self._narrative(
            "day",
            build_day_prompt([f"- {c.title}" for c in commits]),
            key=str(scope.start),
        )
        if narrative:
            lines += [f"> {narrative}", ""]

        if group_by == "branch":
            by_branch: dict[str, list[_CommitView]] = defaultdict(list)
            for commit in commits:
                by_branch[commit.branch_name or "(unassigned)"].append(commit)
            for name in sorted(by_branch):
                lines += [f"### Branch: {name}", "", stats_line(by_branch[name]), ""]
                lines += [render_commit_line(c, show_branch=False) for c in by_branch[name]]
                lines.append("")
        else:
            lines += [render_commit_line(c) for c in commits]
            lines.append("")

        return "\n".join(lines).rstrip() + "\n", pending

    def _build_week(
        self,
        codebase_id: int,
        scope: WorklogScope,
        commits: list[_CommitView],
        group_by: str,
    ) -> tuple[str, bool]:
        days = sorted({c.local_time.date() for c in commits})
        children = [self.get_or_build(codebase_id, WorklogScope.day(d), group_by) for d in days]
        pending = any(child.pending for child in children)
        day_contents = [child.content for child in children if child.found]

        lines = [f"# Week of {scope.start:%B} {scope.start.day}, {scope.start.year}", ""]
        lines += [stats_line(commits), ""]
        narrative, failed = self._narrative(
            "week", build_week_prompt(day_contents), key=f"week {scope.start}"
        )
        if narrative:
            lines += [f"> {narrative}", ""]
        lines += day_contents
        return "\n".join(lines).rstrip() + "\n", pending or failed

    def _build_month(
        self,
        codebase_id: int,
        scope: WorklogScope,
        commits: list[_CommitView],
        group_by: str,
    ) -> tuple[str, bool]:
        # the ISO weeks holding this month's commits, in order
        weeks = sorted({WorklogScope.week(c.local_time.date()) for c in commits}, key=lambda w: w.start)
        children = [self.get_or_build(codebase_id, week, group_by) for week in weeks]
        pending = any(child.pending for child in children)
        week_contents = [child.content for child in children if child.found]

        lines = [f"# {scope.start:%B %Y}", "", stats_line(commits), ""]
        narrative, failed = self._narrative(
            "month", build_month_prompt(week_contents), key=f"month {scope.start:%Y-%m}"
        )
        if narrative:
            lines += [f"> {narrative}", ""]
        lines += week_contents
        return "\n".join(lines).rstrip() + "\n", pending or failed

    def _build_branch(
        self,
        scope: WorklogScope,
        commits: list[_CommitView],
        names: dict[int, str],
        story: Optional[str],
    ) -> tuple[str, bool, str]:
        name = names.get(scope.branch_id, f"#{scope.branch_id}")
        commit_lines = [
            f"- `{c.hash[:7]}` {c.title} ({c.local_time:%b %d})" for c in commits
        ]
        narrative, pending = self._narrative(
            "branch",
            build_branch_prompt(name, commit_lines, stats_line(commits)),
            key=f"branch {name}",
        )

        lines = [f"# Branch: {name}", ""]
        if story:
            lines += [f"*{story}*", ""]
        lines += [stats_line(commits), ""]
        if narrative:
            lines += [f"> {narrative}", ""]
        lines += commit_lines
        return "\n".join(lines).rstrip() + "\n", pending, narrative

    def list_worklog_dates(self, codebase_id: Optional[int] = None) -> list[repo.WorklogDateInfo]:
        """Per-date aggregates of stored day entries, read without the writer."""
        with self.store.read_session() as session:
            if session is None:
                return []
            return repo.list_worklog_dates(session, self.profile_name, codebase_id)

    def list_entries(
        self, codebase_id: int, entry_date: Optional[date] = None
    ) -> list[WorklogEntry]:
        with self.store.read_session() as session:
            if session is None:
                return []
            return repo.list_worklog_entries(
                session, self.profile_name, codebase_id, entry_date
            )
