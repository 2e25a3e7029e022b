"""
Per-entity CRUD operations over a devtrack store.

Every function takes an open ``Session``; callers get one from
``ProfileStore.transaction()`` for writes or ``ProfileStore.read_session()``
for reads. Lookups of absent rows return None or an empty collection and
never raise.
"""

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select, text

from .database import StorageError
from .models import (
    Branch,
    Codebase,
    Commit,
    Developer,
    FileChange,
    FileIndex,
    Folder,
    IngestCursor,
    WorklogEntry,
    utcnow,
)


class RepositoryError(StorageError):
    """Base exception for CRUD operations."""

    pass


class ConflictError(RepositoryError):
    """Raised when an explicit create collides with an existing row."""

    pass


# Developers


def upsert_developer(session: Session, email: str, name: str = "") -> Developer:
    """Insert or update a developer by email, keeping the current-user flag."""
    developer = get_developer_by_email(session, email)
    if developer is None:
        developer = Developer(email=email, name=name)
        session.add(developer)
    elif name and developer.name != name:
        developer.name = name
        session.add(developer)
    session.flush()
    return developer


def get_developer_by_email(session: Session, email: str) -> Optional[Developer]:
    return session.exec(select(Developer).where(Developer.email == email)).first()


def set_current_user(session: Session, email: str) -> None:
    """Make ``email`` the only current user: clear every flag, then set one."""
    session.exec(update(Developer).values(is_current_user=False))
    session.exec(
        update(Developer).where(Developer.email == email).values(is_current_user=True)
    )


def get_current_user(session: Session) -> Optional[Developer]:
    return session.exec(select(Developer).where(Developer.is_current_user)).first()


def list_developers(session: Session) -> list[Developer]:
    return list(session.exec(select(Developer).order_by(Developer.email)).all())


# Codebases


def get_or_create_codebase(
    session: Session, path: str, name: str, default_branch: str = "main"
) -> Codebase:
    """Return the codebase stored at ``path``, creating it if absent."""
    codebase = get_codebase_by_path(session, path)
    if codebase is None:
        codebase = Codebase(path=path, name=name, default_branch=default_branch)
        session.add(codebase)
        session.flush()
    elif codebase.default_branch != default_branch:
        codebase.default_branch = default_branch
        session.add(codebase)
        session.flush()
    return codebase


def get_codebase_by_path(session: Session, path: str) -> Optional[Codebase]:
    return session.exec(select(Codebase).where(Codebase.path == path)).first()


def get_codebase(session: Session, codebase_id: int) -> Optional[Codebase]:
    return session.get(Codebase, codebase_id)


def list_codebases(session: Session) -> list[Codebase]:
    return list(session.exec(select(Codebase).order_by(Codebase.name)).all())


def update_codebase_index(
    session: Session,
    codebase_id: int,
    tech_stack: dict[str, int],
    summary: Optional[str] = None,
) -> None:
    codebase = session.get(Codebase, codebase_id)
    if codebase is None:
        return
    codebase.tech_stack = json.dumps(tech_stack, sort_keys=True)
    codebase.indexed_at = utcnow()
    if summary:
        codebase.summary = summary
    session.add(codebase)


# Branches


def get_branch(session: Session, codebase_id: int, name: str) -> Optional[Branch]:
    return session.exec(
        select(Branch).where(Branch.codebase_id == codebase_id, Branch.name == name)
    ).first()


def get_branch_by_id(session: Session, branch_id: int) -> Optional[Branch]:
    return session.get(Branch, branch_id)


def create_branch(session: Session, codebase_id: int, name: str, **fields: Any) -> Branch:
    """Create a branch record.

    Raises:
        ConflictError: If the codebase already has a branch with this name
    """
    if get_branch(session, codebase_id, name) is not None:
        raise ConflictError(f"Branch '{name}' already exists in codebase {codebase_id}")
    branch = Branch(codebase_id=codebase_id, name=name, **fields)
    session.add(branch)
    try:
        session.flush()
    except IntegrityError as e:
        raise ConflictError(
            f"Branch '{name}' already exists in codebase {codebase_id}: {str(e)}"
        ) from e
    return branch


def upsert_branch(session: Session, codebase_id: int, name: str, **fields: Any) -> Branch:
    """Insert or update a branch keyed on (codebase, name)."""
    branch = get_branch(session, codebase_id, name)
    if branch is None:
        branch = Branch(codebase_id=codebase_id, name=name, **fields)
    else:
        for key, value in fields.items():
            setattr(branch, key, value)
        branch.updated_at = utcnow()
    session.add(branch)
    session.flush()
    return branch


def clear_default_branch(session: Session, codebase_id: int) -> None:
    session.exec(
        update(Branch).where(Branch.codebase_id == codebase_id).values(is_default=False)
    )


def list_branches(session: Session, codebase_id: int) -> list[Branch]:
    """Branches of a codebase, default first, then most recently updated."""
    return list(
        session.exec(
            select(Branch)
            .where(Branch.codebase_id == codebase_id)
            .order_by(col(Branch.is_default).desc(), col(Branch.updated_at).desc())
        ).all()
    )


def get_branch_commits(session: Session, branch_id: int) -> list[Commit]:
    return list(
        session.exec(
            select(Commit)
            .where(Commit.branch_id == branch_id)
            .order_by(Commit.committed_at, Commit.id)
        ).all()
    )


def count_branch_commits(session: Session, branch_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(Commit).where(Commit.branch_id == branch_id)
    ).one()


def set_branch_summary(session: Session, branch_id: int, summary: str) -> None:
    session.exec(update(Branch).where(Branch.id == branch_id).values(summary=summary))


def set_branch_story(
    session: Session, codebase_id: int, name: str, story: Optional[str]
) -> Branch:
    """Record a user-written description for a branch.

    Cached branch digests render the story, so they are dropped and rebuilt
    on the next request.

    Raises:
        RepositoryError: If the codebase has no branch with this name
    """
    branch = get_branch(session, codebase_id, name)
    if branch is None:
        raise RepositoryError(f"Branch '{name}' not found in codebase {codebase_id}")
    branch.story = story or None
    branch.updated_at = utcnow()
    session.add(branch)
    session.exec(
        delete(WorklogEntry).where(
            WorklogEntry.entry_type == "branch", WorklogEntry.branch_id == branch.id
        )
    )
    session.flush()
    return branch


# Commits


def add_commit(session: Session, commit: Commit) -> Commit:
    session.add(commit)
    session.flush()
    return commit


def commit_exists(session: Session, codebase_id: int, hash: str) -> bool:
    return get_commit_by_hash(session, codebase_id, hash) is not None


def get_commit_by_hash(session: Session, codebase_id: int, hash: str) -> Optional[Commit]:
    return session.exec(
        select(Commit).where(Commit.codebase_id == codebase_id, Commit.hash == hash)
    ).first()


def get_existing_commit_hashes(session: Session, codebase_id: int) -> set[str]:
    return set(
        session.exec(select(Commit.hash).where(Commit.codebase_id == codebase_id)).all()
    )


def get_commit_count(session: Session, codebase_id: Optional[int] = None) -> int:
    statement = select(func.count()).select_from(Commit)
    if codebase_id is not None:
        statement = statement.where(Commit.codebase_id == codebase_id)
    return session.exec(statement).one()


def get_user_commits(
    session: Session,
    codebase_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    branch_id: Optional[int] = None,
) -> list[Commit]:
    """User commits of a codebase in ``[start, end)``, oldest first."""
    statement = select(Commit).where(
        Commit.codebase_id == codebase_id, Commit.is_user_commit
    )
    if start is not None:
        statement = statement.where(Commit.committed_at >= start)
    if end is not None:
        statement = statement.where(Commit.committed_at < end)
    if branch_id is not None:
        statement = statement.where(Commit.branch_id == branch_id)
    return list(session.exec(statement.order_by(Commit.committed_at, Commit.hash)).all())


def get_user_commits_missing_summaries(
    session: Session, codebase_id: int, limit: Optional[int] = None
) -> list[Commit]:
    statement = (
        select(Commit)
        .where(
            Commit.codebase_id == codebase_id,
            Commit.is_user_commit,
            or_(col(Commit.summary).is_(None), Commit.summary == ""),
        )
        .order_by(Commit.committed_at)
    )
    if limit is not None:
        statement = statement.limit(limit)
    return list(session.exec(statement).all())


def update_commit_summary(
    session: Session, commit_id: int, summary: str, embedding: Optional[str] = None
) -> None:
    values: dict[str, Any] = {"summary": summary}
    if embedding is not None:
        values["embedding"] = embedding
    session.exec(update(Commit).where(Commit.id == commit_id).values(**values))


# File changes


def add_file_change(session: Session, change: FileChange) -> FileChange:
    session.add(change)
    return change


def get_file_changes(session: Session, commit_id: int) -> list[FileChange]:
    return list(
        session.exec(
            select(FileChange)
            .where(FileChange.commit_id == commit_id)
            .order_by(FileChange.file_path)
        ).all()
    )


# Ingest cursors


def get_cursor(session: Session, codebase_id: int, branch_name: str) -> Optional[str]:
    cursor = session.exec(
        select(IngestCursor).where(
            IngestCursor.codebase_id == codebase_id,
            IngestCursor.branch_name == branch_name,
        )
    ).first()
    return cursor.last_commit_hash if cursor else None


def update_cursor(
    session: Session, codebase_id: int, branch_name: str, last_commit_hash: str
) -> IngestCursor:
    cursor = session.exec(
        select(IngestCursor).where(
            IngestCursor.codebase_id == codebase_id,
            IngestCursor.branch_name == branch_name,
        )
    ).first()
    if cursor is None:
        cursor = IngestCursor(
            codebase_id=codebase_id,
            branch_name=branch_name,
            last_commit_hash=last_commit_hash,
        )
    else:
        cursor.last_commit_hash = last_commit_hash
        cursor.updated_at = utcnow()
    session.add(cursor)
    return cursor


def list_cursors(session: Session, codebase_id: int) -> dict[str, str]:
    rows = session.exec(
        select(IngestCursor).where(IngestCursor.codebase_id == codebase_id)
    ).all()
    return {row.branch_name: row.last_commit_hash for row in rows}


def reset_cursors(
    session: Session, codebase_id: int, branch_name: Optional[str] = None
) -> int:
    """Explicitly drop cursors so the next ingest rescans from the start."""
    statement = delete(IngestCursor).where(IngestCursor.codebase_id == codebase_id)
    if branch_name is not None:
        statement = statement.where(IngestCursor.branch_name == branch_name)
    return session.exec(statement).rowcount


# Folders


def upsert_folder(session: Session, codebase_id: int, path: str, **fields: Any) -> Folder:
    folder = get_folder_by_path(session, codebase_id, path)
    if folder is None:
        folder = Folder(codebase_id=codebase_id, path=path, **fields)
    else:
        for key, value in fields.items():
            setattr(folder, key, value)
        folder.indexed_at = utcnow()
    session.add(folder)
    session.flush()
    return folder


def get_folder_by_path(session: Session, codebase_id: int, path: str) -> Optional[Folder]:
    return session.exec(
        select(Folder).where(Folder.codebase_id == codebase_id, Folder.path == path)
    ).first()


def list_folders(session: Session, codebase_id: int) -> list[Folder]:
    return list(
        session.exec(
            select(Folder)
            .where(Folder.codebase_id == codebase_id)
            .order_by(Folder.depth, Folder.path)
        ).all()
    )


def get_existing_folders(session: Session, codebase_id: int) -> dict[str, Folder]:
    return {folder.path: folder for folder in list_folders(session, codebase_id)}


def delete_folders_by_paths(session: Session, codebase_id: int, paths: Iterable[str]) -> int:
    paths = list(paths)
    if not paths:
        return 0
    # Detach files first so the foreign key never points at a deleted folder
    folder_ids = select(Folder.id).where(
        Folder.codebase_id == codebase_id, col(Folder.path).in_(paths)
    )
    session.exec(
        update(FileIndex)
        .where(col(FileIndex.folder_id).in_(folder_ids))
        .values(folder_id=None)
    )
    return session.exec(
        delete(Folder).where(Folder.codebase_id == codebase_id, col(Folder.path).in_(paths))
    ).rowcount


# File indexes


def upsert_file_index(
    session: Session, codebase_id: int, path: str, **fields: Any
) -> FileIndex:
    file_index = get_file_by_path(session, codebase_id, path)
    if file_index is None:
        file_index = FileIndex(codebase_id=codebase_id, path=path, **fields)
    else:
        for key, value in fields.items():
            setattr(file_index, key, value)
        file_index.indexed_at = utcnow()
    session.add(file_index)
    session.flush()
    return file_index


def get_file_by_path(session: Session, codebase_id: int, path: str) -> Optional[FileIndex]:
    return session.exec(
        select(FileIndex).where(FileIndex.codebase_id == codebase_id, FileIndex.path == path)
    ).first()


def list_files(session: Session, codebase_id: int) -> list[FileIndex]:
    return list(
        session.exec(
            select(FileIndex)
            .where(FileIndex.codebase_id == codebase_id)
            .order_by(FileIndex.path)
        ).all()
    )


def get_existing_file_hashes(session: Session, codebase_id: int) -> dict[str, Optional[str]]:
    rows = session.exec(
        select(FileIndex.path, FileIndex.content_hash).where(
            FileIndex.codebase_id == codebase_id
        )
    ).all()
    return {path: content_hash for path, content_hash in rows}


def delete_file_indexes_by_paths(
    session: Session, codebase_id: int, paths: Iterable[str]
) -> int:
    paths = list(paths)
    if not paths:
        return 0
    return session.exec(
        delete(FileIndex).where(
            FileIndex.codebase_id == codebase_id, col(FileIndex.path).in_(paths)
        )
    ).rowcount


def has_embeddings(session: Session, codebase_id: int, kind: str = "file") -> bool:
    model = Folder if kind == "folder" else FileIndex
    row = session.exec(
        select(model.id)
        .where(
            model.codebase_id == codebase_id,
            col(model.embedding).is_not(None),
            model.embedding != "",
        )
        .limit(1)
    ).first()
    return row is not None


# Statistics


@dataclass
class CodebaseStats:
    """Aggregate index figures for one codebase."""

    folder_count: int = 0
    file_count: int = 0
    total_bytes: int = 0
    total_lines: int = 0
    languages: dict[str, int] = field(default_factory=dict)


def get_codebase_stats(session: Session, codebase_id: int) -> CodebaseStats:
    stats = CodebaseStats()
    stats.folder_count = session.exec(
        select(func.count()).select_from(Folder).where(Folder.codebase_id == codebase_id)
    ).one()

    count, total_bytes, total_lines = session.exec(
        select(
            func.count(),
            func.coalesce(func.sum(FileIndex.size_bytes), 0),
            func.coalesce(func.sum(FileIndex.line_count), 0),
        ).where(FileIndex.codebase_id == codebase_id)
    ).one()
    stats.file_count = int(count)
    stats.total_bytes = int(total_bytes)
    stats.total_lines = int(total_lines)

    rows = session.exec(
        select(FileIndex.language, func.count())
        .where(FileIndex.codebase_id == codebase_id, col(FileIndex.language).is_not(None))
        .group_by(FileIndex.language)
    ).all()
    stats.languages = {language: int(n) for language, n in rows}
    return stats


# Worklog entries


def get_worklog_entry(
    session: Session,
    codebase_id: int,
    profile_name: str,
    entry_date: date,
    entry_type: str,
    group_by: str,
    branch_id: int = 0,
) -> Optional[WorklogEntry]:
    return session.exec(
        select(WorklogEntry).where(
            WorklogEntry.codebase_id == codebase_id,
            WorklogEntry.profile_name == profile_name,
            WorklogEntry.entry_date == entry_date,
            WorklogEntry.branch_id == branch_id,
            WorklogEntry.entry_type == entry_type,
            WorklogEntry.group_by == group_by,
        )
    ).first()


def upsert_worklog_entry(session: Session, entry: WorklogEntry) -> WorklogEntry:
    """Store ``entry``, replacing any entry with the same scope key."""
    existing = get_worklog_entry(
        session,
        entry.codebase_id,
        entry.profile_name,
        entry.entry_date,
        entry.entry_type,
        entry.group_by,
        entry.branch_id,
    )
    if existing is None:
        session.add(entry)
        session.flush()
        return entry

    existing.fingerprint = entry.fingerprint
    existing.commit_count = entry.commit_count
    existing.additions = entry.additions
    existing.deletions = entry.deletions
    existing.content = entry.content
    existing.has_narrative = entry.has_narrative
    existing.created_at = utcnow()
    session.add(existing)
    session.flush()
    return existing


def delete_worklog_entry(session: Session, entry_id: int) -> None:
    session.exec(delete(WorklogEntry).where(WorklogEntry.id == entry_id))


@dataclass
class WorklogDateInfo:
    """Aggregate of the day entries stored for one date.

    ``entry_count`` counts the stored layouts (date, branch) of that day;
    the commit and line totals are the day's, not their sum.
    """

    entry_date: date
    entry_count: int
    commit_count: int
    additions: int
    deletions: int


def list_worklog_dates(
    session: Session, profile_name: str, codebase_id: Optional[int] = None
) -> list[WorklogDateInfo]:
    """Per-date aggregates of stored day entries, newest first.

    Week, month and branch entries are keyed on a start or sentinel date
    and would inflate a day's totals, so they are left out.
    """
    statement = select(
        WorklogEntry.entry_date,
        func.count(),
        func.max(WorklogEntry.commit_count),
        func.max(WorklogEntry.additions),
        func.max(WorklogEntry.deletions),
    ).where(
        WorklogEntry.profile_name == profile_name,
        WorklogEntry.entry_type == "day",
    )
    if codebase_id is not None:
        statement = statement.where(WorklogEntry.codebase_id == codebase_id)
    statement = statement.group_by(WorklogEntry.entry_date, WorklogEntry.codebase_id)

    # Layouts of one day cover the same commits; codebases add up
    by_date: dict[date, WorklogDateInfo] = {}
    for row in session.exec(statement).all():
        info = by_date.setdefault(row[0], WorklogDateInfo(row[0], 0, 0, 0, 0))
        info.entry_count += int(row[1])
        info.commit_count += int(row[2] or 0)
        info.additions += int(row[3] or 0)
        info.deletions += int(row[4] or 0)
    return sorted(by_date.values(), key=lambda info: info.entry_date, reverse=True)


def list_worklog_entries(
    session: Session,
    profile_name: str,
    codebase_id: int,
    entry_date: Optional[date] = None,
) -> list[WorklogEntry]:
    statement = select(WorklogEntry).where(
        WorklogEntry.profile_name == profile_name,
        WorklogEntry.codebase_id == codebase_id,
    )
    if entry_date is not None:
        statement = statement.where(WorklogEntry.entry_date == entry_date)
    return list(
        session.exec(
            statement.order_by(
                col(WorklogEntry.entry_date).desc(),
                WorklogEntry.entry_type,
                WorklogEntry.branch_id,
            )
        ).all()
    )


# Raw passthrough


def execute_query(
    session: Session, sql: str, params: Optional[dict[str, Any]] = None
) -> list[dict[str, Any]]:
    """Run raw SQL and return rows as dictionaries.

    Raises:
        RepositoryError: If the statement fails
    """
    try:
        result = session.exec(text(sql).bindparams(**(params or {})))
        if not result.returns_rows:
            return []
        return [dict(row._mapping) for row in result.all()]
    except Exception as e:
        raise RepositoryError(f"Query failed: {str(e)}") from e
