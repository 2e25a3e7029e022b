"""
Database models for devtrack using SQLModel.

This module defines the tables that record codebases, their branches and
commits, the indexed working tree, ingestion cursors and cached worklogs.
Uses SQLModel for type-safe ORM with SQLite backend.
"""

import json
from datetime import date, datetime, timezone
from typing import Annotated, Optional

from pydantic import NaiveDatetime
from sqlalchemy import Column, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

# Naive UTC, mapped to a timezone-less DateTime column
UTCTimestamp = Annotated[datetime, NaiveDatetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the storage convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def embedding_to_json(vector: Optional[list[float]]) -> Optional[str]:
    if not vector:
        return None
    return json.dumps([float(x) for x in vector])


def embedding_from_json(data: Optional[str]) -> list[float]:
    if not data:
        return []
    return [float(x) for x in json.loads(data)]


class Developer(SQLModel, table=True):
    """
    Author identity, unique by email.

    Exactly one row may carry ``is_current_user``; that user's commits get
    summaries and embeddings.
    """

    __tablename__ = "developers"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(default="", description="Author display name")
    email: str = Field(index=True, unique=True, description="Author email")
    is_current_user: bool = Field(default=False)
    created_at: UTCTimestamp = Field(default_factory=utcnow)


class Codebase(SQLModel, table=True):
    """
    One tracked repository.

    Created on first ingest or index, updated thereafter and never
    implicitly deleted.
    """

    __tablename__ = "codebases"

    id: Optional[int] = Field(default=None, primary_key=True)
    path: str = Field(index=True, unique=True, description="Canonical absolute path")
    name: str = Field(description="Directory basename")
    summary: Optional[str] = Field(default=None, sa_column=Column(Text))
    tech_stack: Optional[str] = Field(
        default=None, description="JSON histogram of language to file count"
    )
    default_branch: str = Field(default="main")
    indexed_at: Optional[UTCTimestamp] = Field(default=None)
    created_at: UTCTimestamp = Field(default_factory=utcnow)

    def tech_stack_map(self) -> dict[str, int]:
        return json.loads(self.tech_stack) if self.tech_stack else {}


class Branch(SQLModel, table=True):
    """A named ref within a codebase and the commits it owns."""

    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("codebase_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    codebase_id: int = Field(foreign_key="codebases.id", index=True)
    name: str
    is_default: bool = Field(default=False)
    base_branch: Optional[str] = Field(
        default=None, description="Branch this one forked from"
    )
    summary: Optional[str] = Field(
        default=None, sa_column=Column(Text), description="Latest generated branch digest"
    )
    story: Optional[str] = Field(
        default=None, sa_column=Column(Text), description="User-written description"
    )
    status: str = Field(default="active", description="active or merged")
    first_commit_hash: Optional[str] = Field(default=None)
    last_commit_hash: Optional[str] = Field(default=None)
    commit_count: int = Field(default=0)
    created_at: UTCTimestamp = Field(default_factory=utcnow)
    updated_at: UTCTimestamp = Field(default_factory=utcnow)


class Commit(SQLModel, table=True):
    """
    One source-control commit.

    Owned by exactly one codebase and at most one branch; ownership is
    decided at ingestion and never revisited.
    """

    __tablename__ = "commits"
    __table_args__ = (UniqueConstraint("codebase_id", "hash"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    codebase_id: int = Field(foreign_key="codebases.id", index=True)
    branch_id: Optional[int] = Field(default=None, foreign_key="branches.id", index=True)
    hash: str = Field(description="Full commit hash")
    author_name: str = Field(default="")
    author_email: str = Field(index=True)
    message: str = Field(default="", sa_column=Column(Text))
    summary: Optional[str] = Field(
        default=None,
        sa_column=Column(Text),
        description="Generated summary; NULL means missing",
    )
    embedding: Optional[str] = Field(
        default=None, sa_column=Column(Text), description="JSON-serialized vector"
    )
    committed_at: UTCTimestamp = Field(index=True)
    additions: int = Field(default=0)
    deletions: int = Field(default=0)
    files_changed: int = Field(default=0)
    parent_count: int = Field(default=1)
    is_on_default_branch: bool = Field(default=False)
    is_user_commit: bool = Field(default=False, index=True)
    created_at: UTCTimestamp = Field(default_factory=utcnow)

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


class FileChange(SQLModel, table=True):
    """One file touched by a commit."""

    __tablename__ = "file_changes"

    id: Optional[int] = Field(default=None, primary_key=True)
    commit_id: int = Field(foreign_key="commits.id", index=True)
    file_path: str = Field(index=True)
    change_type: str = Field(description="add, delete, modify or rename")
    additions: int = Field(default=0)
    deletions: int = Field(default=0)
    patch: Optional[str] = Field(default=None, sa_column=Column(Text))


class Folder(SQLModel, table=True):
    """A directory of the working tree at index time. ``.`` is the root."""

    __tablename__ = "folders"
    __table_args__ = (UniqueConstraint("codebase_id", "path"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    codebase_id: int = Field(foreign_key="codebases.id", index=True)
    path: str
    name: str
    depth: int = Field(default=0)
    parent_path: Optional[str] = Field(default=None)
    summary: Optional[str] = Field(default=None, sa_column=Column(Text))
    purpose: Optional[str] = Field(default=None)
    file_count: int = Field(default=0)
    embedding: Optional[str] = Field(default=None, sa_column=Column(Text))
    indexed_at: UTCTimestamp = Field(default_factory=utcnow)


class FileIndex(SQLModel, table=True):
    """
    A file of the working tree at index time.

    ``content_hash`` is the sha256 fingerprint of the file's bytes and the
    only signal used to decide whether the file changed. A NULL hash marks
    a row whose summarization failed and must be retried.
    """

    __tablename__ = "file_indexes"
    __table_args__ = (UniqueConstraint("codebase_id", "path"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    codebase_id: int = Field(foreign_key="codebases.id", index=True)
    folder_id: Optional[int] = Field(default=None, foreign_key="folders.id")
    path: str
    name: str
    extension: str = Field(default="")
    language: Optional[str] = Field(default=None, index=True)
    size_bytes: int = Field(default=0)
    line_count: int = Field(default=0)
    summary: Optional[str] = Field(default=None, sa_column=Column(Text))
    purpose: Optional[str] = Field(default=None)
    key_exports: Optional[str] = Field(default=None, description="JSON list")
    content_hash: Optional[str] = Field(default=None)
    embedding: Optional[str] = Field(default=None, sa_column=Column(Text))
    indexed_at: UTCTimestamp = Field(default_factory=utcnow)

    def exports(self) -> list[str]:
        return json.loads(self.key_exports) if self.key_exports else []


class IngestCursor(SQLModel, table=True):
    """Last ingested commit per (codebase, branch); absence means never ingested."""

    __tablename__ = "ingest_cursors"
    __table_args__ = (UniqueConstraint("codebase_id", "branch_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    codebase_id: int = Field(foreign_key="codebases.id", index=True)
    branch_name: str
    last_commit_hash: str
    updated_at: UTCTimestamp = Field(default_factory=utcnow)


class WorklogEntry(SQLModel, table=True):
    """
    Cached worklog digest for one scope.

    ``fingerprint`` is the sorted, comma-joined hash list of the commits the
    digest was built from; the entry is reused while it matches.
    """

    __tablename__ = "worklog_entries"
    __table_args__ = (
        UniqueConstraint(
            "codebase_id",
            "profile_name",
            "entry_date",
            "branch_id",
            "entry_type",
            "group_by",
        ),
        Index("ix_worklog_lookup", "codebase_id", "profile_name", "entry_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    codebase_id: int = Field(foreign_key="codebases.id")
    profile_name: str
    entry_date: date = Field(description="First day of the scope")
    branch_id: int = Field(default=0, description="0 when not branch-scoped")
    entry_type: str = Field(description="day, week, month or branch")
    group_by: str = Field(default="date", description="date or branch")
    fingerprint: str = Field(default="", sa_column=Column(Text))
    commit_count: int = Field(default=0)
    additions: int = Field(default=0)
    deletions: int = Field(default=0)
    content: str = Field(default="", sa_column=Column(Text))
    has_narrative: bool = Field(
        default=False, description="Built with a summarizer, so it carries a narrative"
    )
    created_at: UTCTimestamp = Field(default_factory=utcnow)
