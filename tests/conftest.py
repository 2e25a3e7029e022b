"""
Shared fixtures: isolated settings, a fresh ConnectionManager per test,
local git repositories built with GitPython, and a recording summarizer.
"""

import hashlib
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest
import structlog
from git import Actor, Repo

from devtrack.config import Settings
from devtrack.manager import ConnectionManager
from devtrack.summarizer import Summarizer

USER_EMAIL = "me@example.com"
OTHER_EMAIL = "colleague@example.com"


class FakeSummarizer(Summarizer):
    """Summarizer that records every call and can fail, stall or embed."""

    def __init__(
        self,
        embeddings: bool = True,
        fail_kinds: tuple[str, ...] = (),
        fail_when: Optional[str] = None,
        delay: float = 0.0,
    ):
        self.supports_embeddings = embeddings
        self.fail_kinds = set(fail_kinds)
        self.fail_when = fail_when
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.embed_calls: list[str] = []

    def summarize(self, kind: str, context_text: str) -> str:
        self.calls.append((kind, context_text))
        if self.delay:
            time.sleep(self.delay)
        if kind in self.fail_kinds or (self.fail_when and self.fail_when in context_text):
            raise RuntimeError(f"provider refused {kind}")
        if kind in ("file", "folder", "codebase"):
            first = context_text.splitlines()[2] if len(context_text.splitlines()) > 2 else ""
            return f"SUMMARY: summary of {first}\nPURPOSE: testing\nEXPORTS: alpha, beta"
        return f"{kind} digest #{len(self.calls)}"

    def embed(self, text: str) -> Optional[list[float]]:
        if not self.supports_embeddings:
            return None
        self.embed_calls.append(text)
        digest = hashlib.sha256(text.encode()).digest()
        return [b / 255.0 for b in digest[:8]]

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]

    def reset(self) -> None:
        self.calls.clear()
        self.embed_calls.clear()


def git_date(when: str) -> str:
    """ISO timestamp (UTC) in git's internal "<epoch> <offset>" form."""
    moment = datetime.fromisoformat(when).replace(tzinfo=timezone.utc)
    return f"{int(moment.timestamp())} +0000"


class RepoBuilder:
    """Builds a local git repository commit by commit."""

    def __init__(self, path: Path, initial_branch: str = "main"):
        self.path = path
        self.repo = Repo.init(path, initial_branch=initial_branch)
        self.hashes: dict[str, str] = {}

    def commit(
        self,
        label: str,
        files: Optional[dict[str, str]] = None,
        email: str = USER_EMAIL,
        name: str = "Me",
        when: str = "2024-01-01T10:00:00",
    ) -> str:
        files = files or {f"{label.lower()}.txt": f"content {label}\n"}
        for rel, content in files.items():
            target = self.path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
            self.repo.index.add([rel])
        actor = Actor(name, email)
        commit = self.repo.index.commit(
            label,
            author=actor,
            committer=actor,
            author_date=git_date(when),
            commit_date=git_date(when),
        )
        self.hashes[label] = commit.hexsha
        return commit.hexsha

    def branch(self, name: str, at: Optional[str] = None) -> None:
        start = self.repo.commit(self.hashes[at]) if at else self.repo.head.commit
        self.repo.create_head(name, start).checkout()

    def checkout(self, name: str) -> None:
        self.repo.heads[name].checkout()

    def merge(self, name: str, label: str, when: str = "2024-01-05T10:00:00") -> str:
        """Merge ``name`` into the current branch with a merge commit."""
        self.repo.git.merge(
            name,
            "--no-ff",
            "-m",
            label,
            env={
                "GIT_AUTHOR_DATE": git_date(when),
                "GIT_COMMITTER_DATE": git_date(when),
                "GIT_AUTHOR_NAME": "Me",
                "GIT_AUTHOR_EMAIL": USER_EMAIL,
                "GIT_COMMITTER_NAME": "Me",
                "GIT_COMMITTER_EMAIL": USER_EMAIL,
            },
        )
        sha = self.repo.head.commit.hexsha
        self.hashes[label] = sha
        return sha


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop logging configuration bound to a CLI runner's streams."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        home=tmp_path / "home",
        profile="test",
        user_email=USER_EMAIL,
        user_name="Me",
        github_username="me-gh",
        lock_timeout=0.3,
        collaborator_timeout=2.0,
        _env_file=None,
    )


@pytest.fixture
def manager(settings: Settings):
    with ConnectionManager(settings) as mgr:
        yield mgr


@pytest.fixture
def store(manager: ConnectionManager):
    return manager.for_profile()


@pytest.fixture
def repo_builder(tmp_path: Path) -> RepoBuilder:
    path = tmp_path / "project"
    path.mkdir()
    return RepoBuilder(path)


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


def ts(value: str) -> datetime:
    return datetime.fromisoformat(value)
