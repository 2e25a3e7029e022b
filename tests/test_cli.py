"""
CLI integration tests using Typer CliRunner with real repositories.

Every test points DEVTRACK_HOME at a temporary directory, so commands run
against a fresh profile store.
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from devtrack.main import app

from conftest import OTHER_EMAIL, USER_EMAIL, RepoBuilder

BODY = "def handler(request):\n    return {'status': 'ok'}\n" * 4


class TestCLI:
    """Test CLI commands against a real git repository."""

    @pytest.fixture(autouse=True)
    def environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DEVTRACK_HOME", str(tmp_path / "home"))
        monkeypatch.setenv("DEVTRACK_USER_EMAIL", USER_EMAIL)
        monkeypatch.setenv("DEVTRACK_LOCK_TIMEOUT", "0.5")
        monkeypatch.setenv("DEVTRACK_LOG_LEVEL", "WARNING")
        monkeypatch.delenv("DEVTRACK_PROFILE", raising=False)
        self.runner = CliRunner()

    @pytest.fixture
    def project(self, repo_builder: RepoBuilder) -> RepoBuilder:
        repo_builder.commit("Add app", files={"app.py": BODY}, when="2024-01-01T09:00:00")
        repo_builder.commit("Add util", files={"util.py": BODY}, when="2024-01-01T11:00:00")
        repo_builder.commit("Docs", email=OTHER_EMAIL, when="2024-01-02T10:00:00")
        repo_builder.branch("feature")
        repo_builder.commit("Feature work", when="2024-01-03T10:00:00")
        repo_builder.checkout("main")
        return repo_builder

    def invoke(self, *args: str):
        return self.runner.invoke(app, list(args))

    def test_help_command(self):
        """Test that CLI shows help correctly."""
        result = self.invoke("--help")
        assert result.exit_code == 0
        assert "Developer Activity Tracker" in result.output
        for command in ("ingest", "index", "search", "worklog", "profile"):
            assert command in result.output

    def test_version(self):
        """Test the version flag."""
        result = self.invoke("--version")
        assert result.exit_code == 0
        assert "devtrack" in result.output

    def test_profiles(self):
        """Test creating and listing profiles."""
        result = self.invoke("profile", "list")
        assert result.exit_code == 0
        assert "No profiles found" in result.output

        result = self.invoke("profile", "create", "work")
        assert result.exit_code == 0
        assert "✅ Created profile work" in result.output

        result = self.invoke("profile", "list")
        assert "work" in result.output

        result = self.invoke("profile", "create", "work")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_invalid_profile_name(self):
        """Test that an unsafe profile name is rejected."""
        result = self.invoke("profile", "create", "../escape")
        assert result.exit_code == 1
        assert "Invalid profile name" in result.output

    def test_ingest_twice(self, project: RepoBuilder):
        """Test ingesting a repository and re-running with nothing new."""
        result = self.invoke("ingest", str(project.path))
        assert result.exit_code == 0, result.output
        assert "✅ 4 new commits" in result.output
        assert "feature" in result.output

        result = self.invoke("ingest", str(project.path))
        assert result.exit_code == 0
        assert "✅ 0 new commits" in result.output

    def test_ingest_selected_branch_and_since(self, project: RepoBuilder):
        """Test branch selection and the since cutoff."""
        result = self.invoke(
            "ingest", str(project.path), "-b", "feature", "--since", "2024-01-02"
        )
        assert result.exit_code == 0, result.output
        assert "✅ 2 new commits" in result.output

    def test_ingest_errors(self, project: RepoBuilder, tmp_path: Path):
        """Test failures for bad paths, branches and dates."""
        plain = tmp_path / "plain"
        plain.mkdir()
        result = self.invoke("ingest", str(plain))
        assert result.exit_code == 1
        assert "Ingest failed" in result.output

        result = self.invoke("ingest", str(project.path), "-b", "nope")
        assert result.exit_code == 1
        assert "nope" in result.output

        result = self.invoke("ingest", str(project.path), "--since", "yesterday")
        assert result.exit_code == 1
        assert "Invalid date" in result.output

    def test_index_stats_and_search(self, project: RepoBuilder):
        """Test indexing, statistics and text search without a summarizer."""
        result = self.invoke("search", "app", "--path", str(project.path))
        assert "No index found" in result.output

        result = self.invoke("index", str(project.path))
        assert result.exit_code == 0, result.output
        assert "✅ Indexed project:" in result.output
        assert "0 unchanged" in result.output

        result = self.invoke("index", str(project.path))
        assert "0 new" in result.output

        result = self.invoke("stats", str(project.path))
        assert result.exit_code == 0
        assert "Files" in result.output
        assert "Python" in result.output

        result = self.invoke("search", "util", "--path", str(project.path))
        assert result.exit_code == 0
        assert "util.py" in result.output
        assert "text" in result.output

        result = self.invoke("search", "util", "--path", str(project.path), "--kind", "commit")
        assert result.exit_code == 1

    def test_worklog(self, project: RepoBuilder):
        """Test worklog output, listing and the empty case."""
        result = self.invoke("worklog", str(project.path), "--day", "2024-01-01")
        assert "No commits ingested" in result.output

        self.invoke("ingest", str(project.path))

        result = self.invoke("worklog", str(project.path), "--day", "2024-01-01")
        assert result.exit_code == 0, result.output
        assert "## Monday, January 1, 2024" in result.output
        assert "**2 commits**" in result.output

        result = self.invoke("worklog", str(project.path), "--week", "2024-01-03")
        assert result.exit_code == 0
        assert "# Week of January 1, 2024" in result.output

        result = self.invoke("worklog", str(project.path), "--branch", "feature")
        assert result.exit_code == 0
        assert "# Branch: feature" in result.output

        result = self.invoke("worklog", str(project.path), "--day", "2023-06-01")
        assert "No commits in this period" in result.output

        result = self.invoke("worklog", str(project.path), "--branch", "nope")
        assert result.exit_code == 1
        assert "Unknown branch" in result.output

        result = self.invoke("worklogs", str(project.path))
        assert result.exit_code == 0
        assert "2024-01-01" in result.output

    def test_branch_show_and_story(self, project: RepoBuilder):
        """Test describing a branch and seeing the story in its worklog."""
        self.invoke("ingest", str(project.path))

        result = self.invoke(
            "branch", "story", "feature", "Login rework", "--path", str(project.path)
        )
        assert result.exit_code == 0, result.output
        assert "✅ Updated story for feature" in result.output

        result = self.invoke("branch", "show", "feature", "--path", str(project.path))
        assert result.exit_code == 0, result.output
        assert "Login rework" in result.output
        assert "Feature work" in result.output

        result = self.invoke("worklog", str(project.path), "--branch", "feature")
        assert "*Login rework*" in result.output

        result = self.invoke("branch", "show", "nope", "--path", str(project.path))
        assert result.exit_code == 1
        assert "Unknown branch" in result.output

        result = self.invoke("branch", "story", "nope", "x", "--path", str(project.path))
        assert result.exit_code == 1

    def test_worklogs_empty(self, project: RepoBuilder):
        """Test listing before anything was built."""
        result = self.invoke("worklogs", str(project.path))
        assert "No worklog entries stored" in result.output

    def test_query(self, project: RepoBuilder):
        """Test the raw read-only query command."""
        result = self.invoke("query", "SELECT 1")
        assert result.exit_code == 1

        self.invoke("ingest", str(project.path))
        result = self.invoke("query", "SELECT COUNT(*) AS n FROM commits")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == [{"n": 4}]

        result = self.invoke("query", "DELETE FROM commits")
        assert result.exit_code == 1
