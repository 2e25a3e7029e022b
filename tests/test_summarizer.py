"""
Tests for the summarization collaborator wrappers and prompt parsing.
"""

import threading
import time

import pytest

from devtrack.prompts import (
    MAX_LISTED_FILES,
    build_commit_prompt,
    build_file_prompt,
    parse_codebase_summary,
    parse_file_summary,
)
from devtrack.summarizer import (
    CollaboratorError,
    CollaboratorTimeoutError,
    CompletionSummarizer,
    call_with_deadline,
    embed_with_deadline,
    summarize_with_deadline,
)


class TestDeadlines:
    """Test deadline enforcement around collaborator calls."""

    def test_returns_value(self):
        """Test a call that finishes in time."""
        assert call_with_deadline(lambda x: x * 2, 1.0, 21) == 42

    def test_timeout(self):
        """Test that a stalled call raises CollaboratorTimeoutError."""
        started = time.monotonic()
        with pytest.raises(CollaboratorTimeoutError) as excinfo:
            call_with_deadline(time.sleep, 0.05, 0.5, key="src/app.py")
        assert time.monotonic() - started < 0.4
        assert excinfo.value.key == "src/app.py"

    def test_stalled_calls_do_not_starve_later_ones(self):
        """Test that calls abandoned at their deadline leave room for new calls."""
        release = threading.Event()
        try:
            for i in range(6):
                with pytest.raises(CollaboratorTimeoutError):
                    call_with_deadline(release.wait, 0.05, 10, key=f"stalled-{i}")

            assert call_with_deadline(lambda: "ok", 0.5, key="fast") == "ok"
        finally:
            release.set()

    def test_failure_is_wrapped(self):
        """Test that provider exceptions become CollaboratorError."""

        def broken(_):
            raise ConnectionError("provider down")

        with pytest.raises(CollaboratorError, match="provider down"):
            call_with_deadline(broken, 1.0, "x", key="abc123")


class TestCompletionSummarizer:
    """Test the callable adapter."""

    def test_summarize_and_embed(self):
        """Test that both callables are used."""
        summarizer = CompletionSummarizer(lambda prompt: f"  {prompt[:5]}  ", lambda t: (1, 2))
        assert summarizer.supports_embeddings is True
        assert summarize_with_deadline(summarizer, "commit", "hello world", 1.0) == "hello"
        assert embed_with_deadline(summarizer, "x", 1.0) == [1, 2]

    def test_without_embeddings(self):
        """Test that embedding is skipped when unsupported."""
        summarizer = CompletionSummarizer(lambda prompt: "ok")
        assert summarizer.supports_embeddings is False
        assert embed_with_deadline(summarizer, "x", 1.0) is None


class TestPrompts:
    """Test prompt building and reply parsing."""

    def test_file_reply(self):
        """Test parsing a numbered three-line reply."""
        parsed = parse_file_summary(
            "1. SUMMARY: Parses config\n2. PURPOSE: Configuration\n3. EXPORTS: load, save"
        )
        assert parsed.summary == "Parses config"
        assert parsed.purpose == "Configuration"
        assert parsed.key_exports == ["load", "save"]

    def test_file_reply_fallback(self):
        """Test that an unstructured reply keeps its first line as summary."""
        parsed = parse_file_summary("Just some text\nmore")
        assert parsed.summary == "Just some text"
        assert parsed.key_exports == []

    def test_exports_none(self):
        """Test that an explicit empty export list is ignored."""
        assert parse_file_summary("SUMMARY: x\nEXPORTS: None").key_exports == []

    def test_codebase_reply(self):
        """Test extracting the codebase summary line."""
        assert parse_codebase_summary("SUMMARY: A CLI tool\nTECH: Python") == "A CLI tool"
        assert parse_codebase_summary("  free text  ") == "free text"

    def test_commit_prompt_limits_files(self):
        """Test that long file lists are truncated."""
        files = [f"f{i}.py" for i in range(MAX_LISTED_FILES + 5)]
        prompt = build_commit_prompt("Refactor", files, "+x")
        assert "f0.py" in prompt
        assert f"f{MAX_LISTED_FILES + 4}.py" not in prompt

    def test_file_prompt(self):
        """Test the file prompt header."""
        prompt = build_file_prompt("src/app.py", "Python", "print(1)")
        assert "File: src/app.py" in prompt
        assert "Language: Python" in prompt
