"""
Tests for semantic search: cosine ranking, the text fallback and result
formatting.
"""

import math
from datetime import datetime

import pytest
from rich.console import Console
from rich.table import Table

from devtrack import repository as repo
from devtrack.models import Commit, embedding_to_json
from devtrack.search import (
    SearchResponse,
    SearchResult,
    SearchResultFormatter,
    SemanticSearcher,
    cosine_similarity,
    rank,
)
from devtrack.summarizer import EmbeddingsUnavailableError

from conftest import FakeSummarizer


class FixedSummarizer(FakeSummarizer):
    """Embeds every text as the same vector."""

    def __init__(self, vector: list[float] | None, embeddings: bool = True):
        super().__init__(embeddings=embeddings)
        self.vector = vector

    def embed(self, text: str):
        self.embed_calls.append(text)
        return self.vector


@pytest.fixture
def codebase_id(store) -> int:
    with store.transaction() as session:
        codebase = repo.get_or_create_codebase(session, "/tmp/search", "search")
        rows = [
            ("auth/login.py", "Handles user login", [1.0, 0.0, 0.0]),
            ("auth/tokens.py", "Issues session tokens", [0.9, 0.1, 0.0]),
            ("billing/invoice.py", "Builds invoices", [0.0, 1.0, 0.0]),
            ("billing/tax.py", "Computes tax", [0.0, 1.0, 0.0]),
            ("README.md", "Project overview", None),
        ]
        for path, summary, vector in rows:
            repo.upsert_file_index(
                session,
                codebase.id,
                path,
                name=path.rsplit("/", 1)[-1],
                summary=summary,
                purpose="testing",
                embedding=embedding_to_json(vector) if vector else None,
            )
        repo.upsert_folder(
            session,
            codebase.id,
            "auth",
            name="auth",
            summary="Authentication",
            embedding=embedding_to_json([1.0, 0.0, 0.0]),
        )
        return codebase.id


@pytest.fixture
def searcher(store, codebase_id: int):
    engine = store.reader()
    yield SemanticSearcher(engine)
    engine.dispose()


class TestCosine:
    """Test the similarity function and its degenerate cases."""

    def test_self_similarity(self):
        """Test that a vector is fully similar to itself."""
        assert math.isclose(cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]), 1.0)

    def test_orthogonal_and_opposite(self):
        """Test orthogonal and opposite vectors."""
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
        assert math.isclose(cosine_similarity([1.0, 0.0], [-1.0, 0.0]), -1.0)

    @pytest.mark.parametrize(
        "a, b",
        [
            ([], [1.0]),
            ([1.0, 2.0], []),
            ([1.0, 2.0], [1.0, 2.0, 3.0]),
            ([0.0, 0.0], [1.0, 1.0]),
        ],
    )
    def test_degenerate_inputs(self, a, b):
        """Test that empty, mismatched or zero vectors score zero."""
        assert cosine_similarity(a, b) == 0.0

    def test_rank_is_stable(self):
        """Test that equal scores keep their input order."""
        candidates = [("b", [1.0, 0.0]), ("a", [1.0, 0.0]), ("c", [0.0, 1.0])]
        ranked = rank([1.0, 0.0], candidates, limit=3)
        assert [item for item, _ in ranked] == ["b", "a", "c"]
        assert rank([1.0, 0.0], candidates, limit=1)[0][0] == "b"


class TestSemanticSearch:
    """Test ranking stored embeddings."""

    def test_best_match_first(self, searcher: SemanticSearcher, codebase_id: int):
        """Test ordering by descending similarity."""
        results = searcher.search(codebase_id, [1.0, 0.0, 0.0], limit=3)
        assert [r.path for r in results] == [
            "auth/login.py",
            "auth/tokens.py",
            "billing/invoice.py",
        ]
        assert math.isclose(results[0].score, 1.0)

    def test_ties_in_path_order(self, searcher: SemanticSearcher, codebase_id: int):
        """Test that equal scores are ordered by path."""
        results = searcher.search(codebase_id, [0.0, 1.0, 0.0], limit=2)
        assert [r.path for r in results] == ["billing/invoice.py", "billing/tax.py"]

    def test_rows_without_embedding_skipped(self, searcher: SemanticSearcher, codebase_id: int):
        """Test that unembedded rows never appear in semantic results."""
        results = searcher.search(codebase_id, [1.0, 1.0, 1.0], limit=10)
        assert "README.md" not in [r.path for r in results]
        assert len(results) == 4

    def test_folder_kind(self, searcher: SemanticSearcher, codebase_id: int):
        """Test searching folders."""
        results = searcher.search(codebase_id, [1.0, 0.0, 0.0], kind="folder")
        assert [(r.kind, r.path) for r in results] == [("folder", "auth")]

    def test_unknown_kind(self, searcher: SemanticSearcher, codebase_id: int):
        """Test that an unknown kind is rejected."""
        with pytest.raises(ValueError):
            searcher.search(codebase_id, [1.0], kind="commit")

    def test_commit_search(self, store, codebase_id: int):
        """Test ranking embedded commit summaries."""
        with store.transaction() as session:
            for hash, vector in (("c1", [0.0, 1.0]), ("c2", [1.0, 0.0])):
                repo.add_commit(
                    session,
                    Commit(
                        codebase_id=codebase_id,
                        hash=hash,
                        author_email="me@example.com",
                        committed_at=datetime(2024, 1, 1),
                        summary=f"summary {hash}",
                        embedding=embedding_to_json(vector),
                    ),
                )
        engine = store.reader()
        try:
            ranked = SemanticSearcher(engine).search_commits(codebase_id, [1.0, 0.0])
        finally:
            engine.dispose()
        assert [c.hash for c, _ in ranked] == ["c2", "c1"]


class TestFind:
    """Test strategy selection."""

    def test_semantic_when_embedded(self, searcher: SemanticSearcher, codebase_id: int):
        """Test that embeddings plus an embedding provider give semantic results."""
        summarizer = FixedSummarizer([0.0, 1.0, 0.0])
        response = searcher.find(codebase_id, "invoices", summarizer=summarizer, limit=2)

        assert response.strategy == "semantic"
        assert summarizer.embed_calls == ["invoices"]
        assert [r.path for r in response.results] == ["billing/invoice.py", "billing/tax.py"]

    def test_text_without_provider(self, searcher: SemanticSearcher, codebase_id: int):
        """Test the substring fallback when no summarizer is given."""
        response = searcher.find(codebase_id, "TOKENS")
        assert response.strategy == "text"
        assert [r.path for r in response.results] == ["auth/tokens.py"]
        assert all(r.score == 0.0 for r in response.results)

    def test_text_when_provider_cannot_embed(self, searcher: SemanticSearcher, codebase_id: int):
        """Test the fallback when the provider has no embeddings."""
        summarizer = FixedSummarizer(None, embeddings=False)
        response = searcher.find(codebase_id, "overview", summarizer=summarizer)
        assert response.strategy == "text"
        assert [r.path for r in response.results] == ["README.md"]
        assert summarizer.embed_calls == []

    def test_text_when_nothing_embedded(self, store):
        """Test the fallback for a codebase without any embeddings."""
        with store.transaction() as session:
            codebase = repo.get_or_create_codebase(session, "/tmp/plain", "plain")
            repo.upsert_file_index(session, codebase.id, "a.py", name="a.py", summary="Parser")
        engine = store.reader()
        try:
            summarizer = FixedSummarizer([1.0])
            response = SemanticSearcher(engine).find(codebase.id, "parser", summarizer=summarizer)
        finally:
            engine.dispose()
        assert response.strategy == "text"
        assert summarizer.embed_calls == []

    def test_empty_query_embedding(self, searcher: SemanticSearcher, codebase_id: int):
        """Test that a provider returning no vector raises."""
        with pytest.raises(EmbeddingsUnavailableError):
            searcher.find(codebase_id, "x", summarizer=FixedSummarizer([]))


class TestFormatter:
    """Test rich formatting of results."""

    def test_semantic_table_has_scores(self):
        """Test that semantic tables include a score column."""
        response = SearchResponse(
            strategy="semantic",
            results=[SearchResult(kind="file", path="a.py", name="a.py", summary="x" * 100, score=0.5)],
        )
        table = SearchResultFormatter(Console()).format_results_table(response, "query")
        assert isinstance(table, Table)
        assert [c.header for c in table.columns] == ["Path", "Score", "Summary"]
        assert table.row_count == 1

    def test_text_table(self):
        """Test that text tables omit the score column."""
        response = SearchResponse(strategy="text", results=[])
        table = SearchResultFormatter().format_results_table(response)
        assert [c.header for c in table.columns] == ["Path", "Summary"]

    def test_result_dict(self):
        """Test serializing a result."""
        result = SearchResult(kind="file", path="a.py", name="a.py", score=0.25)
        assert result.to_dict()["score"] == 0.25
        assert str(result) == "a.py (0.250)"
