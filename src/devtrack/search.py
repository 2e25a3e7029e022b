"""
Semantic search over indexed files, folders and commits.

Provides cosine ranking of stored embeddings against a query vector, the
substring fallback used when a codebase carries no embeddings, and rich
formatting for the command line.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.table import Table
from sqlalchemy.engine.base import Engine
from sqlmodel import col, or_, select

from . import repository as repo
from .database import get_session
from .models import Commit, FileIndex, Folder, embedding_from_json
from .summarizer import EmbeddingsUnavailableError, Summarizer, embed_with_deadline

logger = structlog.get_logger(__name__)

KINDS = ("file", "folder")


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors.

    Returns 0.0 when either vector is empty, the dimensions differ, or
    either vector has zero norm.
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


@dataclass
class SearchResult:
    """One ranked match."""

    kind: str
    path: str
    name: str
    summary: str = ""
    purpose: str = ""
    language: Optional[str] = None
    score: float = 0.0

    def __str__(self) -> str:
        return f"{self.path} ({self.score:.3f})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "path": self.path,
            "name": self.name,
            "summary": self.summary,
            "purpose": self.purpose,
            "language": self.language,
            "score": self.score,
        }


@dataclass
class SearchResponse:
    """Results plus the strategy that produced them: semantic or text."""

    strategy: str
    results: list[SearchResult] = field(default_factory=list)


def _result(kind: str, row: FileIndex | Folder, score: float = 0.0) -> SearchResult:
    return SearchResult(
        kind=kind,
        path=row.path,
        name=row.name,
        summary=row.summary or "",
        purpose=row.purpose or "",
        language=getattr(row, "language", None),
        score=score,
    )


def rank(
    query_embedding: list[float], candidates: list[tuple[Any, list[float]]], limit: int
) -> list[tuple[Any, float]]:
    """Sort candidates by similarity, descending.

    The sort is stable, so equal scores keep their input order.
    """
    scored = [(item, cosine_similarity(query_embedding, vector)) for item, vector in candidates]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit]


class SemanticSearcher:
    """Ranks stored rows of one store, using a read-only engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def search(
        self,
        codebase_id: int,
        query_embedding: list[float],
        kind: str = "file",
        limit: int = 10,
    ) -> list[SearchResult]:
        """
        Rank every row of ``kind`` carrying an embedding.

        Args:
            codebase_id: Codebase to search
            query_embedding: Query vector
            kind: "file" or "folder"
            limit: Maximum results

        Returns:
            Results ordered by descending similarity, ties in path order
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown search kind '{kind}', expected one of {KINDS}")
        model = Folder if kind == "folder" else FileIndex

        with get_session(self.engine) as session:
            rows = session.exec(
                select(model)
                .where(
                    model.codebase_id == codebase_id,
                    col(model.embedding).is_not(None),
                    model.embedding != "",
                )
                .order_by(model.path)
            ).all()

        candidates = [(row, embedding_from_json(row.embedding)) for row in rows]
        return [
            _result(kind, row, score)
            for row, score in rank(query_embedding, candidates, limit)
        ]

    def text_search(
        self, codebase_id: int, query: str, kind: str = "file", limit: int = 20
    ) -> list[SearchResult]:
        """Case-insensitive substring match over summary, purpose and name."""
        if kind not in KINDS:
            raise ValueError(f"Unknown search kind '{kind}', expected one of {KINDS}")
        model = Folder if kind == "folder" else FileIndex
        pattern = f"%{query}%"

        with get_session(self.engine) as session:
            rows = session.exec(
                select(model)
                .where(
                    model.codebase_id == codebase_id,
                    or_(
                        col(model.summary).ilike(pattern),
                        col(model.purpose).ilike(pattern),
                        col(model.name).ilike(pattern),
                    ),
                )
                .order_by(model.path)
                .limit(limit)
            ).all()
        return [_result(kind, row) for row in rows]

    def search_commits(
        self, codebase_id: int, query_embedding: list[float], limit: int = 10
    ) -> list[tuple[Commit, float]]:
        """Rank commits whose summaries were embedded."""
        with get_session(self.engine) as session:
            rows = session.exec(
                select(Commit)
                .where(
                    Commit.codebase_id == codebase_id,
                    col(Commit.embedding).is_not(None),
                )
                .order_by(Commit.committed_at, Commit.hash)
            ).all()
        candidates = [(row, embedding_from_json(row.embedding)) for row in rows]
        return rank(query_embedding, candidates, limit)

    def find(
        self,
        codebase_id: int,
        query: str,
        summarizer: Optional[Summarizer] = None,
        kind: str = "file",
        limit: int = 10,
        timeout: float = 120.0,
    ) -> SearchResponse:
        """
        Search with embeddings when available, otherwise by substring.

        The two strategies are never mixed in one response.
        """
        with get_session(self.engine) as session:
            embedded = repo.has_embeddings(session, codebase_id, kind)

        if embedded and summarizer is not None and summarizer.supports_embeddings:
            vector = embed_with_deadline(summarizer, query, timeout, key=query)
            if not vector:
                raise EmbeddingsUnavailableError(
                    f"Provider returned no embedding for query '{query}'", key=query
                )
            results = self.search(codebase_id, vector, kind, limit)
            logger.debug("semantic_search", codebase_id=codebase_id, kind=kind, hits=len(results))
            return SearchResponse(strategy="semantic", results=results)

        results = self.text_search(codebase_id, query, kind, limit)
        logger.debug("text_search", codebase_id=codebase_id, kind=kind, hits=len(results))
        return SearchResponse(strategy="text", results=results)


class SearchResultFormatter:
    """Rich formatting for search results."""

    def __init__(self, console: Console | None = None):
        """Initialize formatter with optional console."""
        self.console = console or Console()

    def format_results_table(self, response: SearchResponse, query: str = "") -> Table:
        """Format search results as a rich table."""
        title = f"Search Results: '{query}'" if query else "Search Results"
        table = Table(title=f"{title} ({response.strategy})")
        table.add_column("Path", style="cyan", no_wrap=True)
        if response.strategy == "semantic":
            table.add_column("Score", style="magenta", justify="right")
        table.add_column("Summary", style="white")

        for result in response.results:
            # Truncate long summaries
            summary = result.summary.strip()
            if len(summary) > 80:
                summary = summary[:77] + "..."
            if response.strategy == "semantic":
                table.add_row(result.path, f"{result.score:.3f}", summary)
            else:
                table.add_row(result.path, summary)

        return table
