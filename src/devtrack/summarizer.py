"""
Summarization collaborator interface.

Any language-model provider plugs into devtrack by subclassing
``Summarizer``. Embedding support is optional: providers that cannot embed
return None from ``embed`` and report ``supports_embeddings = False``.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SUMMARY_KINDS = ("commit", "file", "folder", "codebase", "day", "week", "month", "branch")


class CollaboratorError(Exception):
    """Raised when a summarize or embed call fails."""

    def __init__(self, message: str, key: str = ""):
        self.key = key
        super().__init__(message)


class CollaboratorTimeoutError(CollaboratorError):
    """Raised when a collaborator call exceeds its deadline."""

    pass


class EmbeddingsUnavailableError(CollaboratorError):
    """Raised when embeddings are requested from a provider without them."""

    pass


class Summarizer(ABC):
    """Base class for summarization providers."""

    supports_embeddings: bool = False

    @abstractmethod
    def summarize(self, kind: str, context_text: str) -> str:
        """Produce summary text for ``context_text``.

        Args:
            kind: One of SUMMARY_KINDS, selecting what is being summarized
            context_text: Fully built prompt context

        Returns:
            Generated text
        """
        pass

    def embed(self, text: str) -> Optional[list[float]]:
        """Embed ``text`` as a fixed-dimension vector, or None if unsupported."""
        return None


class CompletionSummarizer(Summarizer):
    """Adapts plain ``complete(prompt)`` and ``embed(text)`` callables."""

    def __init__(
        self,
        complete: Callable[[str], str],
        embed: Optional[Callable[[str], list[float]]] = None,
    ):
        self._complete = complete
        self._embed = embed
        self.supports_embeddings = embed is not None

    def summarize(self, kind: str, context_text: str) -> str:
        return self._complete(context_text).strip()

    def embed(self, text: str) -> Optional[list[float]]:
        if self._embed is None:
            return None
        return list(self._embed(text))


def call_with_deadline(
    fn: Callable[..., T], timeout: float, *args: Any, key: str = ""
) -> T:
    """Run ``fn(*args)`` and wait at most ``timeout`` seconds for it.

    Each call gets its own daemon thread, so a call that overruns keeps
    only its own thread and never delays the calls that follow.

    Args:
        fn: Collaborator call
        timeout: Deadline in seconds
        key: Identifying key for error messages (path, hash, date)

    Returns:
        Whatever ``fn`` returns

    Raises:
        CollaboratorTimeoutError: If the deadline passes first
        CollaboratorError: If ``fn`` raises
    """
    outcome: dict[str, Any] = {}

    def run() -> None:
        try:
            outcome["value"] = fn(*args)
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=run, name=f"devtrack-collab-{key or 'unit'}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        logger.warning("collaborator_call_abandoned", key=key, timeout=timeout)
        raise CollaboratorTimeoutError(
            f"Collaborator call for {key or 'unit'} exceeded {timeout:.1f}s", key=key
        )

    error = outcome.get("error")
    if error is None:
        return outcome["value"]
    if isinstance(error, CollaboratorError) or not isinstance(error, Exception):
        raise error
    raise CollaboratorError(
        f"Collaborator call for {key or 'unit'} failed: {str(error)}", key=key
    ) from error


def summarize_with_deadline(
    summarizer: Summarizer, kind: str, context_text: str, timeout: float, key: str = ""
) -> str:
    return call_with_deadline(summarizer.summarize, timeout, kind, context_text, key=key)


def embed_with_deadline(
    summarizer: Summarizer, text: str, timeout: float, key: str = ""
) -> Optional[list[float]]:
    """Embed ``text``, returning None when the provider has no embeddings."""
    if not summarizer.supports_embeddings:
        return None
    return call_with_deadline(summarizer.embed, timeout, text, key=key)
