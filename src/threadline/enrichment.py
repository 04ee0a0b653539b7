"""Concurrent keyword and embedding lookup for chronologically ordered messages."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional, Protocol, Sequence

from .models import EnrichedMessage, Message, is_bare_url

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)


class KeywordProvider(Protocol):
    def extract(self, text: str) -> List[str]: ...


class EmbeddingProvider(Protocol):
    def embed(self, texts: Sequence[str]) -> List[Optional[List[float]]]: ...


class Enricher:
    """Attach keywords and embeddings to messages without reordering them.

    Messages are handled in windows of ``batch_size * concurrency``. Keyword
    calls for a window run on a bounded thread pool; the window's eligible
    texts go to the embedding provider in a single call, which batches them
    itself. Results are cached by message id until the caller discards them
    with :meth:`discard` once they have been applied.
    """

    def __init__(
        self,
        keyword_extractor: KeywordProvider | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        *,
        batch_size: int = 20,
        concurrency: int = 5,
        min_embedding_chars: int = 10,
        metrics: "MetricsRecorder" | None = None,
    ) -> None:
        if batch_size <= 0 or concurrency <= 0:
            raise ValueError("batch_size and concurrency must be positive")
        self._keywords = keyword_extractor
        self._embeddings = embedding_provider
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._min_embedding_chars = max(0, min_embedding_chars)
        self._metrics = metrics
        self._cache: dict[str, EnrichedMessage] = {}

    @property
    def window_size(self) -> int:
        return self._batch_size * self._concurrency

    def __len__(self) -> int:
        """Number of enrichment results held for messages not yet applied."""

        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()

    def discard(self, message_ids: Iterable[str]) -> None:
        for message_id in message_ids:
            self._cache.pop(message_id, None)

    def wants_embedding(self, message: Message) -> bool:
        content = (message.content or "").strip()
        return len(content) >= self._min_embedding_chars and not is_bare_url(content)

    def enrich(self, messages: Sequence[Message]) -> list[EnrichedMessage]:
        enriched: list[EnrichedMessage] = []
        for window in self.iter_enriched(messages):
            enriched.extend(window)
        return enriched

    def enrich_one(self, message: Message) -> EnrichedMessage:
        return self.enrich([message])[0]

    def iter_enriched(self, messages: Sequence[Message]) -> Iterator[list[EnrichedMessage]]:
        """Yield enriched windows in input order so callers can apply them incrementally."""

        size = self.window_size
        for offset in range(0, len(messages), size):
            yield self._enrich_window(messages[offset : offset + size])

    def _enrich_window(self, window: Sequence[Message]) -> list[EnrichedMessage]:
        pending = [message for message in window if message.id not in self._cache]
        if pending:
            keyword_map = self._extract_keywords(pending)
            embedding_map = self._embed(pending)
            for message in pending:
                referenced = message.referenced
                self._cache[message.id] = EnrichedMessage(
                    message=message,
                    keywords=tuple(keyword_map.get(message.id, ())),
                    embedding=embedding_map.get(message.id),
                    referenced_keywords=tuple(
                        keyword_map.get(referenced.id, ()) if referenced is not None else ()
                    ),
                )
        return [self._cache[message.id] for message in window]

    def _extract_keywords(self, messages: Sequence[Message]) -> dict[str, list[str]]:
        if self._keywords is None:
            return {}
        jobs: dict[str, str] = {}
        for message in messages:
            for candidate in (message, message.referenced):
                if candidate is not None and candidate.content.strip() and candidate.id not in jobs:
                    jobs[candidate.id] = candidate.content
        if not jobs:
            return {}

        results: dict[str, list[str]] = {}
        with ThreadPoolExecutor(max_workers=min(self._concurrency, len(jobs))) as executor:
            futures = {executor.submit(self._safe_extract, text): message_id for message_id, text in jobs.items()}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return results

    def _safe_extract(self, text: str) -> list[str]:
        assert self._keywords is not None
        try:
            return list(self._keywords.extract(text) or [])
        except Exception as exc:
            logger.warning("enrichment.keywords.failed error=%s", exc)
            if self._metrics is not None:
                self._metrics.increment("enrichment.keyword_failures")
            return []

    def _embed(self, messages: Sequence[Message]) -> dict[str, list[float] | None]:
        if self._embeddings is None:
            return {}
        targets = [message for message in messages if self.wants_embedding(message)]
        if not targets:
            return {}
        try:
            vectors = list(self._embeddings.embed([message.content.strip() for message in targets]))
        except Exception as exc:
            logger.warning("enrichment.embeddings.failed size=%s error=%s", len(targets), exc)
            if self._metrics is not None:
                self._metrics.increment("embedding.batch_failures", reason="provider_error")
            return {}
        if len(vectors) != len(targets):
            logger.warning(
                "enrichment.embeddings.size_mismatch expected=%s received=%s", len(targets), len(vectors)
            )
            return {}
        return {message.id: vector for message, vector in zip(targets, vectors)}
