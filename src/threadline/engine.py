"""Online conversation segmentation engine."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Iterable, Mapping, Sequence

from .config import EngineConfig, Settings
from .enrichment import EmbeddingProvider, Enricher, KeywordProvider
from .index import InMemoryThreadIndex, ThreadIndex
from .merging import merge_until_stable
from .models import (
    Assignment,
    AssignmentRoute,
    BatchResult,
    EngineStats,
    EnrichedMessage,
    MergeReport,
    Message,
    Thread,
)
from .projection import ThreadView, project_threads
from .similarity import cosine_similarity, keyword_overlap_ratio

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)


class ConversationEngine:
    """Group a chronological message stream into conversation threads.

    Each message is routed by the first signal that applies: an indexed reply
    target, a mention of a known participant, embedding plus keyword
    similarity to a recent thread, and otherwise a new thread. A merge pass
    can then fold fragments of the same conversation together.

    The engine is single threaded; only enrichment runs concurrently.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        enricher: Enricher | None = None,
        keyword_extractor: KeywordProvider | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        thread_index: ThreadIndex | None = None,
        directory: Mapping[str, str] | None = None,
        metrics: "MetricsRecorder" | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._metrics = metrics
        self._enricher = enricher or Enricher(
            keyword_extractor,
            embedding_provider,
            batch_size=self._config.enrichment_batch_size,
            concurrency=self._config.enrichment_concurrency,
            min_embedding_chars=self._config.min_embedding_chars,
            metrics=metrics,
        )
        self._index: ThreadIndex = thread_index if thread_index is not None else InMemoryThreadIndex()
        self._caller_directory: dict[str, str] = dict(directory or {})
        self._learned_directory: dict[str, str] = {}
        self._message_threads: dict[str, int] = {}
        self._observed: OrderedDict[str, Message] = OrderedDict()
        self._next_thread_id = 0
        self._stats = EngineStats()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        validate: bool = True,
        directory: Mapping[str, str] | None = None,
    ) -> "ConversationEngine":
        """Wire the engine with the keyword and embedding backends named in ``settings``."""

        from .embeddings import EmbeddingService
        from .keywords import KeywordExtractor

        settings = settings or Settings.from_env()
        tables = settings.keyword_tables()
        metrics = settings.build_metrics_recorder()
        return cls(
            settings.engine_config(tables),
            keyword_extractor=KeywordExtractor(settings, tables=tables),
            embedding_provider=EmbeddingService(settings, validate=validate, metrics=metrics),
            directory=directory,
            metrics=metrics,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def stats(self) -> EngineStats:
        return self._stats

    def reset(self) -> None:
        """Drop all threads, indexes and counters; thread ids restart at 0."""

        self._index.clear()
        self._learned_directory.clear()
        self._message_threads.clear()
        self._observed.clear()
        self._enricher.clear()
        self._next_thread_id = 0
        self._stats = EngineStats()

    # Processing -------------------------------------------------------

    def process_message(self, message: Message) -> Assignment | None:
        """Screen, enrich and assign one message; ``None`` when it was not assigned."""

        if self._screen(message) is not None:
            return None
        try:
            return self._assign(self._enricher.enrich_one(message))
        finally:
            self._enricher.discard([message.id])

    def process_batch(
        self,
        messages: Sequence[Message],
        *,
        merge: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """Process ``messages`` in order, then optionally run the merge pass.

        ``cancel_event`` is checked between messages. On cancellation the
        engine keeps every message applied so far and skips the merge pass.
        """

        result = BatchResult()
        window_size = self._enricher.window_size
        for offset in range(0, len(messages), window_size):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            window = messages[offset : offset + window_size]
            enriched = {
                item.message.id: item
                for item in self._enricher.enrich([m for m in window if self._is_enrichable(m)])
            }
            for message in window:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break
                outcome = self._screen(message)
                if outcome == "malformed":
                    result.malformed += 1
                elif outcome == "duplicate":
                    result.duplicates += 1
                elif outcome == "skipped":
                    result.skipped += 1
                else:
                    item = enriched.get(message.id) or self._enricher.enrich_one(message)
                    result.assignments.append(self._assign(item))
            self._enricher.discard(message.id for message in window)
            if result.cancelled:
                break

        if result.cancelled:
            logger.info(
                "engine.batch.cancelled applied=%s total=%s", len(result.assignments), len(messages)
            )
        elif merge:
            result.merge = self.merge_threads()
        if self._metrics is not None:
            self._metrics.set_gauge("engine.threads.live", len(self._index))
        return result

    def assign(self, enriched: EnrichedMessage) -> Assignment | None:
        """Place an enriched message into a thread.

        Malformed messages and ids that are already indexed are screened out
        exactly as in :meth:`process_message` and yield ``None``.
        """

        if self._screen(enriched.message) is not None:
            return None
        return self._assign(enriched)

    def _assign(self, enriched: EnrichedMessage) -> Assignment:
        message = enriched.message
        assignment = (
            self._assign_reply(enriched)
            or self._assign_mention(enriched)
            or self._assign_similar(enriched)
        )
        if assignment is None:
            thread = self._create_thread(
                [message],
                participants=[message.display_name],
                keywords=enriched.keywords,
                centroid=enriched.embedding,
            )
            assignment = Assignment(message.id, thread.id, AssignmentRoute.NEW)

        self._stats.assigned += 1
        logger.debug(
            "engine.message.assigned id=%s thread=%s route=%s score=%s",
            message.id,
            assignment.thread_id,
            assignment.route.value,
            assignment.score,
        )
        if self._metrics is not None:
            self._metrics.increment("engine.messages.assigned", route=assignment.route.value)
        return assignment

    def merge_threads(self) -> MergeReport:
        """Merge fragmented threads until stable or the pass bound is reached."""

        report = merge_until_stable(self._index, self._config, self._reparent)
        self._stats.merges += report.merges
        logger.info(
            "engine.merge.completed passes=%s merges=%s converged=%s threads=%s",
            report.passes,
            report.merges,
            report.converged,
            len(self._index),
        )
        if self._metrics is not None and report.merges:
            self._metrics.increment("engine.threads.merged", value=report.merges)
        return report

    # Output -----------------------------------------------------------

    def threads(self) -> list[Thread]:
        """Live threads, most recently active first; ties by ascending id."""

        return sorted(self._index, key=lambda thread: (-thread.last_active.timestamp(), thread.id))

    def get_thread(self, thread_id: int) -> Thread | None:
        return self._index.get(thread_id)

    def thread_id_for(self, message_id: str) -> int | None:
        return self._message_threads.get(message_id)

    def views(self, include_debug: bool = False) -> list[ThreadView]:
        return project_threads(self.threads(), include_debug=include_debug, resolve_name=self.resolve_name)

    def resolve_name(self, user_id: str) -> str:
        """Display name for a user id; unknown ids resolve to themselves."""

        return self._caller_directory.get(user_id) or self._learned_directory.get(user_id) or user_id

    # Internal helpers -------------------------------------------------

    def _screen(self, message: Message) -> str | None:
        self._stats.processed += 1
        if message.is_malformed:
            missing = "author" if not message.author_id else "timestamp"
            logger.warning("engine.message.malformed id=%s missing=%s", message.id, missing)
            self._stats.malformed += 1
            if self._metrics is not None:
                self._metrics.increment("engine.messages.malformed")
            return "malformed"
        if message.id in self._message_threads:
            logger.debug("engine.message.duplicate id=%s", message.id)
            self._stats.duplicates += 1
            return "duplicate"
        self._learned_directory[message.author_id] = message.display_name  # type: ignore[index]
        if self._is_skippable(message):
            self._remember_skipped(message)
            self._stats.skipped += 1
            logger.debug("engine.message.skipped id=%s", message.id)
            return "skipped"
        return None

    def _remember_skipped(self, message: Message) -> None:
        # Oldest skipped messages are evicted first once the cap is reached.
        self._observed[message.id] = message
        self._observed.move_to_end(message.id)
        while len(self._observed) > self._config.max_observed_skipped:
            self._observed.popitem(last=False)

    def _is_enrichable(self, message: Message) -> bool:
        return (
            not message.is_malformed
            and message.id not in self._message_threads
            and not self._is_skippable(message)
        )

    def _is_skippable(self, message: Message) -> bool:
        content = (message.content or "").strip()
        if not content or message.is_bare_url:
            return True
        if self._config.skip_symbol_only and not any(char.isalnum() for char in content):
            return True
        return False

    def _assign_reply(self, enriched: EnrichedMessage) -> Assignment | None:
        message = enriched.message
        target_id = message.reply_to_id
        if not target_id:
            return None

        thread_id = self._message_threads.get(target_id)
        thread = self._index.get(thread_id) if thread_id is not None else None
        if thread is not None:
            self._attach(thread, enriched)
            return Assignment(message.id, thread.id, AssignmentRoute.REPLY)

        referenced = self._observed.get(target_id)
        if referenced is None and message.referenced is not None:
            referenced = message.referenced
        if referenced is None or referenced.is_malformed or referenced.id in self._message_threads:
            return None

        thread = self._create_thread(
            [referenced, message],
            participants=[referenced.display_name, message.display_name],
            keywords=set(enriched.keywords) | set(enriched.referenced_keywords),
            centroid=enriched.embedding,
        )
        self._observed.pop(referenced.id, None)
        return Assignment(message.id, thread.id, AssignmentRoute.ORPHAN_REPLY)

    def _assign_mention(self, enriched: EnrichedMessage) -> Assignment | None:
        message = enriched.message
        if not message.mentioned_user_ids:
            return None
        names = [self.resolve_name(user_id) for user_id in sorted(message.mentioned_user_ids)]
        wanted = set(names)
        for thread in self._index:
            if wanted.intersection(thread.participants):
                self._attach(thread, enriched)
                return Assignment(message.id, thread.id, AssignmentRoute.MENTION)

        thread = self._create_thread(
            [message],
            participants=[message.display_name, *names],
            keywords=enriched.keywords,
            centroid=enriched.embedding,
        )
        return Assignment(message.id, thread.id, AssignmentRoute.MENTION_NEW)

    def _assign_similar(self, enriched: EnrichedMessage) -> Assignment | None:
        message = enriched.message
        if message.created_at is None:
            return None
        denylist = self._config.tables.overlap_denylist
        best: Thread | None = None
        best_score = self._config.similarity_threshold
        for thread in self._index.candidates(message.created_at, self._config.staleness_window):
            score = cosine_similarity(enriched.embedding, thread.centroid) + self._config.keyword_weight * (
                keyword_overlap_ratio(thread.keywords, enriched.keywords, denylist)
            )
            logger.debug("engine.similarity.candidate id=%s thread=%s score=%.4f", message.id, thread.id, score)
            # Strictly greater keeps the lowest id on ties since candidates come in id order.
            if score > best_score:
                best, best_score = thread, score
        if best is None:
            return None
        self._attach(best, enriched)
        return Assignment(message.id, best.id, AssignmentRoute.SIMILARITY, score=best_score)

    def _attach(self, thread: Thread, enriched: EnrichedMessage) -> None:
        thread.attach(enriched.message, enriched.keywords)
        self._message_threads[enriched.message.id] = thread.id

    def _create_thread(
        self,
        messages: Sequence[Message],
        *,
        participants: Iterable[str],
        keywords: Iterable[str],
        centroid: list[float] | None,
    ) -> Thread:
        thread = Thread.seed(
            self._next_thread_id,
            messages,
            participants=participants,
            keywords=keywords,
            centroid=centroid,
        )
        self._next_thread_id += 1
        self._index.add(thread)
        for member in messages:
            self._message_threads[member.id] = thread.id
        self._stats.threads_created += 1
        logger.debug("engine.thread.created thread=%s seed=%s", thread.id, messages[-1].id)
        return thread

    def _reparent(self, kept: Thread, retired: Thread) -> None:
        for member in retired.messages:
            self._message_threads[member.id] = kept.id
