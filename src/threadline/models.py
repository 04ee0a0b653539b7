"""Data model shared by the enrichment layer and the segmentation engine."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Sequence

logger = logging.getLogger(__name__)

BARE_URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)

# Epoch values above this are treated as milliseconds.
_EPOCH_MILLIS_CUTOFF = 100_000_000_000


def is_bare_url(text: str | None) -> bool:
    """Return True when the trimmed text is a single http(s) URL."""

    if not text:
        return False
    return bool(BARE_URL_PATTERN.match(text.strip()))


def coerce_timestamp(value: Any) -> datetime | None:
    """Convert ISO-8601 strings, epoch seconds/milliseconds or datetimes to aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        msg = f"Unsupported timestamp value: {value!r}"
        raise ValueError(msg)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) >= _EPOCH_MILLIS_CUTOFF else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return coerce_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    msg = f"Unsupported timestamp value: {value!r}"
    raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class Message:
    """A single chat message as delivered by the platform client."""

    id: str
    author_id: str | None
    display_name: str
    content: str
    created_at: datetime | None
    reply_to_id: str | None = None
    mentioned_user_ids: frozenset[str] = frozenset()
    attachment_urls: tuple[str, ...] = ()
    referenced: "Message | None" = None
    channel: str | None = None

    @property
    def is_bare_url(self) -> bool:
        return is_bare_url(self.content)

    @property
    def has_attachments_or_is_bare_url(self) -> bool:
        return bool(self.attachment_urls) or self.is_bare_url

    @property
    def is_malformed(self) -> bool:
        return not self.author_id or self.created_at is None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Build a message from a platform export record.

        Accepts flat keys (``author_id``, ``display_name``) or a nested
        ``author`` object, and ``created_at``/``timestamp`` in any format
        understood by :func:`coerce_timestamp`. A missing author, or a missing
        or unparseable timestamp, is kept as ``None`` so the engine reports the
        record as malformed instead of aborting the whole export.
        """

        author = data.get("author") if isinstance(data.get("author"), dict) else {}
        author_id = data.get("author_id", author.get("id"))
        display_name = (
            data.get("display_name")
            or author.get("display_name")
            or author.get("global_name")
            or author.get("username")
            or author.get("name")
            or (str(author_id) if author_id is not None else "")
        )
        created_raw = data.get("created_at", data.get("timestamp"))
        try:
            created_at = coerce_timestamp(created_raw)
        except (ValueError, OverflowError, OSError) as exc:
            logger.warning("message.timestamp_invalid id=%s value=%r error=%s", data.get("id"), created_raw, exc)
            created_at = None

        reply_to = data.get("reply_to_id")
        reference = data.get("reference") or data.get("message_reference")
        if reply_to is None and isinstance(reference, dict):
            reply_to = reference.get("message_id")

        mentions: list[str] = []
        for item in data.get("mentioned_user_ids", data.get("mentions", [])) or []:
            if isinstance(item, dict):
                item = item.get("id")
            if item is not None:
                mentions.append(str(item))

        attachments: list[str] = []
        for item in data.get("attachment_urls", data.get("attachments", [])) or []:
            if isinstance(item, dict):
                item = item.get("url")
            if item:
                attachments.append(str(item))

        referenced_raw = data.get("referenced") or data.get("referenced_message")
        referenced = cls.from_dict(referenced_raw) if isinstance(referenced_raw, dict) else None

        return cls(
            id=str(data["id"]),
            author_id=str(author_id) if author_id is not None else None,
            display_name=str(display_name),
            content=str(data.get("content") or ""),
            created_at=created_at,
            reply_to_id=str(reply_to) if reply_to is not None else None,
            mentioned_user_ids=frozenset(mentions),
            attachment_urls=tuple(attachments),
            referenced=referenced,
            channel=data.get("channel"),
        )


@dataclass(frozen=True, slots=True)
class EnrichedMessage:
    """A message paired with its extracted keywords and optional embedding."""

    message: Message
    keywords: tuple[str, ...] = ()
    embedding: list[float] | None = None
    referenced_keywords: tuple[str, ...] = ()


@dataclass(slots=True)
class Thread:
    """A live conversation owned by the engine."""

    id: int
    messages: list[Message]
    participants: list[str]
    keywords: set[str]
    centroid: list[float] | None
    start_time: datetime
    last_active: datetime

    @classmethod
    def seed(
        cls,
        thread_id: int,
        messages: Sequence[Message],
        *,
        participants: Iterable[str],
        keywords: Iterable[str],
        centroid: list[float] | None,
    ) -> "Thread":
        if not messages:
            raise ValueError("A thread must be created with at least one message")
        ordered = sorted(messages, key=_message_sort_key)
        names: list[str] = []
        for name in participants:
            if name and name not in names:
                names.append(name)
        return cls(
            id=thread_id,
            messages=list(ordered),
            participants=names,
            keywords=set(keywords),
            centroid=centroid,
            start_time=ordered[0].created_at,  # type: ignore[arg-type]
            last_active=ordered[-1].created_at,  # type: ignore[arg-type]
        )

    def attach(self, message: Message, keywords: Iterable[str]) -> None:
        """Append a message, keeping members chronological. The centroid is left as created."""

        if self.messages and _message_sort_key(message) < _message_sort_key(self.messages[-1]):
            self.messages.append(message)
            self.messages.sort(key=_message_sort_key)
        else:
            self.messages.append(message)
        created = message.created_at
        if created is not None:
            if created > self.last_active:
                self.last_active = created
            if created < self.start_time:
                self.start_time = created
        self.keywords.update(keywords)
        self.add_participant(message.display_name)

    def add_participant(self, name: str) -> None:
        if name and name not in self.participants:
            self.participants.append(name)

    def absorb(self, other: "Thread") -> None:
        """Fold ``other`` into this thread; this thread keeps its id and centroid."""

        self.messages.extend(other.messages)
        self.messages.sort(key=_message_sort_key)
        for name in other.participants:
            self.add_participant(name)
        self.keywords.update(other.keywords)
        self.start_time = min(self.start_time, other.start_time)
        self.last_active = max(self.last_active, other.last_active)
        if self.centroid is None:
            self.centroid = other.centroid

    @property
    def message_ids(self) -> list[str]:
        return [message.id for message in self.messages]


def _message_sort_key(message: Message) -> datetime:
    return message.created_at or datetime.min.replace(tzinfo=timezone.utc)


class AssignmentRoute(str, Enum):
    """Which signal decided a message's thread."""

    REPLY = "reply"
    ORPHAN_REPLY = "orphan_reply"
    MENTION = "mention"
    MENTION_NEW = "mention_new"
    SIMILARITY = "similarity"
    NEW = "new"


@dataclass(frozen=True, slots=True)
class Assignment:
    message_id: str
    thread_id: int
    route: AssignmentRoute
    score: float | None = None


@dataclass(slots=True)
class MergeReport:
    """Outcome of a merge pass over the live threads."""

    passes: int = 0
    merges: int = 0
    converged: bool = True
    merged_pairs: list[tuple[int, int]] = field(default_factory=list)


@dataclass(slots=True)
class BatchResult:
    assignments: list[Assignment] = field(default_factory=list)
    skipped: int = 0
    malformed: int = 0
    duplicates: int = 0
    cancelled: bool = False
    merge: MergeReport | None = None


@dataclass(slots=True)
class EngineStats:
    """Running counters for one engine instance."""

    processed: int = 0
    assigned: int = 0
    skipped: int = 0
    malformed: int = 0
    duplicates: int = 0
    threads_created: int = 0
    merges: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "assigned": self.assigned,
            "skipped": self.skipped,
            "malformed": self.malformed,
            "duplicates": self.duplicates,
            "threads_created": self.threads_created,
            "merges": self.merges,
        }
