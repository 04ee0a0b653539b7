"""Flatten engine threads into JSON-ready views."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .models import Message, Thread


@dataclass(frozen=True, slots=True)
class TrimmedMessage:
    """The parts of a message a report needs."""

    message_id: str
    author: str
    content: str
    timestamp: str
    attachments: tuple[str, ...] = ()
    mentions: tuple[str, ...] = ()
    channel: str | None = None

    @classmethod
    def from_message(
        cls,
        message: Message,
        resolve_name: Callable[[str], str] | None = None,
    ) -> "TrimmedMessage":
        resolver = resolve_name or (lambda user_id: user_id)
        return cls(
            message_id=message.id,
            author=message.display_name,
            content=message.content,
            timestamp=message.created_at.isoformat() if message.created_at else "",
            attachments=message.attachment_urls,
            mentions=tuple(resolver(user_id) for user_id in sorted(message.mentioned_user_ids)),
            channel=message.channel,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message_id": self.message_id,
            "timestamp": self.timestamp,
            "author": self.author,
            "content": self.content,
            "attachments": list(self.attachments),
            "mentions": list(self.mentions),
        }
        if self.channel is not None:
            payload["channel"] = self.channel
        return payload


@dataclass(frozen=True, slots=True)
class ThreadView:
    thread_id: int
    participants: tuple[str, ...]
    start_time: str
    last_active: str
    messages: tuple[TrimmedMessage, ...]
    keywords: tuple[str, ...] | None = None
    centroid: tuple[float, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "thread_id": self.thread_id,
            "participants": list(self.participants),
            "start_time": self.start_time,
            "last_active": self.last_active,
            "message_count": len(self.messages),
            "messages": [message.to_dict() for message in self.messages],
        }
        if self.keywords is not None:
            payload["keywords"] = list(self.keywords)
        if self.centroid is not None:
            payload["centroid"] = list(self.centroid)
        return payload


def project_thread(
    thread: Thread,
    *,
    include_debug: bool = False,
    resolve_name: Callable[[str], str] | None = None,
) -> ThreadView:
    """Build the view for one thread; keywords and centroid only appear in debug mode."""

    return ThreadView(
        thread_id=thread.id,
        participants=tuple(thread.participants),
        start_time=thread.start_time.isoformat(),
        last_active=thread.last_active.isoformat(),
        messages=tuple(TrimmedMessage.from_message(message, resolve_name) for message in thread.messages),
        keywords=tuple(sorted(thread.keywords)) if include_debug else None,
        centroid=tuple(thread.centroid) if include_debug and thread.centroid is not None else None,
    )


def project_threads(
    threads: Iterable[Thread],
    *,
    include_debug: bool = False,
    resolve_name: Callable[[str], str] | None = None,
) -> list[ThreadView]:
    return [project_thread(thread, include_debug=include_debug, resolve_name=resolve_name) for thread in threads]
