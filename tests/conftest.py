from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from threadline.models import Message

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def make_message() -> Callable[..., Message]:
    def _make(
        message_id: str,
        content: str = "",
        *,
        author: str = "alice",
        seconds: float = 0,
        reply_to: str | None = None,
        mentions: tuple[str, ...] = (),
        attachments: tuple[str, ...] = (),
        referenced: Message | None = None,
        author_id: str | None = "",
        created_at: datetime | None | str = "",
    ) -> Message:
        return Message(
            id=message_id,
            author_id=f"id-{author}" if author_id == "" else author_id,
            display_name=author,
            content=content,
            created_at=BASE_TIME + timedelta(seconds=seconds) if created_at == "" else created_at,
            reply_to_id=reply_to,
            mentioned_user_ids=frozenset(mentions),
            attachment_urls=attachments,
            referenced=referenced,
        )

    return _make
