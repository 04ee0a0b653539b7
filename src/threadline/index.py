"""Thread storage and candidate lookup for the segmentation engine."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterator, Protocol

from .models import Thread


class ThreadIndex(Protocol):
    """Storage the engine scans for live threads.

    Implementations must iterate threads in creation order (ascending id).
    """

    def add(self, thread: Thread) -> None: ...

    def remove(self, thread_id: int) -> Thread | None: ...

    def get(self, thread_id: int) -> Thread | None: ...

    def __iter__(self) -> Iterator[Thread]: ...

    def __len__(self) -> int: ...

    def candidates(self, when: datetime, window: timedelta) -> list[Thread]: ...

    def clear(self) -> None: ...


class InMemoryThreadIndex:
    """Brute-force index over a dict; fine for one channel's history."""

    def __init__(self) -> None:
        self._threads: dict[int, Thread] = {}

    def add(self, thread: Thread) -> None:
        if thread.id in self._threads:
            msg = f"Thread {thread.id} is already indexed"
            raise ValueError(msg)
        self._threads[thread.id] = thread

    def remove(self, thread_id: int) -> Thread | None:
        return self._threads.pop(thread_id, None)

    def get(self, thread_id: int) -> Thread | None:
        return self._threads.get(thread_id)

    def __iter__(self) -> Iterator[Thread]:
        return iter(sorted(self._threads.values(), key=lambda thread: thread.id))

    def __len__(self) -> int:
        return len(self._threads)

    def candidates(self, when: datetime, window: timedelta) -> list[Thread]:
        """Threads whose start lies no more than ``window`` before ``when``."""

        return [thread for thread in self if when - thread.start_time <= window]

    def clear(self) -> None:
        self._threads.clear()
