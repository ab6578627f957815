"""Single-consumer mailboxes connecting background tasks to the control loop."""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class Mailbox(Generic[T]):
    """One-directional event channel drained by exactly one consumer.

    Producers call :meth:`send`; the consumer calls :meth:`drain` once per tick.
    Closing the mailbox is how the consumer abandons a source: every later
    ``send`` returns ``False`` so the producing task can exit.
    """

    def __init__(self, name: str = "mailbox") -> None:
        self.name = name
        self._queue: asyncio.Queue[T] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> bool:
        """Enqueue ``item``; return ``False`` when the receiver has gone away."""
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    def drain(self) -> list[T]:
        """Return every item currently available, in arrival order, without blocking."""
        items: list[T] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return items

    def close(self) -> None:
        """Discard the receiving end along with anything still queued."""
        self._closed = True
        self.drain()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"pending={self._queue.qsize()}"
        return f"Mailbox({self.name!r}, {state})"


__all__ = ["Mailbox"]
