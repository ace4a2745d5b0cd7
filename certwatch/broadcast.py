"""A bounded multi-consumer broadcast channel for asyncio."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """The channel is closed and no more items will arrive."""


class Lagged(Exception):
    """The receiver fell behind and some items were dropped."""

    def __init__(self, skipped: int) -> None:
        super().__init__(f"receiver lagged behind, skipped {skipped} items")
        self.skipped = skipped


class BroadcastReceiver(Generic[T]):
    """One subscriber's view of a broadcast channel."""

    def __init__(self, channel: BroadcastChannel[T]) -> None:
        self._channel = channel
        self._queue: deque[T] = deque()
        self._skipped = 0
        self._ready = asyncio.Event()

    def _push(self, item: T) -> None:
        if len(self._queue) >= self._channel.capacity:
            self._queue.popleft()
            self._skipped += 1
        self._queue.append(item)
        self._ready.set()

    def _wake(self) -> None:
        self._ready.set()

    async def recv(self) -> T:
        """Wait for the next item.

        Raises ``Lagged`` once after items were dropped for this receiver and
        ``ChannelClosed`` when the channel is closed and drained.
        """
        while True:
            if self._skipped:
                skipped, self._skipped = self._skipped, 0
                raise Lagged(skipped)
            if self._queue:
                return self._queue.popleft()
            if self._channel.closed:
                raise ChannelClosed("channel closed")
            self._ready.clear()
            await self._ready.wait()


class BroadcastChannel(Generic[T]):
    """Every item sent is delivered to every receiver subscribed at the time."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be greater than zero")
        self.capacity = capacity
        self.closed = False
        self._receivers: list[BroadcastReceiver[T]] = []

    def send(self, item: T) -> int:
        """Deliver ``item`` to all receivers; returns how many received it."""
        if self.closed:
            raise ChannelClosed("channel closed")
        for receiver in self._receivers:
            receiver._push(item)
        return len(self._receivers)

    def subscribe(self) -> BroadcastReceiver[T]:
        """A new receiver that sees items sent from now on."""
        receiver: BroadcastReceiver[T] = BroadcastReceiver(self)
        self._receivers.append(receiver)
        return receiver

    def close(self) -> None:
        """Close the channel; receivers drain what is left, then stop."""
        self.closed = True
        for receiver in self._receivers:
            receiver._wake()