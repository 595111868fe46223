"""Async output channel connecting a running turn to its consumer."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from loguru import logger

from m_agent.bus.events import StreamEvent

_END = object()


class EventStream:
    """
    Ordered event channel for one turn.

    The producer calls ``send()`` and finally ``finish()``. The consumer
    iterates with ``async for``. If the consumer ``close()``s the stream
    before the turn finished, registered close callbacks fire (the turn's
    cancellation token is bound this way) and further sends are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._close_callbacks: list[Callable[[], None]] = []
        self.closed = False
        self.finished = False
        self.sent: list[StreamEvent] = []

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    async def send(self, event: StreamEvent) -> bool:
        """Queue an event; returns False when the consumer is gone."""
        if self.closed or self.finished:
            return False
        self.sent.append(event)
        await self._queue.put(event)
        return True

    def send_nowait(self, event: StreamEvent) -> bool:
        if self.closed or self.finished:
            return False
        self.sent.append(event)
        self._queue.put_nowait(event)
        return True

    def finish(self) -> None:
        """Producer side: no more events will follow."""
        if self.finished:
            return
        self.finished = True
        self._queue.put_nowait(_END)

    def close(self) -> None:
        """Consumer side: stop listening. Cancels the producer if still running."""
        if self.closed:
            return
        self.closed = True
        if self.finished:
            return
        logger.info("Output stream closed before turn finished; cancelling")
        for callback in list(self._close_callbacks):
            try:
                callback()
            except Exception as exc:
                logger.warning(f"Stream close callback failed: {exc}")
        self._queue.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item  # type: ignore[misc]

    async def collect(self) -> list[StreamEvent]:
        return [event async for event in self]
