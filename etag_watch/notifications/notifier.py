from __future__ import annotations

import asyncio
from typing import Sequence

import structlog

from ..models import ChangeEvent, Event
from .base import ChannelOutcome, NotificationChannel


logger = structlog.get_logger(__name__)


class Notifier:
    """Fans events out to every channel, off the poller's timeline.

    notify() only enqueues; a single worker task drains the queue. Each
    channel runs independently and a failing channel is logged, never
    re-raised.
    """

    def __init__(self, channels: Sequence[NotificationChannel], *, queue_size: int = 100):
        self.channels = list(channels)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None

    def notify(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping event", kind=_kind(event))

    async def dispatch(self, event: Event) -> dict[str, ChannelOutcome]:
        results = await asyncio.gather(*(self._send_one(ch, event) for ch in self.channels))
        outcomes = {ch.name: outcome for ch, outcome in zip(self.channels, results)}
        logger.info("Event dispatched", kind=_kind(event), outcomes={k: v.value for k, v in outcomes.items()})
        return outcomes

    async def _send_one(self, channel: NotificationChannel, event: Event) -> ChannelOutcome:
        try:
            return await channel.send(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Notification channel failed", channel=channel.name, error=f"{type(e).__name__}: {e}")
            return ChannelOutcome.FAILED

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="etag-watch-notifier")

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain pending events within timeout, then stop the worker and close channels."""
        if self._worker is not None and not self._worker.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Dropping undelivered notifications", pending=self._queue.qsize())
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        for channel in self.channels:
            await channel.close()


def _kind(event: Event) -> str:
    return "change" if isinstance(event, ChangeEvent) else "failure"
