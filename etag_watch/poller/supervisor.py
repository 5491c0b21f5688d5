from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from ..models import ErrorClass, Event, FailureEvent
from ..state.status import StatusBoard
from .probe import Poller


logger = structlog.get_logger(__name__)


class Supervisor:
    """Keeps the poller running forever.

    Idle -> Probing -> (Idle | Crashed) -> Idle. A crash marks the status
    internal, emits a failure event and re-enters the loop after the restart
    backoff. Only stop() ends the loop, and only between cycles.
    """

    def __init__(
        self,
        poller: Poller,
        board: StatusBoard,
        emit: Callable[[Event], None],
        *,
        interval_seconds: float = 30.0,
        restart_backoff_seconds: float = 30.0,
    ):
        self._poller = poller
        self._board = board
        self._emit = emit
        self._interval = interval_seconds
        self._backoff = restart_backoff_seconds
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.cycles = 0
        self.restarts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def supervise(self) -> None:
        logger.info("Supervisor running", url=self._poller.url)
        while not self._stopping.is_set():
            await self._board.mark_idle()
            try:
                await self._poller.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.restarts += 1
                logger.exception("Poller crashed", error=str(e), restarts=self.restarts)
                await self._board.mark_crashed()
                self._emit(FailureEvent(error_class=ErrorClass.INTERNAL, detail=f"{type(e).__name__}: {e}"))
                logger.error("Restarting poller", backoff_seconds=self._backoff)
                await self._pause(self._backoff)
                continue
            finally:
                self.cycles += 1

            await self._pause(self._interval)

        await self._board.mark_idle()
        logger.info("Supervisor stopped", cycles=self.cycles, restarts=self.restarts)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopping.clear()
        self._task = asyncio.create_task(self.supervise(), name="etag-watch-supervisor")
        return self._task

    async def stop(self, timeout: float = 5.0) -> None:
        """Ask the loop to exit after the current cycle; cancel it if that takes longer than timeout."""
        self._stopping.set()
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Supervisor did not stop in time, cancelling", timeout_seconds=timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
