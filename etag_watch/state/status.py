from __future__ import annotations

import asyncio
from dataclasses import replace

from ..models import ErrorClass, PollStatus


class StatusBoard:
    """Owner of the current PollStatus.

    Only the poller and supervisor write. Every write swaps in a fresh
    immutable snapshot and wakes readers waiting for the cycle to finish.
    """

    def __init__(self, initial: PollStatus | None = None):
        self._snapshot = initial or PollStatus()
        self._changed = asyncio.Condition()

    def snapshot(self) -> PollStatus:
        return self._snapshot

    async def _swap(self, snapshot: PollStatus) -> None:
        async with self._changed:
            self._snapshot = snapshot
            self._changed.notify_all()

    async def begin_cycle(self) -> None:
        await self._swap(replace(self._snapshot, running=True))

    async def finish_cycle(
        self,
        *,
        token: str | None,
        observed_at: int | None,
        error_class: ErrorClass,
    ) -> None:
        await self._swap(
            PollStatus(token=token, observed_at=observed_at, running=False, error_class=error_class)
        )

    async def mark_idle(self) -> None:
        if self._snapshot.running:
            await self._swap(replace(self._snapshot, running=False))

    async def mark_crashed(self) -> None:
        await self._swap(replace(self._snapshot, running=False, error_class=ErrorClass.INTERNAL))

    async def wait_idle(self) -> PollStatus:
        """Suspend until no probe cycle is in flight, then return that snapshot."""
        async with self._changed:
            await self._changed.wait_for(lambda: not self._snapshot.running)
            return self._snapshot
