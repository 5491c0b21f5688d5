from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import structlog
from fastapi import status

from ..config import LimitsConfig, SubscriptionConfig
from ..ingress.limiter import IngressKind, IngressLimiter
from ..models import Event, WireStatus
from ..state.status import StatusBoard
from .protocol import PING_MESSAGE, encode, encode_event, is_pong, parse_query, query_response, status_payload


logger = structlog.get_logger(__name__)

NORMAL_CLOSURE = status.WS_1000_NORMAL_CLOSURE
GOING_AWAY = status.WS_1001_GOING_AWAY
POLICY_VIOLATION = status.WS_1008_POLICY_VIOLATION
INTERNAL_ERROR = status.WS_1011_INTERNAL_ERROR

_ids = itertools.count(1)


class SubscriberConnection(Protocol):
    """Transport seen by the service; the websocket adapter implements it."""

    async def receive(self) -> str | bytes | None:
        """Next inbound message, or None once the peer is gone."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


@dataclass(eq=False)
class Subscriber:
    origin_id: str
    connection: SubscriberConnection
    outbox: asyncio.Queue
    window_reset_at: float
    message_count: int = 0
    alive: bool = True
    id: int = field(default_factory=lambda: next(_ids))
    writer: asyncio.Task | None = None


class SubscriptionService:
    """Registry and protocol handler for live subscriber sessions.

    The registry and per-origin counts are only mutated by this object, from
    synchronous sections of the event loop, so no await separates a check
    from the update it guards.
    """

    def __init__(
        self,
        board: StatusBoard,
        limiter: IngressLimiter,
        limits: LimitsConfig,
        settings: SubscriptionConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._board = board
        self._limiter = limiter
        self._limits = limits
        self._settings = settings
        self._clock = clock
        self._subscribers: set[Subscriber] = set()
        self._per_origin: dict[str, int] = {}
        self._background: set[asyncio.Task] = set()
        self._closing = False

    # -----------------
    # Registry
    # -----------------
    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def connections_from(self, origin_id: str) -> int:
        return self._per_origin.get(origin_id, 0)

    def _register(self, connection: SubscriberConnection, origin_id: str) -> Subscriber:
        sub = Subscriber(
            origin_id=origin_id,
            connection=connection,
            outbox=asyncio.Queue(maxsize=self._settings.outbound_queue_size),
            window_reset_at=self._clock() + self._limits.message_window_seconds,
        )
        self._subscribers.add(sub)
        self._per_origin[origin_id] = self._per_origin.get(origin_id, 0) + 1
        sub.writer = asyncio.create_task(self._write_loop(sub), name=f"subscriber-{sub.id}-writer")
        return sub

    def _unregister(self, sub: Subscriber) -> bool:
        if sub not in self._subscribers:
            return False
        self._subscribers.discard(sub)
        remaining = self._per_origin.get(sub.origin_id, 0) - 1
        if remaining > 0:
            self._per_origin[sub.origin_id] = remaining
        else:
            self._per_origin.pop(sub.origin_id, None)
        return True

    async def connect(self, connection: SubscriberConnection, origin_id: str) -> Subscriber | None:
        """Admit a new session or close it with the reason it was refused."""
        if self._closing:
            await connection.close(GOING_AWAY, "server shutting down")
            return None

        if not self._limiter.admit(origin_id, IngressKind.SUBSCRIPTION):
            await connection.close(POLICY_VIOLATION, "too many connection attempts")
            return None

        if self.connections_from(origin_id) >= self._limits.max_connections_per_origin:
            logger.warning(
                "Subscriber refused, connection quota reached",
                origin=origin_id,
                limit=self._limits.max_connections_per_origin,
            )
            await connection.close(POLICY_VIOLATION, "too many connections")
            return None

        sub = self._register(connection, origin_id)
        logger.info("Subscriber connected", subscriber=sub.id, origin=origin_id, total=self.subscriber_count)
        return sub

    async def disconnect(self, sub: Subscriber, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if not self._unregister(sub):
            return
        if sub.writer is not None and sub.writer is not asyncio.current_task():
            sub.writer.cancel()
        await sub.connection.close(code, reason)
        logger.info(
            "Subscriber disconnected",
            subscriber=sub.id,
            origin=sub.origin_id,
            code=code,
            reason=reason or None,
            total=self.subscriber_count,
        )

    def _disconnect_later(self, sub: Subscriber, code: int, reason: str) -> None:
        task = asyncio.create_task(self.disconnect(sub, code, reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -----------------
    # Session
    # -----------------
    async def serve(self, connection: SubscriberConnection, origin_id: str) -> None:
        """Run one session until the peer leaves or a quota closes it."""
        sub = await self.connect(connection, origin_id)
        if sub is None:
            return

        code, reason = NORMAL_CLOSURE, ""
        try:
            while True:
                raw = await connection.receive()
                if raw is None:
                    break
                if not await self.handle_message(sub, raw):
                    break
        except asyncio.CancelledError:
            code, reason = GOING_AWAY, "server shutting down"
            raise
        except Exception as e:
            logger.exception("Subscriber session failed", subscriber=sub.id, error=str(e))
            code, reason = INTERNAL_ERROR, "internal error"
        finally:
            await self.disconnect(sub, code, reason)

    async def handle_message(self, sub: Subscriber, raw: str | bytes) -> bool:
        """Apply quotas, then answer a query or record a pong.

        Returns False when the session has been closed.
        """
        now = self._clock()
        if now >= sub.window_reset_at:
            sub.message_count = 0
            sub.window_reset_at = now + self._limits.message_window_seconds
        sub.message_count += 1

        size = len(raw) if isinstance(raw, bytes) else len(raw.encode("utf-8"))
        if sub.message_count > self._limits.messages_per_window:
            logger.warning("Subscriber exceeded message quota", subscriber=sub.id, origin=sub.origin_id)
            await self.disconnect(sub, POLICY_VIOLATION, "message rate exceeded")
            return False
        if size > self._limits.max_payload_bytes:
            logger.warning("Subscriber sent oversized payload", subscriber=sub.id, size=size)
            await self.disconnect(sub, POLICY_VIOLATION, "payload too large")
            return False

        if isinstance(raw, bytes):
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError:
                await self.disconnect(sub, POLICY_VIOLATION, "payload is not valid UTF-8")
                return False
        else:
            text = raw

        if is_pong(text):
            sub.alive = True
            return True

        self._enqueue(sub, await self.answer(parse_query(text)))
        return True

    async def answer(self, client_token: str | None) -> str:
        """Response for a query, composed only from a settled status."""
        try:
            snapshot = await asyncio.wait_for(
                self._board.wait_idle(), timeout=self._settings.query_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Query timed out waiting for probe cycle")
            return encode(status_payload(WireStatus.UNCLASSIFIED_ERROR))
        return encode(query_response(client_token, snapshot))

    # -----------------
    # Outbound
    # -----------------
    def _enqueue(self, sub: Subscriber, payload: str) -> None:
        if sub not in self._subscribers:
            return
        try:
            sub.outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Subscriber outbound queue full, dropping", subscriber=sub.id)
            self._disconnect_later(sub, POLICY_VIOLATION, "outbound queue overflow")

    async def _write_loop(self, sub: Subscriber) -> None:
        while True:
            payload = await sub.outbox.get()
            try:
                await sub.connection.send_text(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info("Send to subscriber failed", subscriber=sub.id, error=f"{type(e).__name__}: {e}")
                self._disconnect_later(sub, NORMAL_CLOSURE, "")
                return
            finally:
                sub.outbox.task_done()

    def broadcast(self, payload: str) -> int:
        """Queue payload for every registered subscriber without waiting on any of them.

        A subscriber with a ping outstanding still receives broadcasts; only
        heartbeat() decides it is gone.
        """
        targets = list(self._subscribers)
        for sub in targets:
            self._enqueue(sub, payload)
        return len(targets)

    def publish(self, event: Event) -> int:
        return self.broadcast(encode_event(event))

    async def heartbeat(self) -> None:
        """Drop subscribers that missed the previous ping, then ping the rest."""
        for sub in list(self._subscribers):
            if not sub.alive:
                logger.info("Subscriber missed heartbeat", subscriber=sub.id, origin=sub.origin_id)
                await self.disconnect(sub, GOING_AWAY, "heartbeat timeout")
                continue
            sub.alive = False
            self._enqueue(sub, PING_MESSAGE)

    def stop_accepting(self) -> None:
        self._closing = True

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        """Refuse new sessions, let queued messages flush, then close everything."""
        self.stop_accepting()
        subs = list(self._subscribers)
        if subs:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(sub.outbox.join() for sub in subs)), timeout=grace_seconds
                )
            except asyncio.TimeoutError:
                logger.warning("Outbound queues not drained before shutdown", subscribers=len(subs))
        for sub in list(self._subscribers):
            await self.disconnect(sub, GOING_AWAY, "server shutting down")
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Subscription service stopped")
