from __future__ import annotations

import asyncio
import socket
import ssl
import time
from typing import Callable

import httpx
import structlog

from ..models import ChangeEvent, CycleOutcome, CycleResult, ErrorClass, Event, FailureEvent, WatchState
from ..state.status import StatusBoard
from ..state.store import StateStore


logger = structlog.get_logger(__name__)

TOKEN_HEADER = "etag"


def normalize_token(raw: str | None) -> str | None:
    """Strip surrounding quotes from an ETag value; weak validators keep their W/ prefix."""
    if raw is None:
        return None
    value = raw.strip()
    prefix = ""
    if value[:2].upper() == "W/":
        prefix, value = value[:2], value[2:]
    if value.startswith('"'):
        value = value[1:]
    if value.endswith('"'):
        value = value[:-1]
    return f"{prefix}{value}" if value else None


def _exception_chain(exc: BaseException):
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        yield cur
        cur = cur.__cause__ or cur.__context__


def classify_transport_error(exc: httpx.TransportError) -> ErrorClass:
    """Map an httpx transport failure onto the error taxonomy.

    Priority: connect refused / DNS -> external; timeout, TLS and any other
    transport failure -> transient.
    """
    if isinstance(exc, httpx.ConnectError):
        chain = list(_exception_chain(exc))
        if any(isinstance(e, ssl.SSLError) for e in chain):
            return ErrorClass.TRANSIENT
        return ErrorClass.EXTERNAL
    return ErrorClass.TRANSIENT


def _describe(exc: BaseException) -> str:
    for e in _exception_chain(exc):
        if isinstance(e, socket.gaierror):
            return f"dns_error: {e}"
        if isinstance(e, ConnectionRefusedError):
            return f"connection_refused: {e}"
        if isinstance(e, ssl.SSLError):
            return f"tls_error: {e}"
    return f"{type(exc).__name__}: {exc}"


class Poller:
    """Runs one probe cycle: HEAD the watched URL, compare its token, persist and announce changes."""

    def __init__(
        self,
        *,
        url: str,
        client: httpx.AsyncClient,
        store: StateStore,
        board: StatusBoard,
        emit: Callable[[Event], None],
        timeout_seconds: float = 8.0,
        follow_redirects: bool = True,
        suppress_first_notification: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self._client = client
        self._store = store
        self._board = board
        self._emit = emit
        self._timeout = timeout_seconds
        self._follow_redirects = follow_redirects
        self._suppress_first = suppress_first_notification
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def run_cycle(self) -> CycleResult:
        """Execute one probe cycle.

        Classified failures are recorded and returned; anything else
        propagates to the caller with the status still marked running.
        """
        await self._board.begin_cycle()
        logger.debug("Sending HEAD probe", url=self.url)

        try:
            resp = await self._client.head(
                self.url, timeout=self._timeout, follow_redirects=self._follow_redirects
            )
        except httpx.TransportError as e:
            return await self._fail(classify_transport_error(e), _describe(e))

        if not resp.is_success:
            return await self._fail(
                ErrorClass.TRANSIENT, f"unexpected status {resp.status_code}", status_code=resp.status_code
            )

        token = normalize_token(resp.headers.get(TOKEN_HEADER))
        if token is None:
            return await self._fail(
                ErrorClass.TRANSIENT, "response carried no change token", status_code=resp.status_code
            )

        previous = await asyncio.to_thread(self._store.load)

        if previous is not None and previous.token == token:
            await self._board.finish_cycle(
                token=token, observed_at=previous.observed_at, error_class=ErrorClass.NONE
            )
            logger.info("Token unchanged", token=token)
            return CycleResult(
                CycleOutcome.UNCHANGED,
                token=token,
                observed_at=previous.observed_at,
                status_code=resp.status_code,
            )

        observed_at = self._now_ms()
        if previous is not None:
            observed_at = max(observed_at, previous.observed_at)

        await asyncio.to_thread(self._store.save, WatchState(token=token, observed_at=observed_at))
        await self._board.finish_cycle(token=token, observed_at=observed_at, error_class=ErrorClass.NONE)

        first = previous is None
        if first and self._suppress_first:
            logger.info("First token recorded, notification suppressed", token=token)
            return CycleResult(
                CycleOutcome.RECORDED, token=token, observed_at=observed_at, status_code=resp.status_code
            )

        logger.info(
            "Token changed",
            token=token,
            previous=previous.token if previous else None,
            observed_at=observed_at,
        )
        self._emit(ChangeEvent(token=token, observed_at=observed_at, first_observation=first))
        return CycleResult(
            CycleOutcome.CHANGED, token=token, observed_at=observed_at, status_code=resp.status_code
        )

    async def _fail(self, error_class: ErrorClass, detail: str, *, status_code: int | None = None) -> CycleResult:
        current = self._board.snapshot()
        await self._board.finish_cycle(
            token=current.token, observed_at=current.observed_at, error_class=error_class
        )
        logger.error("Probe failed", url=self.url, error_class=error_class.value, detail=detail)
        self._emit(FailureEvent(error_class=error_class, detail=detail, occurred_at=self._now_ms()))
        return CycleResult(
            CycleOutcome.FAILED,
            token=current.token,
            observed_at=current.observed_at,
            error_class=error_class,
            status_code=status_code,
            detail=detail,
        )
