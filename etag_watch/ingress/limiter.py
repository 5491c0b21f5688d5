"""Ingress limiter for the HTTP surface and subscription connections.

Fixed window per (kind, origin): the first check after a window expires
starts a fresh one. A periodic sweep evicts expired windows; an origin
missing from the map is equivalent to one with an empty window.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Tuple

import structlog
from fastapi.requests import HTTPConnection

from ..config import LimitsConfig


logger = structlog.get_logger(__name__)


class IngressKind(str, Enum):
    HTTP = "http"
    SUBSCRIPTION = "subscription"


@dataclass
class IngressWindow:
    count: int
    window_reset_at: float


class IngressLimiter:
    """Counts admissions per origin and kind inside a fixed window."""

    def __init__(self, limits: LimitsConfig, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._quotas: Dict[IngressKind, Tuple[int, float]] = {
            IngressKind.HTTP: (limits.http_requests_per_window, limits.http_window_seconds),
            IngressKind.SUBSCRIPTION: (
                limits.subscription_connects_per_window,
                limits.subscription_window_seconds,
            ),
        }
        self._lock = Lock()
        self._windows: Dict[Tuple[IngressKind, str], IngressWindow] = {}

    def admit(self, origin_id: str, kind: IngressKind) -> bool:
        limit, window_seconds = self._quotas[kind]
        now = self._clock()
        key = (kind, origin_id)

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.window_reset_at:
                window = IngressWindow(count=0, window_reset_at=now + window_seconds)
                self._windows[key] = window

            if window.count >= limit:
                allowed = False
            else:
                window.count += 1
                allowed = True

        if not allowed:
            logger.warning("Ingress denied", origin=origin_id, kind=kind.value, limit=limit)
        return allowed

    def retry_after(self, origin_id: str, kind: IngressKind) -> int:
        """Seconds until the origin's current window resets (at least 1)."""
        with self._lock:
            window = self._windows.get((kind, origin_id))
        if window is None:
            return 1
        return max(1, int(window.window_reset_at - self._clock() + 0.999))

    def sweep(self) -> int:
        """Evict expired windows. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.window_reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("Ingress sweep", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


def get_client_ip(conn: HTTPConnection, *, trust_proxy_headers: bool = False) -> str:
    """Origin key for a request or websocket, optionally honouring proxy headers."""
    if trust_proxy_headers:
        forwarded = conn.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = conn.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    client = conn.client
    if client and client.host:
        return client.host
    return "unknown"
