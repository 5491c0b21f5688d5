from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum

from ..models import ChangeEvent, Event


class NotificationError(Exception):
    """A channel could not deliver an event."""


class ChannelOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class NotificationChannel(ABC):
    """One destination for change/failure events."""

    name: str = "channel"

    @abstractmethod
    async def send(self, event: Event) -> ChannelOutcome:
        """Deliver the event.

        Returns SENT or SKIPPED (nothing configured to deliver to);
        raises NotificationError or any transport error on failure.
        """

    async def close(self) -> None:
        return None


def format_ms(ts_ms: int | None) -> str:
    if ts_ms is None:
        return "-"
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_message(event: Event) -> tuple[str, str]:
    """Deterministic (subject, body) for an event."""
    if isinstance(event, ChangeEvent):
        subject = "Watched resource changed"
        body = f"ETag: {event.token}\nTimestamp: {format_ms(event.observed_at)}"
        return subject, body

    subject = f"Watcher error: {event.error_class.value}"
    lines = [f"Error class: {event.error_class.value}", f"Timestamp: {format_ms(event.occurred_at)}"]
    if event.detail:
        lines.append(f"Detail: {event.detail}")
    return subject, "\n".join(lines)
