"""Shared value types for the watcher."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum


def now_ms() -> int:
    return int(time.time() * 1000)


class ErrorClass(str, Enum):
    NONE = "none"
    # Supervisor-level crash. Dominates until a later cycle completes.
    INTERNAL = "internal"
    # Watched resource unreachable (connection refused, DNS failure).
    EXTERNAL = "external"
    # Timeout, TLS/transport failure, non-2xx or missing change token.
    TRANSIENT = "transient"


class WireStatus(IntEnum):
    CHANGED = 0
    UP_TO_DATE = 1
    INTERNAL_ERROR = 2
    UNCLASSIFIED_ERROR = 3
    EXTERNAL_ERROR = 4


@dataclass(frozen=True)
class WatchState:
    """The durable record: last observed token and when it was first seen (epoch ms)."""

    token: str
    observed_at: int


@dataclass(frozen=True)
class PollStatus:
    """Immutable snapshot of the poller's in-memory status.

    A new snapshot replaces the old one as a whole, so readers never mix
    fields from two different cycles.
    """

    token: str | None = None
    observed_at: int | None = None
    running: bool = False
    error_class: ErrorClass = ErrorClass.NONE


@dataclass(frozen=True)
class ChangeEvent:
    token: str
    observed_at: int
    first_observation: bool = False


@dataclass(frozen=True)
class FailureEvent:
    error_class: ErrorClass
    detail: str = ""
    occurred_at: int = field(default_factory=now_ms)


Event = ChangeEvent | FailureEvent


class CycleOutcome(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    # First token ever stored while first-observation notifications are suppressed.
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    token: str | None = None
    observed_at: int | None = None
    error_class: ErrorClass = ErrorClass.NONE
    status_code: int | None = None
    detail: str = ""
