from __future__ import annotations

import json
import math
import os
from pathlib import Path
from typing import Any

import structlog

from ..models import WatchState


logger = structlog.get_logger(__name__)


class StateStoreError(Exception):
    """The state file could not be read or written."""


class CorruptStateError(StateStoreError):
    """The state file exists but does not hold a valid record."""


def _coerce_record(raw: Any) -> WatchState:
    if not isinstance(raw, dict):
        raise CorruptStateError(f"expected an object, got {type(raw).__name__}")

    # Older deployments wrote {"etag": ..., "timestamp": ...}.
    token = raw.get("token", raw.get("etag"))
    observed_at = raw.get("observed_at", raw.get("timestamp"))

    if not isinstance(token, str) or not token:
        raise CorruptStateError("missing or empty token")
    if isinstance(observed_at, bool) or not isinstance(observed_at, (int, float)):
        raise CorruptStateError("missing or non-numeric observed_at")
    if isinstance(observed_at, float) and not math.isfinite(observed_at):
        raise CorruptStateError(f"observed_at is not a finite number: {observed_at!r}")

    return WatchState(token=token, observed_at=int(observed_at))


class StateStore:
    """Single-record JSON store for the last observed change token.

    Writes go to a sibling temp file which is then renamed over the target,
    so a reader sees either the previous record or the new one.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> WatchState | None:
        """Return the stored record, or None when nothing was ever stored.

        Raises:
            CorruptStateError: file present but unparseable
            StateStoreError: any other I/O failure
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No state file yet", path=str(self.path))
            return None
        except UnicodeDecodeError as e:
            raise CorruptStateError(f"{self.path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise StateStoreError(f"could not read {self.path}: {e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"invalid JSON in {self.path}: {e}") from e

        return _coerce_record(raw)

    def save(self, state: WatchState) -> None:
        payload = {"token": state.token, "observed_at": int(state.observed_at)}
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False, sort_keys=True))
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(self.path)
        except OSError as e:
            raise StateStoreError(f"could not write {self.path}: {e}") from e

        logger.info("State saved", path=str(self.path), token=state.token, observed_at=state.observed_at)
