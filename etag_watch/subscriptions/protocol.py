"""Wire format for subscriber sessions.

Client -> server: the raw token string the client holds ("" for none), or
the heartbeat answer {"type": "pong"}.
Server -> client: {"status": 0..4, "token"?, "observed_at"?} or the
heartbeat {"type": "ping"}.
"""

from __future__ import annotations

import json
from typing import Any

from ..models import ChangeEvent, ErrorClass, Event, PollStatus, WireStatus


PING_MESSAGE = json.dumps({"type": "ping"})

ERROR_STATUS = {
    ErrorClass.INTERNAL: WireStatus.INTERNAL_ERROR,
    ErrorClass.TRANSIENT: WireStatus.UNCLASSIFIED_ERROR,
    ErrorClass.EXTERNAL: WireStatus.EXTERNAL_ERROR,
}


def is_pong(text: str) -> bool:
    s = text.strip()
    if not s.startswith("{"):
        return False
    try:
        data = json.loads(s)
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("type") == "pong"


def parse_query(text: str) -> str | None:
    token = text.strip()
    return token or None


def status_payload(status: WireStatus, token: str | None = None, observed_at: int | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": int(status)}
    if token is not None:
        payload["token"] = token
    if observed_at is not None:
        payload["observed_at"] = int(observed_at)
    return payload


def query_response(client_token: str | None, snapshot: PollStatus) -> dict[str, Any]:
    """Answer a client's token against a settled status snapshot.

    Error state wins over token comparison; no token observed yet is
    reported as unclassified.
    """
    if snapshot.error_class is not ErrorClass.NONE:
        return status_payload(ERROR_STATUS[snapshot.error_class])
    if snapshot.token is None:
        return status_payload(WireStatus.UNCLASSIFIED_ERROR)
    if client_token == snapshot.token:
        return status_payload(WireStatus.UP_TO_DATE)
    return status_payload(WireStatus.CHANGED, snapshot.token, snapshot.observed_at)


def event_payload(event: Event) -> dict[str, Any]:
    if isinstance(event, ChangeEvent):
        return status_payload(WireStatus.CHANGED, event.token, event.observed_at)
    return status_payload(ERROR_STATUS.get(event.error_class, WireStatus.UNCLASSIFIED_ERROR))


def encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def encode_event(event: Event) -> str:
    return encode(event_payload(event))
