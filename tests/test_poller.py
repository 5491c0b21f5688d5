from __future__ import annotations

import json
import socket
import ssl
from pathlib import Path
from typing import Callable

import httpx
import pytest

from etag_watch.models import ChangeEvent, CycleOutcome, ErrorClass, FailureEvent, WatchState
from etag_watch.poller import Poller, classify_transport_error, normalize_token
from etag_watch.state import CorruptStateError, StateStore, StatusBoard
from etag_watch.subscriptions import query_response


URL = "https://watched.example/"


def _etag_response(tag: str, status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        return httpx.Response(status, headers={"ETag": tag})

    return handler


def _make_poller(
    tmp_path: Path,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    now: float = 1_000.0,
    suppress_first: bool = False,
) -> tuple[Poller, StateStore, StatusBoard, list]:
    events: list = []
    store = StateStore(tmp_path / "etag" / "etag.json")
    board = StatusBoard()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    poller = Poller(
        url=URL,
        client=client,
        store=store,
        board=board,
        emit=events.append,
        suppress_first_notification=suppress_first,
        clock=lambda: now,
    )
    return poller, store, board, events


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('"abc123"', "abc123"),
        ("abc123", "abc123"),
        ('W/"weak"', "W/weak"),
        ("  \"spaced\" ", "spaced"),
        ('""', None),
        (None, None),
    ],
)
def test_normalize_token(raw, expected) -> None:
    assert normalize_token(raw) == expected


@pytest.mark.asyncio
async def test_first_observation_persists_and_emits_change(tmp_path: Path) -> None:
    poller, store, board, events = _make_poller(tmp_path, _etag_response('"abc123"'))

    result = await poller.run_cycle()

    assert result.outcome is CycleOutcome.CHANGED
    assert store.load() == WatchState(token="abc123", observed_at=1_000_000)
    assert events == [ChangeEvent(token="abc123", observed_at=1_000_000, first_observation=True)]
    snapshot = board.snapshot()
    assert snapshot.token == "abc123"
    assert snapshot.running is False
    assert snapshot.error_class is ErrorClass.NONE


@pytest.mark.asyncio
async def test_unchanged_token_skips_write_and_event(tmp_path: Path) -> None:
    poller, store, _board, events = _make_poller(tmp_path, _etag_response('"abc123"'))
    await poller.run_cycle()
    state_file = tmp_path / "etag" / "etag.json"
    mtime = state_file.stat().st_mtime_ns
    events.clear()

    result = await poller.run_cycle()

    assert result.outcome is CycleOutcome.UNCHANGED
    assert events == []
    assert state_file.stat().st_mtime_ns == mtime


@pytest.mark.asyncio
async def test_suppressed_first_observation_still_persists(tmp_path: Path) -> None:
    poller, store, _board, events = _make_poller(tmp_path, _etag_response('"abc123"'), suppress_first=True)

    result = await poller.run_cycle()

    assert result.outcome is CycleOutcome.RECORDED
    assert events == []
    assert store.load() == WatchState(token="abc123", observed_at=1_000_000)


@pytest.mark.asyncio
async def test_new_token_after_existing_record(tmp_path: Path) -> None:
    poller, store, board, events = _make_poller(tmp_path, _etag_response('"abc124"'), now=2_000.0)
    store.save(WatchState(token="abc123", observed_at=1_000_000))

    result = await poller.run_cycle()

    assert result.outcome is CycleOutcome.CHANGED
    assert events == [ChangeEvent(token="abc124", observed_at=2_000_000)]
    assert query_response("abc123", board.snapshot()) == {
        "status": 0,
        "token": "abc124",
        "observed_at": 2_000_000,
    }


@pytest.mark.asyncio
async def test_observed_at_never_goes_backwards(tmp_path: Path) -> None:
    poller, store, _board, _events = _make_poller(tmp_path, _etag_response('"b"'), now=1.0)
    store.save(WatchState(token="a", observed_at=5_000_000))

    await poller.run_cycle()

    assert store.load() == WatchState(token="b", observed_at=5_000_000)


@pytest.mark.asyncio
async def test_connection_refused_is_external(tmp_path: Path) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request) from ConnectionRefusedError(111, "Connection refused")

    poller, store, board, events = _make_poller(tmp_path, refuse)

    result = await poller.run_cycle()

    assert result.outcome is CycleOutcome.FAILED
    assert result.error_class is ErrorClass.EXTERNAL
    assert "connection_refused" in result.detail
    assert len(events) == 1 and isinstance(events[0], FailureEvent)
    assert events[0].error_class is ErrorClass.EXTERNAL
    assert query_response("anything", board.snapshot()) == {"status": 4}
    assert store.load() is None


@pytest.mark.asyncio
async def test_timeout_is_transient(tmp_path: Path) -> None:
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    poller, _store, board, events = _make_poller(tmp_path, slow)
    result = await poller.run_cycle()

    assert result.error_class is ErrorClass.TRANSIENT
    assert board.snapshot().error_class is ErrorClass.TRANSIENT
    assert events[0].error_class is ErrorClass.TRANSIENT


@pytest.mark.asyncio
async def test_non_2xx_is_transient(tmp_path: Path) -> None:
    poller, _store, _board, _events = _make_poller(tmp_path, _etag_response('"x"', status=503))
    result = await poller.run_cycle()
    assert result.outcome is CycleOutcome.FAILED
    assert result.error_class is ErrorClass.TRANSIENT
    assert result.status_code == 503


@pytest.mark.asyncio
async def test_missing_etag_is_transient_and_keeps_previous_token(tmp_path: Path) -> None:
    tags = iter(['"abc123"', None])

    def handler(request: httpx.Request) -> httpx.Response:
        tag = next(tags)
        return httpx.Response(200, headers={"ETag": tag} if tag else {})

    poller, store, board, _events = _make_poller(tmp_path, handler)
    await poller.run_cycle()
    result = await poller.run_cycle()

    assert result.error_class is ErrorClass.TRANSIENT
    assert board.snapshot().token == "abc123"
    assert store.load().token == "abc123"


@pytest.mark.asyncio
async def test_persisted_token_tracks_last_successful_cycle(tmp_path: Path) -> None:
    script = ['"a"', 503, '"b"', "refused", '"b"', None, '"c"', 500]

    def handler(request: httpx.Request) -> httpx.Response:
        step = script.pop(0)
        if step == "refused":
            raise httpx.ConnectError("refused", request=request)
        if isinstance(step, int):
            return httpx.Response(step)
        if step is None:
            return httpx.Response(200)
        return httpx.Response(200, headers={"ETag": step})

    poller, store, _board, events = _make_poller(tmp_path, handler)
    for _ in range(8):
        await poller.run_cycle()

    assert store.load().token == "c"
    changes = [e.token for e in events if isinstance(e, ChangeEvent)]
    assert changes == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_corrupt_store_propagates(tmp_path: Path) -> None:
    poller, _store, board, _events = _make_poller(tmp_path, _etag_response('"abc"'))
    state_file = tmp_path / "etag" / "etag.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text("{oops", encoding="utf-8")

    with pytest.raises(CorruptStateError):
        await poller.run_cycle()
    assert board.snapshot().running is True


def test_classify_tls_failure_as_transient() -> None:
    try:
        try:
            raise ssl.SSLError(1, "certificate verify failed")
        except ssl.SSLError as inner:
            raise httpx.ConnectError("handshake failed") from inner
    except httpx.ConnectError as e:
        assert classify_transport_error(e) is ErrorClass.TRANSIENT


def test_classify_dns_failure_as_external() -> None:
    try:
        try:
            raise socket.gaierror(-2, "Name or service not known")
        except socket.gaierror as inner:
            raise httpx.ConnectError("dns") from inner
    except httpx.ConnectError as e:
        assert classify_transport_error(e) is ErrorClass.EXTERNAL


def test_classify_other_transport_errors_as_transient() -> None:
    assert classify_transport_error(httpx.ConnectTimeout("slow")) is ErrorClass.TRANSIENT
    assert classify_transport_error(httpx.RemoteProtocolError("bad")) is ErrorClass.TRANSIENT
