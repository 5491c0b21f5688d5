from __future__ import annotations

import asyncio
import smtplib

import pytest

from etag_watch.config import EmailConfig
from etag_watch.models import ChangeEvent, ErrorClass, FailureEvent
from etag_watch.notifications import (
    ChannelOutcome,
    EmailChannel,
    NotificationChannel,
    NotificationError,
    Notifier,
    build_message,
)


CHANGE = ChangeEvent(token="abc123", observed_at=1_700_000_000_000)


class _RecordingChannel(NotificationChannel):
    def __init__(self, name: str, *, fail: bool = False, delay: float = 0.0):
        self.name = name
        self.fail = fail
        self.delay = delay
        self.events: list = []
        self.closed = False

    async def send(self, event):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise NotificationError(f"{self.name} is down")
        self.events.append(event)
        return ChannelOutcome.SENT

    async def close(self) -> None:
        self.closed = True


class _FakeSMTP:
    instances: list["_FakeSMTP"] = []

    def __init__(self, host: str, port: int, timeout: float = 0):
        self.host = host
        self.port = port
        self.started_tls = False
        self.login_args = None
        self.sent: list = []
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def starttls(self, context=None) -> None:
        self.started_tls = True

    def login(self, user: str, password: str) -> None:
        self.login_args = (user, password)

    def send_message(self, msg) -> None:
        self.sent.append(msg)


def test_build_message_for_change_and_failure() -> None:
    subject, body = build_message(CHANGE)
    assert subject == "Watched resource changed"
    assert body == "ETag: abc123\nTimestamp: 2023-11-14T22:13:20.000Z"

    subject, body = build_message(FailureEvent(error_class=ErrorClass.EXTERNAL, detail="refused", occurred_at=0))
    assert subject == "Watcher error: external"
    assert "Detail: refused" in body
    assert "1970-01-01T00:00:00.000Z" in body


@pytest.mark.asyncio
async def test_dispatch_isolates_failing_channel() -> None:
    broken = _RecordingChannel("broken", fail=True)
    healthy = _RecordingChannel("healthy")
    notifier = Notifier([broken, healthy])

    outcomes = await notifier.dispatch(CHANGE)

    assert outcomes == {"broken": ChannelOutcome.FAILED, "healthy": ChannelOutcome.SENT}
    assert healthy.events == [CHANGE]


@pytest.mark.asyncio
async def test_notify_does_not_wait_for_slow_channels() -> None:
    slow = _RecordingChannel("slow", delay=0.2)
    notifier = Notifier([slow])
    notifier.start()

    loop = asyncio.get_running_loop()
    started = loop.time()
    notifier.notify(CHANGE)
    assert loop.time() - started < 0.05

    await notifier.stop(timeout=1)
    assert slow.events == [CHANGE]
    assert slow.closed


@pytest.mark.asyncio
async def test_full_queue_drops_events() -> None:
    channel = _RecordingChannel("c")
    notifier = Notifier([channel], queue_size=1)

    notifier.notify(CHANGE)
    notifier.notify(ChangeEvent(token="dropped", observed_at=2))

    notifier.start()
    await notifier.stop(timeout=1)
    assert channel.events == [CHANGE]


@pytest.mark.asyncio
async def test_email_without_recipients_is_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSMTP.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)

    outcome = await EmailChannel(EmailConfig()).send(CHANGE)

    assert outcome is ChannelOutcome.SKIPPED
    assert _FakeSMTP.instances == []


@pytest.mark.asyncio
async def test_email_sends_one_message_per_recipient(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSMTP.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    config = EmailConfig(
        username="bot@example.com",
        password="secret",
        sender="Watcher <bot@example.com>",
        recipients=["a@example.com", "b@example.com"],
    )

    outcome = await EmailChannel(config).send(CHANGE)

    assert outcome is ChannelOutcome.SENT
    (smtp,) = _FakeSMTP.instances
    assert (smtp.host, smtp.port) == ("smtp.gmail.com", 587)
    assert smtp.started_tls
    assert smtp.login_args == ("bot@example.com", "secret")
    assert [m["To"] for m in smtp.sent] == ["a@example.com", "b@example.com"]
    msg = smtp.sent[0]
    assert msg["Subject"] == "Watched resource changed"
    assert "ETag: abc123" in msg.get_body(preferencelist=("plain",)).get_content()
    assert "<br>" in msg.get_body(preferencelist=("html",)).get_content()


@pytest.mark.asyncio
async def test_email_transport_failure_raises_notification_error(monkeypatch: pytest.MonkeyPatch) -> None:
    class _Unreachable(_FakeSMTP):
        def __init__(self, host: str, port: int, timeout: float = 0):
            raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr(smtplib, "SMTP", _Unreachable)
    channel = EmailChannel(EmailConfig(recipients=["a@example.com"]))

    with pytest.raises(NotificationError):
        await channel.send(CHANGE)

