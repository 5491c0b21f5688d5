"""Notification channels and the dispatcher that fans events out to them."""

from .base import ChannelOutcome, NotificationChannel, NotificationError, build_message
from .broadcast import BroadcastChannel
from .mail import EmailChannel
from .notifier import Notifier

__all__ = [
    "BroadcastChannel",
    "ChannelOutcome",
    "EmailChannel",
    "NotificationChannel",
    "NotificationError",
    "Notifier",
    "build_message",
]
