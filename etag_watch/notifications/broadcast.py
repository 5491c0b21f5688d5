from __future__ import annotations

import structlog

from ..models import Event
from ..subscriptions.service import SubscriptionService
from .base import ChannelOutcome, NotificationChannel


logger = structlog.get_logger(__name__)


class BroadcastChannel(NotificationChannel):
    """Pushes events to every live subscriber session."""

    name = "subscribers"

    def __init__(self, service: SubscriptionService):
        self._service = service

    async def send(self, event: Event) -> ChannelOutcome:
        delivered = self._service.publish(event)
        if delivered == 0:
            return ChannelOutcome.SKIPPED
        logger.debug("Event queued for subscribers", subscribers=delivered)
        return ChannelOutcome.SENT
