"""Live subscriber sessions: queries, broadcasts and heartbeats."""

from .protocol import PING_MESSAGE, encode_event, is_pong, query_response
from .service import Subscriber, SubscriberConnection, SubscriptionService

__all__ = [
    "PING_MESSAGE",
    "Subscriber",
    "SubscriberConnection",
    "SubscriptionService",
    "encode_event",
    "is_pong",
    "query_response",
]
