"""Probe cycle and the supervisor loop that keeps it running."""

from .probe import Poller, classify_transport_error, normalize_token
from .supervisor import Supervisor

__all__ = ["Poller", "Supervisor", "classify_transport_error", "normalize_token"]
