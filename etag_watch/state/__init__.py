"""Durable watch state and the in-memory poll status."""

from .status import StatusBoard
from .store import CorruptStateError, StateStore, StateStoreError

__all__ = ["StateStore", "StateStoreError", "CorruptStateError", "StatusBoard"]
