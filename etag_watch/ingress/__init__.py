"""Per-origin admission control."""

from .limiter import IngressKind, IngressLimiter, get_client_ip

__all__ = ["IngressKind", "IngressLimiter", "get_client_ip"]
