"""Single-resource change watcher: HEAD probe, durable token, notifications, live subscribers."""

__version__ = "0.1.0"
