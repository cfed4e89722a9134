"""Custom exceptions for the live monitoring layer."""


class MonitorError(Exception):
    """Base exception for monitoring errors."""


class WatchInitError(MonitorError):
    """Raised when the filesystem watcher cannot be started."""
