"""Error types shared across the clip sources and the delivery layer."""
from __future__ import annotations


class SessionError(RuntimeError):
    """Raised when the device rejects a login or an authenticated request."""


class SourceError(RuntimeError):
    """Raised when a clip source cannot produce results for a window or scan."""


class DeliveryError(RuntimeError):
    """Raised when clip bytes cannot be delivered to the HTTP client."""


class ConfigError(ValueError):
    """Raised when a device lacks the configuration an operation requires."""


__all__ = ["ConfigError", "DeliveryError", "SessionError", "SourceError"]
