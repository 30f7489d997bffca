from __future__ import annotations

from typing import Optional


class DeliveryError(Exception):
    """A queued response could not be delivered."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, reason: Optional[str] = None):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Network failure, timeout or a server-side error. Retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """The server rejected the payload. Never retried automatically."""
