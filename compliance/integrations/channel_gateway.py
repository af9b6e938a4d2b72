"""
Compliance Engine
Channel gateway — outbound delivery of reminder notices.

The engine never talks to SMTP/SMS/push providers itself. It hands each
channel attempt to a ``ChannelSender`` and records what came back.

    sender.send("email", recipient, payload) -> DeliveryResult

``LoggingChannelSender`` is the default: it logs the notice and reports
success (dev/test mode, nothing leaves the process).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from compliance.models.reminder import CHANNELS

logger = logging.getLogger(__name__)


class DeliveryResult:
    """Outcome of one channel attempt.

    Attributes:
        success: True when the channel accepted the notice.
        error:   Human-readable error message or None.
    """

    def __init__(self, success: bool, error: str | None = None) -> None:
        self.success = success
        self.error = error

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(True)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(False, error or "delivery failed")

    def __repr__(self):
        return f"<DeliveryResult success={self.success} error={self.error!r}>"


class ChannelSender(ABC):
    """Delivery adapter. One implementation handles every channel it supports."""

    @abstractmethod
    def send(self, channel: str, recipient, payload: dict) -> DeliveryResult:
        """Deliver ``payload`` to ``recipient`` over ``channel``.

        Implementations report transport problems through the result, not by
        raising. The lifecycle still guards against exceptions.
        """


class LoggingChannelSender(ChannelSender):
    """Log-only sender; every known channel succeeds. Keeps only a counter."""

    def __init__(self) -> None:
        self.delivered = 0

    def send(self, channel: str, recipient, payload: dict) -> DeliveryResult:
        if channel not in CHANNELS:
            return DeliveryResult.failed(f"Unsupported channel: {channel}")
        address = getattr(recipient, "address", None) or "unknown"
        logger.info(
            "[LOG-ONLY] %s to %s: %s",
            channel, address, payload.get("title"),
            extra={"channel": channel, "reminder_id": payload.get("reminder_id")},
        )
        self.delivered += 1
        return DeliveryResult.ok()
