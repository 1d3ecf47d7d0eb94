"""
Outbound notification transport contract.

A transport delivers one message to one or more recipients and either
returns a receipt or raises ``TransportError`` saying whether the failure is
worth retrying. The dispatcher reads two capability flags:

  supports_multi_recipient  - one send may carry several recipients
  honours_idempotency_key   - the provider dedupes on the key we pass, so a
                              send abandoned mid-flight can be safely re-issued
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Recipient:
    id: str
    address: str


@dataclass(frozen=True)
class OutboundMessage:
    recipients: tuple[Recipient, ...]
    subject: str
    body: str
    idempotency_key: str
    html: str | None = None


@dataclass(frozen=True)
class SendReceipt:
    message_id: str
    accepted: tuple[str, ...] = field(default_factory=tuple)


class TransportError(Exception):
    """Delivery failure, classified by the transport."""

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class Transport(ABC):
    supports_multi_recipient: bool = False
    honours_idempotency_key: bool = False

    @abstractmethod
    async def send(self, message: OutboundMessage) -> SendReceipt:
        """Deliver ``message`` or raise TransportError."""
