# services/payments/base.py
"""
Provider interface + normalized webhook event model.

Each gateway turns its provider's raw callback into one of the ProviderEvent
variants below. Anything the settlement code should not act on becomes
UnrecognizedEvent, which is logged and acknowledged.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, Protocol, Union


class Provider(str, enum.Enum):
    CARD = "CARD"
    WALLET = "WALLET"

    @classmethod
    def from_slug(cls, slug: str) -> "Provider":
        key = (slug or "").strip().lower()
        if key in ("card", "stripe"):
            return cls.CARD
        if key in ("wallet", "paypal"):
            return cls.WALLET
        raise LookupError(f"Unknown payment provider: {slug}")

    @property
    def slug(self) -> str:
        return self.value.lower()


@dataclass
class OrderResult:
    order_id: str                 # provider's id (checkout session / order)
    redirect_url: Optional[str]   # hosted page to send the payer to
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    success: bool
    provider_payment_id: Optional[str]
    status: str                   # provider's own status string


# ---- normalized webhook events ----

@dataclass
class OrderApproved:
    order_id: str
    event_id: Optional[str] = None
    event_type: str = ""


@dataclass
class PaymentCompleted:
    order_id: str
    provider_payment_id: Optional[str]
    event_id: Optional[str] = None
    event_type: str = ""


@dataclass
class PaymentFailed:
    order_id: str
    reason: str
    event_id: Optional[str] = None
    event_type: str = ""


@dataclass
class UnrecognizedEvent:
    event_type: str
    event_id: Optional[str] = None
    note: str = ""


ProviderEvent = Union[OrderApproved, PaymentCompleted, PaymentFailed, UnrecognizedEvent]


class ProviderGateway(Protocol):
    provider: Provider
    supports_capture: bool

    def create_order(self, *, contest_id: str, payer_id: str, amount: Decimal,
                     currency: str, title: str, return_url: str, cancel_url: str,
                     customer_email: Optional[str] = None) -> OrderResult:
        """
        Open a checkout/order on the provider. The provider sends the payer
        back to return_url with ?token=<order id>.
        Raises ConfigurationError when disabled or missing credentials,
        ProviderCommunicationError on network failure or non-2xx.
        """

    def capture_order(self, order_id: str) -> CaptureResult:
        """
        Move approved funds. Must be idempotent: capturing an already
        captured order returns the existing success result.
        """

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        """
        Translate a verified webhook body into a ProviderEvent.
        Raise ValueError on bodies that are not JSON objects.
        """
