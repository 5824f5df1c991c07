"""
Normalized payment events.

Gateway adapters decode webhook payloads into exactly one of these variants; the
rest of the system never looks at raw gateway JSON. Variants are discriminated by
``kind`` so they survive a JSON round trip through the task queue.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class _StripeEvent(BaseModel):
    gateway: Literal["stripe"] = "stripe"
    event_id: str
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"stripe:{self.event_id}"


class StripeCheckoutCompleted(_StripeEvent):
    kind: Literal["stripe.checkout_completed"] = "stripe.checkout_completed"
    session_id: str


class StripeInvoicePaid(_StripeEvent):
    kind: Literal["stripe.invoice_paid"] = "stripe.invoice_paid"
    invoice_id: str
    amount: Decimal
    currency: str
    period_end: Optional[datetime] = None


class StripeInvoiceFailed(_StripeEvent):
    kind: Literal["stripe.invoice_failed"] = "stripe.invoice_failed"
    invoice_id: str
    amount: Decimal
    currency: str


class StripeSubscriptionDeleted(_StripeEvent):
    kind: Literal["stripe.subscription_deleted"] = "stripe.subscription_deleted"
    period_end: Optional[datetime] = None


class FlutterwaveChargeCompleted(BaseModel):
    kind: Literal["flutterwave.charge_completed"] = "flutterwave.charge_completed"
    gateway: Literal["flutterwave"] = "flutterwave"
    tx_ref: str
    user_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"flutterwave:{self.tx_ref}"


PaymentEvent = Annotated[
    Union[
        StripeCheckoutCompleted,
        StripeInvoicePaid,
        StripeInvoiceFailed,
        StripeSubscriptionDeleted,
        FlutterwaveChargeCompleted,
    ],
    Field(discriminator="kind"),
]

_payment_event_adapter = TypeAdapter(PaymentEvent)


def parse_payment_event(data: Dict[str, Any]) -> PaymentEvent:
    """Rebuild a typed event from its JSON form (as queued by the webhook routes)."""
    return _payment_event_adapter.validate_python(data)
