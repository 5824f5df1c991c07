"""
Stripe adapter (subscription gateway).

Events are pushed and signed; the signature over the raw body is the trust
boundary, so nothing is parsed before ``WebhookSignature.verify_header`` passes.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from app.core.config import settings
from app.core.errors import GatewayError, SignatureError
from app.schemas.events import (
    PaymentEvent,
    StripeCheckoutCompleted,
    StripeInvoiceFailed,
    StripeInvoicePaid,
    StripeSubscriptionDeleted,
)
from app.utils.dates import from_timestamp

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID_TYPES = {"invoice.paid", "invoice.payment_succeeded"}
INVOICE_FAILED = "invoice.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Currencies Stripe bills without a minor unit
ZERO_DECIMAL_CURRENCIES = {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {}


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def _metadata_user_id(*sources: Optional[Dict[str, Any]]) -> Optional[str]:
    for source in sources:
        if not isinstance(source, dict):
            continue
        metadata = source.get("metadata") or {}
        value = metadata.get("userId") or metadata.get("user_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _to_major_units(amount: Any, currency: str) -> Decimal:
    value = Decimal(str(amount or 0))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return value
    return value / Decimal(100)


def _invoice_subscription_details(invoice: Dict[str, Any]) -> Dict[str, Any]:
    # Newer API versions moved subscription details under parent
    parent = invoice.get("parent") or {}
    return invoice.get("subscription_details") or parent.get("subscription_details") or {}


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    return _id_of(invoice.get("subscription")) or _id_of(_invoice_subscription_details(invoice).get("subscription"))


def _invoice_period_end(invoice: Dict[str, Any]):
    lines = (invoice.get("lines") or {}).get("data") or []
    ends = [line.get("period", {}).get("end") for line in lines if isinstance(line, dict)]
    ends = [end for end in ends if end]
    return from_timestamp(max(ends)) if ends else None


def _subscription_period_end(subscription: Dict[str, Any]):
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if isinstance(item, dict) and item.get("current_period_end")]
        value = max(ends) if ends else subscription.get("ended_at")
    return from_timestamp(value)


class StripeGateway:
    name = "stripe"

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        price_id: Optional[str],
        frontend_url: str,
        signature_tolerance: int = 300,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.frontend_url = frontend_url.rstrip("/")
        self.signature_tolerance = signature_tolerance

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise GatewayError("Stripe credentials not configured")
        return self.api_key

    def create_subscription_checkout(self, user_id: str, email: str, name: Optional[str]) -> Dict[str, Any]:
        """Reuse or create the Stripe customer, then open a subscription Checkout Session."""
        api_key = self._require_api_key()
        if not self.price_id:
            raise GatewayError("STRIPE_PRICE_ID is not set")
        try:
            existing = stripe.Customer.list(email=email, limit=1, api_key=api_key)
            if existing.data:
                customer_id = existing.data[0].id
            else:
                customer = stripe.Customer.create(
                    email=email,
                    name=name,
                    metadata={"userId": user_id},
                    api_key=api_key,
                )
                customer_id = customer.id

            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": self.price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{self.frontend_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.frontend_url}/pricing?canceled=true",
                client_reference_id=user_id,
                metadata={"userId": user_id},
                subscription_data={"metadata": {"userId": user_id}},
                api_key=api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session failed for user {user_id}: {e}")
            raise GatewayError("Failed to create payment session") from e

        logger.info(f"Stripe checkout session {session.id} created for user {user_id}")
        return {"id": session.id, "url": session.url}

    def cancel_at_period_end(self, subscription_id: str) -> None:
        api_key = self._require_api_key()
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=True, api_key=api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancel_at_period_end failed for {subscription_id}: {e}")
            raise GatewayError("Failed to cancel subscription with Stripe") from e

    def lookup_customer_user_id(self, customer_id: Optional[str]) -> Optional[str]:
        """Read the userId mapping stored on the Stripe customer when it was created."""
        if not customer_id or not self.api_key:
            return None
        try:
            customer = _as_dict(stripe.Customer.retrieve(customer_id, api_key=self.api_key))
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to retrieve Stripe customer {customer_id}") from e
        if customer.get("deleted"):
            return None
        return _metadata_user_id(customer)

    def parse_event(self, raw_body: bytes, signature_header: Optional[str]) -> Optional[PaymentEvent]:
        """
        Authenticate and decode a webhook delivery.

        Raises SignatureError when the signature is missing or invalid. Returns None
        for event types this service does not act on.
        """
        if not signature_header:
            raise SignatureError("Stripe signature missing")
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set; rejecting webhook")
            raise SignatureError("Webhook secret not configured")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, self.signature_tolerance
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook signature rejected: {e}")
            raise SignatureError() from e

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Stripe webhook body is not JSON after signature check")
            return None

        event_id = event.get("id")
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        if not event_id or not isinstance(obj, dict):
            logger.warning(f"Stripe event without id or object (type={event_type})")
            return None

        if event_type == CHECKOUT_COMPLETED:
            return StripeCheckoutCompleted(
                event_id=event_id,
                session_id=obj.get("id") or event_id,
                user_id=_metadata_user_id(obj) or obj.get("client_reference_id"),
                customer_id=_id_of(obj.get("customer")),
                subscription_id=_id_of(obj.get("subscription")),
            )

        if event_type in INVOICE_PAID_TYPES or event_type == INVOICE_FAILED:
            currency = (obj.get("currency") or "usd").lower()
            details = _invoice_subscription_details(obj)
            common = dict(
                event_id=event_id,
                invoice_id=obj.get("id") or event_id,
                user_id=_metadata_user_id(details, obj),
                customer_id=_id_of(obj.get("customer")),
                subscription_id=_invoice_subscription_id(obj),
                currency=currency.upper(),
            )
            if event_type == INVOICE_FAILED:
                return StripeInvoiceFailed(amount=_to_major_units(obj.get("amount_due"), currency), **common)
            return StripeInvoicePaid(
                amount=_to_major_units(obj.get("amount_paid"), currency),
                period_end=_invoice_period_end(obj),
                **common,
            )

        if event_type == SUBSCRIPTION_DELETED:
            return StripeSubscriptionDeleted(
                event_id=event_id,
                user_id=_metadata_user_id(obj),
                customer_id=_id_of(obj.get("customer")),
                subscription_id=obj.get("id"),
                period_end=_subscription_period_end(obj),
            )

        logger.info(f"Stripe event {event_id} of type {event_type} ignored")
        return None


def build_stripe_gateway() -> StripeGateway:
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        price_id=settings.STRIPE_PRICE_ID,
        frontend_url=settings.FRONTEND_URL,
        signature_tolerance=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    )
