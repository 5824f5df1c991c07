"""
Stripe adapter: signature check over the raw body and event normalization.
"""
import time
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.core.errors import GatewayError, SignatureError
from app.schemas.events import (
    StripeCheckoutCompleted,
    StripeInvoiceFailed,
    StripeInvoicePaid,
    StripeSubscriptionDeleted,
)

PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_missing_signature_is_rejected(stripe_gateway):
    with pytest.raises(SignatureError):
        stripe_gateway.parse_event(b"{}", None)


def test_bad_signature_is_rejected(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("invoice.paid", {}), secret="whsec_other")
    with pytest.raises(SignatureError):
        stripe_gateway.parse_event(payload.encode(), header)


def test_tampered_body_is_rejected(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("invoice.paid", {"amount_paid": 500}))
    tampered = payload.replace("500", "1")
    with pytest.raises(SignatureError):
        stripe_gateway.parse_event(tampered.encode(), header)


def test_stale_timestamp_is_rejected(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("invoice.paid", {}), timestamp=time.time() - 3600)
    with pytest.raises(SignatureError):
        stripe_gateway.parse_event(payload.encode(), header)


def test_missing_webhook_secret_rejects(stripe_gateway, sign_stripe):
    stripe_gateway.webhook_secret = None
    payload, header = sign_stripe(_event("invoice.paid", {}))
    with pytest.raises(SignatureError):
        stripe_gateway.parse_event(payload.encode(), header)


def test_checkout_completed_is_normalized(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("checkout.session.completed", {
        "id": "cs_test_1",
        "customer": "cus_1",
        "subscription": "sub_1",
        "client_reference_id": "U1",
        "metadata": {"userId": "U1"},
    }))
    event = stripe_gateway.parse_event(payload.encode(), header)

    assert isinstance(event, StripeCheckoutCompleted)
    assert event.user_id == "U1"
    assert event.customer_id == "cus_1"
    assert event.subscription_id == "sub_1"
    assert event.dedup_key == "stripe:evt_1"


def test_checkout_without_metadata_uses_client_reference(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("checkout.session.completed", {
        "id": "cs_test_2",
        "client_reference_id": "U7",
    }))
    event = stripe_gateway.parse_event(payload.encode(), header)
    assert event.user_id == "U7"


def test_invoice_paid_converts_minor_units_and_period_end(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("invoice.payment_succeeded", {
        "id": "in_1",
        "customer": "cus_1",
        "subscription": "sub_1",
        "amount_paid": 500,
        "currency": "usd",
        "subscription_details": {"metadata": {"userId": "U1"}},
        "lines": {"data": [{"period": {"start": PERIOD_END - 2592000, "end": PERIOD_END}}]},
    }))
    event = stripe_gateway.parse_event(payload.encode(), header)

    assert isinstance(event, StripeInvoicePaid)
    assert event.amount == Decimal("5")
    assert event.currency == "USD"
    assert event.user_id == "U1"
    assert event.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_invoice_reads_parent_subscription_details(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("invoice.paid", {
        "id": "in_2",
        "customer": "cus_1",
        "amount_paid": 500,
        "currency": "usd",
        "parent": {"subscription_details": {"subscription": "sub_9", "metadata": {"userId": "U9"}}},
    }))
    event = stripe_gateway.parse_event(payload.encode(), header)
    assert event.subscription_id == "sub_9"
    assert event.user_id == "U9"


def test_invoice_failed_is_normalized(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("invoice.payment_failed", {
        "id": "in_3",
        "customer": "cus_1",
        "amount_due": 500,
        "currency": "usd",
    }))
    event = stripe_gateway.parse_event(payload.encode(), header)
    assert isinstance(event, StripeInvoiceFailed)
    assert event.amount == Decimal("5")
    assert event.user_id is None


def test_subscription_deleted_is_normalized(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("customer.subscription.deleted", {
        "id": "sub_1",
        "customer": "cus_1",
        "metadata": {"userId": "U1"},
        "current_period_end": PERIOD_END,
    }))
    event = stripe_gateway.parse_event(payload.encode(), header)
    assert isinstance(event, StripeSubscriptionDeleted)
    assert event.subscription_id == "sub_1"
    assert event.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_unknown_event_type_returns_none(stripe_gateway, sign_stripe):
    payload, header = sign_stripe(_event("customer.created", {"id": "cus_1"}))
    assert stripe_gateway.parse_event(payload.encode(), header) is None


@patch("app.services.stripe_service.stripe.checkout.Session.create")
@patch("app.services.stripe_service.stripe.Customer.create")
@patch("app.services.stripe_service.stripe.Customer.list")
def test_checkout_session_creates_customer_with_user_metadata(mock_list, mock_create, mock_session, stripe_gateway):
    mock_list.return_value = MagicMock(data=[])
    mock_create.return_value = MagicMock(id="cus_new")
    mock_session.return_value = MagicMock(id="cs_1", url="https://checkout.stripe.com/c/cs_1")

    result = stripe_gateway.create_subscription_checkout("U1", "u1@example.com", "User 1")

    assert result == {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}
    assert mock_create.call_args.kwargs["metadata"] == {"userId": "U1"}
    kwargs = mock_session.call_args.kwargs
    assert kwargs["customer"] == "cus_new"
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_pro_monthly", "quantity": 1}]
    assert kwargs["metadata"] == {"userId": "U1"}
    assert kwargs["subscription_data"] == {"metadata": {"userId": "U1"}}


@patch("app.services.stripe_service.stripe.Customer.list")
def test_checkout_session_failure_raises_gateway_error(mock_list, stripe_gateway):
    mock_list.side_effect = stripe.APIConnectionError("network down")
    with pytest.raises(GatewayError):
        stripe_gateway.create_subscription_checkout("U1", "u1@example.com", "User 1")


@patch("app.services.stripe_service.stripe.Subscription.modify")
def test_cancel_at_period_end(mock_modify, stripe_gateway):
    stripe_gateway.cancel_at_period_end("sub_1")
    mock_modify.assert_called_once_with("sub_1", cancel_at_period_end=True, api_key="sk_test_123")


@patch("app.services.stripe_service.stripe.Customer.retrieve")
def test_lookup_customer_user_id(mock_retrieve, stripe_gateway):
    mock_retrieve.return_value = {"id": "cus_1", "metadata": {"userId": "U5"}}
    assert stripe_gateway.lookup_customer_user_id("cus_1") == "U5"
