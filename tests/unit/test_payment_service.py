"""
Event processing through the idempotency guard: replays, failures and the
user-initiated verify path.
"""
import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from app.core.errors import ForbiddenError, GatewayError, ValidationError
from app.db.session import SessionLocal
from app.models.payment import Payment
from app.models.subscription import Subscription
from app.schemas.events import FlutterwaveChargeCompleted, StripeCheckoutCompleted, StripeInvoicePaid
from app.schemas.user import CurrentUser
from app.services.flutterwave_service import ChargeVerification
from app.services.idempotency import Admission
from app.services.payment_service import build_payment_service
from app.utils.dates import as_utc, utcnow


def _verified(tx_ref="proj-171000-U1", user_id="U1", amount="5000", success=True):
    return ChargeVerification(
        success=success,
        tx_ref=tx_ref,
        amount=Decimal(amount),
        currency="NGN",
        user_id=user_id,
        message=None if success else "Charge status is failed",
    )


@pytest.fixture
def flutterwave_mock():
    gateway = Mock()
    gateway.verify_charge.return_value = _verified()
    return gateway


@pytest.fixture
def service(db, guard, flutterwave_mock):
    return build_payment_service(db, guard=guard, stripe_gateway=Mock(), flutterwave_gateway=flutterwave_mock)


def _charge_event(tx_ref="proj-171000-U1"):
    return FlutterwaveChargeCompleted(tx_ref=tx_ref, user_id="U1", amount=Decimal("5000"), currency="NGN")


def test_flutterwave_charge_upgrades_user(service, db, make_user, fake_redis):
    user = make_user("U1")

    assert service.process_event(_charge_event()) == "processed"

    db.refresh(user)
    assert user.plan == "pro"
    subscription = db.query(Subscription).filter_by(user_id="U1").one()
    assert subscription.status == "active"
    assert abs((as_utc(subscription.end_date) - (utcnow() + timedelta(days=30))).total_seconds()) < 60
    payment = db.query(Payment).one()
    assert (payment.amount, payment.currency) == (Decimal("5000"), "NGN")
    assert fake_redis.get("idempotency:flutterwave:proj-171000-U1") == "done"


def test_replayed_delivery_is_applied_once(service, db, make_user, flutterwave_mock):
    make_user("U1")

    outcomes = [service.process_event(_charge_event()) for _ in range(5)]

    assert outcomes == ["processed"] + [Admission.DONE.value] * 4
    assert db.query(Payment).count() == 1
    assert flutterwave_mock.verify_charge.call_count == 1


def test_delivery_while_in_flight_is_a_no_op(service, db, make_user, guard, flutterwave_mock):
    make_user("U1")
    guard.admit("flutterwave:proj-171000-U1")

    assert service.process_event(_charge_event()) == Admission.IN_FLIGHT.value
    assert db.query(Payment).count() == 0
    flutterwave_mock.verify_charge.assert_not_called()


def test_failed_verification_releases_marker(service, db, make_user, flutterwave_mock, fake_redis):
    make_user("U1")
    flutterwave_mock.verify_charge.return_value = _verified(success=False)

    assert service.process_event(_charge_event()) == "ignored"

    assert fake_redis.get("idempotency:flutterwave:proj-171000-U1") is None
    assert db.query(Subscription).count() == 0


def test_unresolvable_user_is_dropped_and_released(service, db, flutterwave_mock, fake_redis):
    flutterwave_mock.verify_charge.return_value = _verified(tx_ref="proj-1-ghost", user_id="ghost")

    assert service.process_event(_charge_event("proj-1-ghost")) == "unresolved"

    assert fake_redis.get("idempotency:flutterwave:proj-1-ghost") is None
    assert db.query(Payment).count() == 0


def test_gateway_failure_releases_and_propagates(service, make_user, flutterwave_mock, guard):
    make_user("U1")
    flutterwave_mock.verify_charge.side_effect = GatewayError("Flutterwave verification unavailable")

    with pytest.raises(GatewayError):
        service.process_event(_charge_event())

    assert guard.admit("flutterwave:proj-171000-U1") == Admission.ADMITTED


def test_retry_after_failure_succeeds(service, db, make_user, flutterwave_mock):
    make_user("U1")
    flutterwave_mock.verify_charge.side_effect = [GatewayError("down"), _verified()]

    with pytest.raises(GatewayError):
        service.process_event(_charge_event())
    assert service.process_event(_charge_event()) == "processed"
    assert db.query(Payment).count() == 1


def test_stripe_checkout_then_invoice_records_one_payment(service, db, make_user):
    user = make_user("U1")
    checkout = StripeCheckoutCompleted(
        event_id="evt_checkout", session_id="cs_1", user_id="U1", customer_id="cus_1", subscription_id="sub_1",
    )
    invoice = StripeInvoicePaid(
        event_id="evt_invoice", invoice_id="in_1", user_id="U1", customer_id="cus_1", subscription_id="sub_1",
        amount=Decimal("5"), currency="USD",
    )

    assert service.process_event(checkout) == "processed"
    assert service.process_event(invoice) == "processed"
    assert service.process_event(invoice) == Admission.DONE.value

    db.refresh(user)
    assert user.plan == "pro"
    payment = db.query(Payment).one()
    assert payment.provider == "stripe"
    assert payment.reference == "in_1"


def test_verify_regional_payment(service, db, make_user):
    user = make_user("U1")

    result = service.verify_regional_payment("proj-171000-U1", CurrentUser.model_validate(user))

    assert result["success"] is True
    db.refresh(user)
    assert user.plan == "pro"


def test_verify_after_webhook_reports_success_without_reapplying(service, db, make_user, flutterwave_mock):
    user = make_user("U1")
    service.process_event(_charge_event())

    result = service.verify_regional_payment("proj-171000-U1", CurrentUser.model_validate(user))

    assert result == {"success": True, "message": "Payment already processed"}
    assert flutterwave_mock.verify_charge.call_count == 1
    assert db.query(Payment).count() == 1


def test_verify_failure_is_a_validation_error_and_releases(service, make_user, flutterwave_mock, guard):
    user = make_user("U1")
    flutterwave_mock.verify_charge.return_value = _verified(success=False)

    with pytest.raises(ValidationError):
        service.verify_regional_payment("proj-171000-U1", CurrentUser.model_validate(user))

    assert guard.admit("flutterwave:proj-171000-U1") == Admission.ADMITTED


def test_verify_rejects_reference_of_another_user(service, make_user):
    user = make_user("U2")
    with pytest.raises(ForbiddenError):
        service.verify_regional_payment("proj-171000-U1", CurrentUser.model_validate(user))


@patch("app.services.flutterwave_service.requests.get")
def test_charge_webhook_end_to_end(mock_get, db, guard, make_user, flutterwave_gateway, flutterwave_verify_response):
    user = make_user("U1")
    resp = Mock(status_code=200, content=b"{}")
    resp.json.return_value = flutterwave_verify_response("proj-171000-U1")
    mock_get.return_value = resp
    service = build_payment_service(db, guard=guard, flutterwave_gateway=flutterwave_gateway)
    event = flutterwave_gateway.parse_event(
        {"data": {"tx_ref": "proj-171000-U1", "status": "successful", "amount": 5000, "currency": "NGN"}},
        None,
    )

    assert service.process_event(event) == "processed"
    assert service.process_event(event) == Admission.DONE.value

    db.refresh(user)
    assert user.plan == "pro"
    assert db.query(Payment).count() == 1


def test_concurrent_deliveries_apply_once(db, guard, make_user):
    user = make_user("U1")
    short_circuited = threading.Event()
    gateway = Mock()

    def verify(tx_ref):
        # Hold the admitted delivery until the duplicate has been turned away
        short_circuited.wait(timeout=5)
        return _verified(tx_ref)

    gateway.verify_charge.side_effect = verify
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(2)

    def deliver():
        session = SessionLocal()
        try:
            service = build_payment_service(session, guard=guard, flutterwave_gateway=gateway)
            barrier.wait()
            outcome = service.process_event(_charge_event())
        finally:
            session.close()
        if outcome != "processed":
            short_circuited.set()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == [Admission.IN_FLIGHT.value, "processed"]
    assert gateway.verify_charge.call_count == 1
    assert db.query(Payment).count() == 1
    subscription = db.query(Subscription).filter_by(user_id="U1").one()
    assert abs((as_utc(subscription.end_date) - (utcnow() + timedelta(days=30))).total_seconds()) < 60
    db.refresh(user)
    assert as_utc(user.plan_expiry_date) == as_utc(subscription.end_date)
