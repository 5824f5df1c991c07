"""
Payment event processing behind the idempotency guard.

Every event goes admit -> act -> complete. A failure releases the marker so the
next delivery (gateway redelivery, task retry or user verify call) can try again.
"""
import logging
from typing import Any, Dict, Optional

from app.core.errors import ForbiddenError, ReconciliationError, ValidationError
from app.models.user import User
from app.schemas.events import (
    FlutterwaveChargeCompleted,
    PaymentEvent,
    StripeCheckoutCompleted,
    StripeInvoiceFailed,
    StripeInvoicePaid,
    StripeSubscriptionDeleted,
)
from app.services.flutterwave_service import ChargeVerification, FlutterwaveGateway
from app.services.idempotency import IdempotencyGuard
from app.services.subscription_service import (
    ReconcileRequest,
    SubscriptionService,
    build_subscription_service,
)
from app.services.stripe_service import StripeGateway

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"
UNRESOLVED = "unresolved"


class PaymentService:
    def __init__(
        self,
        subscriptions: SubscriptionService,
        guard: IdempotencyGuard,
        stripe_gateway: Optional[StripeGateway],
        flutterwave_gateway: Optional[FlutterwaveGateway],
    ):
        self.subscriptions = subscriptions
        self.guard = guard
        self.stripe_gateway = stripe_gateway
        self.flutterwave_gateway = flutterwave_gateway

    def process_event(self, event: PaymentEvent) -> str:
        """
        Apply one normalized event at most once.

        Returns the outcome: "processed", "ignored", "unresolved" or the guard's
        short-circuit value ("in_flight"/"done"). Unexpected errors propagate after
        the marker is released so the task queue can retry.
        """
        key = event.dedup_key
        admission = self.guard.admit(key)
        if admission.is_short_circuit:
            return admission.value

        try:
            handled = self._dispatch(event)
        except ReconciliationError as e:
            logger.error(f"Reconciliation failed for {key}: {e.detail}")
            self.guard.release(key)
            return UNRESOLVED
        except Exception:
            logger.exception(f"Processing failed for {key}")
            self.guard.release(key)
            raise

        if not handled:
            self.guard.release(key)
            return IGNORED
        self.guard.complete(key)
        logger.info(f"Payment event {key} processed")
        return PROCESSED

    def _dispatch(self, event: PaymentEvent) -> bool:
        if isinstance(event, StripeCheckoutCompleted):
            self.subscriptions.reconcile(
                ReconcileRequest(
                    gateway="stripe",
                    provider_ref=event.session_id,
                    user_id=event.user_id,
                    customer_id=event.customer_id,
                    subscription_id=event.subscription_id,
                )
            )
            return True

        if isinstance(event, StripeInvoicePaid):
            self.subscriptions.reconcile(
                ReconcileRequest(
                    gateway="stripe",
                    provider_ref=event.invoice_id,
                    user_id=event.user_id,
                    customer_id=event.customer_id,
                    subscription_id=event.subscription_id,
                    amount=event.amount,
                    currency=event.currency,
                    period_end=event.period_end,
                )
            )
            return True

        if isinstance(event, StripeInvoiceFailed):
            self.subscriptions.record_failed_payment(
                ReconcileRequest(
                    gateway="stripe",
                    provider_ref=event.invoice_id,
                    user_id=event.user_id,
                    customer_id=event.customer_id,
                    subscription_id=event.subscription_id,
                    amount=event.amount,
                    currency=event.currency,
                )
            )
            return True

        if isinstance(event, StripeSubscriptionDeleted):
            self.subscriptions.handle_subscription_deleted(
                ReconcileRequest(
                    gateway="stripe",
                    provider_ref=event.event_id,
                    user_id=event.user_id,
                    customer_id=event.customer_id,
                    subscription_id=event.subscription_id,
                    period_end=event.period_end,
                )
            )
            return True

        if isinstance(event, FlutterwaveChargeCompleted):
            verification = self._verify(event.tx_ref)
            if not verification.success:
                return False
            self._reconcile_charge(verification, fallback_user_id=event.user_id)
            return True

        logger.warning(f"Unhandled payment event kind {getattr(event, 'kind', None)}")
        return False

    def _verify(self, tx_ref: str) -> ChargeVerification:
        if self.flutterwave_gateway is None:
            raise ValidationError("Flutterwave is not configured")
        return self.flutterwave_gateway.verify_charge(tx_ref)

    def _reconcile_charge(self, verification: ChargeVerification, fallback_user_id: Optional[str]) -> None:
        self.subscriptions.reconcile(
            ReconcileRequest(
                gateway="flutterwave",
                provider_ref=verification.tx_ref,
                user_id=verification.user_id or fallback_user_id,
                amount=verification.amount,
                currency=verification.currency,
            )
        )

    def verify_regional_payment(self, tx_ref: str, user: User) -> Dict[str, Any]:
        """
        User-initiated confirmation of a Flutterwave charge after redirect.

        Shares the dedup key with the webhook path, so whichever arrives first
        does the work and the other reports success.
        """
        if not tx_ref or not tx_ref.strip():
            raise ValidationError("Transaction reference is required")
        tx_ref = tx_ref.strip()
        owner = FlutterwaveGateway.user_id_from_tx_ref(tx_ref)
        if owner != user.id:
            raise ForbiddenError("Payment reference does not belong to this user")

        key = FlutterwaveChargeCompleted(tx_ref=tx_ref).dedup_key
        admission = self.guard.admit(key)
        if admission.is_short_circuit:
            return {"success": True, "message": "Payment already processed"}

        try:
            verification = self._verify(tx_ref)
            if not verification.success:
                raise ValidationError(verification.message or "Payment verification failed")
            self._reconcile_charge(verification, fallback_user_id=user.id)
        except Exception:
            self.guard.release(key)
            raise

        self.guard.complete(key)
        return {"success": True, "message": "Payment verified and subscription activated"}


def build_payment_service(
    db,
    guard: IdempotencyGuard,
    stripe_gateway: Optional[StripeGateway] = None,
    flutterwave_gateway: Optional[FlutterwaveGateway] = None,
) -> PaymentService:
    return PaymentService(
        subscriptions=build_subscription_service(db, stripe_gateway=stripe_gateway),
        guard=guard,
        stripe_gateway=stripe_gateway,
        flutterwave_gateway=flutterwave_gateway,
    )
