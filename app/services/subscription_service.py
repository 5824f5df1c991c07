"""
Subscription reconciliation.

Translates confirmed payment events into the Subscription row, the ledger and the
user's entitlements. The Subscription (with its payment) is committed first and
the User write follows; a crash between the two leaves User.plan out of step
with the row, in either direction, until repair_plan_drift runs.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import GatewayError, NotFoundError, ReconciliationError
from app.models.subscription import Subscription
from app.models.user import User
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.user_repository import UserRepository
from app.services.entitlement_service import EntitlementService
from app.services.ledger_service import PaymentLedger
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


class ReconcileRequest(BaseModel):
    gateway: str  # stripe, flutterwave, manual
    provider_ref: str
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    period_end: Optional[datetime] = None


class SubscriptionService:
    def __init__(
        self,
        repo: SubscriptionRepository,
        user_repo: UserRepository,
        entitlements: EntitlementService,
        ledger: PaymentLedger,
        stripe_gateway=None,
    ):
        self.repo = repo
        self.user_repo = user_repo
        self.entitlements = entitlements
        self.ledger = ledger
        self.stripe_gateway = stripe_gateway

    def _default_end(self, now: datetime) -> datetime:
        return now + timedelta(days=settings.RENEWAL_PERIOD_DAYS)

    def resolve_user(self, request: ReconcileRequest) -> User:
        """
        Find the user a payment belongs to: event metadata first, then the Stripe
        customer mapping (our own rows, then the customer's metadata at Stripe).
        """
        user_id = request.user_id
        if not user_id and request.customer_id:
            known = self.repo.get_by_stripe_customer_id(request.customer_id)
            if known is not None:
                user_id = known.user_id
            elif self.stripe_gateway is not None:
                user_id = self.stripe_gateway.lookup_customer_user_id(request.customer_id)

        if not user_id:
            raise ReconciliationError(
                f"Could not resolve user for {request.gateway} payment {request.provider_ref}"
            )
        user = self.user_repo.get_by_id(user_id)
        if user is None:
            raise ReconciliationError(
                f"User {user_id} from {request.gateway} payment {request.provider_ref} does not exist"
            )
        return user

    def _store_provider(self, subscription: Subscription, request: ReconcileRequest) -> None:
        # A manual grant must not hide the gateway that actually bills the user
        if request.gateway != "manual" or not subscription.provider_name:
            subscription.provider_name = request.gateway
        if request.gateway == "stripe":
            if request.customer_id:
                subscription.stripe_customer_id = request.customer_id
            if request.subscription_id:
                subscription.stripe_subscription_id = request.subscription_id
        elif request.gateway == "flutterwave":
            subscription.flutterwave_tx_ref = request.provider_ref

    def reconcile(self, request: ReconcileRequest) -> Subscription:
        """
        Bring the user to the pro plan for a confirmed payment.

        Raises ReconciliationError (before any write) when the user cannot be found.
        """
        user = self.resolve_user(request)
        subscription = self.repo.get_or_create(user.id, provider_name=request.gateway)
        now = utcnow()
        period_end = as_utc(request.period_end)

        apply_plan = True
        if user.plan == "pro" and subscription.status == "active":
            current_end = as_utc(subscription.end_date)
            if period_end and (current_end is None or period_end > current_end):
                subscription.end_date = period_end
                subscription.renewal_date = period_end
                logger.info(f"Subscription {subscription.id} renewed until {period_end} ({request.provider_ref})")
            else:
                apply_plan = False
                logger.info(f"User {user.id} already on active pro plan; skipping upgrade for {request.provider_ref}")
        else:
            end = period_end or self._default_end(now)
            subscription.status = "active"
            subscription.plan = "pro"
            if subscription.start_date is None:
                subscription.start_date = now
            subscription.end_date = end
            subscription.renewal_date = end
            logger.info(f"User {user.id} upgraded to pro via {request.gateway} until {end}")

        self._store_provider(subscription, request)
        if request.amount is not None:
            self.ledger.record(
                subscription,
                amount=request.amount,
                currency=request.currency or "",
                reference=request.provider_ref,
                provider=request.gateway,
            )
        self.repo.save(subscription)

        if apply_plan:
            self.entitlements.apply(user, "pro", as_utc(subscription.end_date))
        return subscription

    def record_failed_payment(self, request: ReconcileRequest) -> None:
        user = self.resolve_user(request)
        self.ledger.append(
            user.id,
            amount=request.amount or Decimal("0"),
            currency=request.currency or "",
            reference=request.provider_ref,
            provider=request.gateway,
            status="failed",
        )
        logger.warning(f"Payment {request.provider_ref} failed for user {user.id}")

    def handle_subscription_deleted(self, request: ReconcileRequest) -> Optional[Subscription]:
        """The gateway ended the subscription: expire the row and downgrade the user."""
        user = self.resolve_user(request)
        subscription = self.repo.get_by_user_id(user.id)
        if subscription is None:
            logger.info(f"No subscription row for user {user.id}; nothing to expire")
            return None
        if request.subscription_id and request.subscription_id != subscription.stripe_subscription_id:
            logger.info(
                f"Ignoring deletion of Stripe subscription {request.subscription_id} "
                f"not tracked for user {user.id}"
            )
            return subscription

        subscription.status = "expired"
        subscription.plan = "free"
        subscription.end_date = as_utc(request.period_end) or utcnow()
        subscription.renewal_date = None
        self.repo.save(subscription)
        self.entitlements.apply(user, "free")
        logger.info(f"Subscription {subscription.id} expired by gateway; user {user.id} downgraded")
        return subscription

    def cancel(self, user_id: str) -> Tuple[Subscription, str]:
        subscription = self.repo.get_by_user_id(user_id)
        if subscription is None or subscription.status != "active":
            raise NotFoundError("No active subscription found")

        if subscription.provider_name == "stripe" and subscription.stripe_subscription_id:
            if self.stripe_gateway is None:
                raise GatewayError("Stripe gateway not available")
            self.stripe_gateway.cancel_at_period_end(subscription.stripe_subscription_id)
            subscription.status = "cancelled"
            self.repo.save(subscription)
            logger.info(f"Subscription {subscription.id} will end at {subscription.end_date}")
            return subscription, "Subscription will be cancelled at the end of the billing period"

        subscription.status = "cancelled"
        subscription.plan = "free"
        self.repo.save(subscription)
        user = self.user_repo.get_by_id(user_id)
        if user is not None:
            self.entitlements.apply(user, "free")
        logger.info(f"Subscription {subscription.id} cancelled; user {user_id} downgraded")
        return subscription, "Subscription cancelled successfully"

    def _synthesize_pro_subscription(self, user: User) -> Subscription:
        now = utcnow()
        subscription = self.repo.get_or_create(user.id)
        subscription.status = "active"
        subscription.plan = "pro"
        subscription.start_date = now
        subscription.end_date = self._default_end(now)
        subscription.renewal_date = subscription.end_date
        self.repo.save(subscription)
        logger.warning(f"Created missing subscription row for pro user {user.id}")
        return subscription

    def get_status(self, user: User) -> Dict[str, Any]:
        subscription = self.repo.get_by_user_id(user.id)
        if subscription is None:
            if user.plan != "pro":
                return {
                    "status": "none",
                    "plan": "free",
                    "start_date": None,
                    "end_date": None,
                    "renewal_date": None,
                    "provider": None,
                }
            subscription = self._synthesize_pro_subscription(user)

        return {
            "status": subscription.status,
            "plan": subscription.plan,
            "start_date": as_utc(subscription.start_date),
            "end_date": as_utc(subscription.end_date),
            "renewal_date": as_utc(subscription.renewal_date),
            "provider": subscription.provider_name,
        }

    def manual_upgrade(self, user_id: str) -> Subscription:
        if self.user_repo.get_by_id(user_id) is None:
            raise NotFoundError("User not found")
        request = ReconcileRequest(
            gateway="manual",
            provider_ref=f"manual-{int(utcnow().timestamp() * 1000)}-{user_id}",
            user_id=user_id,
        )
        return self.reconcile(request)

    def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> int:
        """
        Expire active subscriptions past end_date plus the grace window, and
        downgrade cancelled ones whose paid period is over.
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=settings.EXPIRY_GRACE_HOURS)
        count = 0

        for subscription in self.repo.list_active_ending_before(cutoff):
            subscription.status = "expired"
            subscription.plan = "free"
            self.repo.save(subscription)
            self._downgrade_user(subscription.user_id)
            count += 1

        for subscription in self.repo.list_cancelled_pro_ending_before(now):
            subscription.plan = "free"
            self.repo.save(subscription)
            self._downgrade_user(subscription.user_id)
            count += 1

        if count:
            logger.info(f"Expiry sweep downgraded {count} subscriptions")
        return count

    def _downgrade_user(self, user_id: str) -> None:
        user = self.user_repo.get_by_id(user_id)
        if user is not None and user.plan != "free":
            self.entitlements.apply(user, "free")

    def _grants_pro(self, subscription: Subscription, cutoff: datetime) -> bool:
        if subscription.plan != "pro" or subscription.status not in ("active", "cancelled"):
            return False
        end = as_utc(subscription.end_date)
        return end is None or end >= cutoff

    def repair_plan_drift(self, now: Optional[datetime] = None) -> int:
        """
        Bring User.plan back in line with the Subscription row, in both directions.

        Users behind an active pro subscription are upgraded. Pro users whose row
        is expired, downgraded or past its window (plus grace) are downgraded, and
        pro users with no row get one synthesized.
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=settings.EXPIRY_GRACE_HOURS)
        repaired = 0

        for subscription in self.repo.list_active_pro():
            end = as_utc(subscription.end_date)
            if end is not None and end < now:
                continue
            user = self.user_repo.get_by_id(subscription.user_id)
            if user is not None and user.plan != "pro":
                logger.warning(f"User {user.id} on {user.plan} despite active pro subscription {subscription.id}")
                self.entitlements.apply(user, "pro", end)
                repaired += 1

        for user in self.user_repo.list_by_plan("pro"):
            subscription = self.repo.get_by_user_id(user.id)
            if subscription is None or subscription.status == "pending":
                self._synthesize_pro_subscription(user)
                repaired += 1
            elif not self._grants_pro(subscription, cutoff):
                logger.warning(
                    f"User {user.id} still on pro despite {subscription.status}/{subscription.plan} "
                    f"subscription {subscription.id}"
                )
                self.entitlements.apply(user, "free")
                repaired += 1

        if repaired:
            logger.info(f"Drift sweep repaired {repaired} records")
        return repaired


def build_subscription_service(db, stripe_gateway=None) -> SubscriptionService:
    repo = SubscriptionRepository(db)
    user_repo = UserRepository(db)
    return SubscriptionService(
        repo=repo,
        user_repo=user_repo,
        entitlements=EntitlementService(user_repo),
        ledger=PaymentLedger(repo),
        stripe_gateway=stripe_gateway,
    )
