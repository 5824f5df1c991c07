import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payment import Payment
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.user_id == user_id).first()

    def get_by_stripe_customer_id(self, customer_id: str) -> Optional[Subscription]:
        if not customer_id:
            return None
        return (
            self.db.query(Subscription)
            .filter(Subscription.stripe_customer_id == customer_id)
            .first()
        )

    def get_or_create(self, user_id: str, provider_name: Optional[str] = None) -> Subscription:
        """
        Return the user's subscription row, creating a pending/free one if missing.

        user_id is unique, so two concurrent creators race on the insert; the loser
        rolls back and reads the winner's row.
        """
        subscription = self.get_by_user_id(user_id)
        if subscription:
            return subscription
        subscription = Subscription(
            user_id=user_id,
            status="pending",
            plan="free",
            provider_name=provider_name,
        )
        self.db.add(subscription)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Subscription for user {user_id} created concurrently, reloading")
            subscription = self.get_by_user_id(user_id)
            if subscription is None:
                raise
            return subscription
        self.db.refresh(subscription)
        return subscription

    def add_payment(self, subscription: Subscription, payment: Payment) -> Payment:
        payment.subscription_id = subscription.id
        self.db.add(payment)
        self.db.flush()
        return payment

    def list_payments(self, subscription_id: int) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.subscription_id == subscription_id)
            .order_by(Payment.id)
            .all()
        )

    def list_active_ending_before(self, cutoff: datetime) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.status == "active", Subscription.end_date < cutoff)
            .all()
        )

    def list_cancelled_pro_ending_before(self, cutoff: datetime) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == "cancelled",
                Subscription.plan == "pro",
                Subscription.end_date < cutoff,
            )
            .all()
        )

    def list_active_pro(self) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.status == "active", Subscription.plan == "pro")
            .all()
        )

    def save(self, subscription: Subscription) -> Subscription:
        try:
            self.db.commit()
            self.db.refresh(subscription)
            return subscription
        except Exception as e:
            self.db.rollback()
            logger.error(f"Erro ao salvar subscription {subscription.id}: {str(e)}")
            raise
