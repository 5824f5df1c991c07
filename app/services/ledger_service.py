import logging
from decimal import Decimal
from typing import List, Optional

from app.models.payment import Payment
from app.models.subscription import Subscription
from app.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class PaymentLedger:
    """
    Append-only payment history, one list per subscription.

    There is no dedup here; every caller runs behind the idempotency guard.
    """

    def __init__(self, repo: SubscriptionRepository):
        self.repo = repo

    def record(
        self,
        subscription: Subscription,
        amount: Decimal,
        currency: str,
        reference: Optional[str],
        provider: str,
        status: str = "successful",
    ) -> Payment:
        """Stage a payment on an existing subscription. The caller commits."""
        payment = Payment(
            amount=amount,
            currency=(currency or "").upper(),
            reference=reference,
            provider=provider,
            status=status,
        )
        self.repo.add_payment(subscription, payment)
        logger.info(
            f"Ledger: {status} payment {reference} of {amount} {payment.currency} "
            f"via {provider} for subscription {subscription.id}"
        )
        return payment

    def append(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        reference: Optional[str],
        provider: str,
        status: str = "successful",
    ) -> Payment:
        subscription = self.repo.get_or_create(user_id, provider_name=provider)
        payment = self.record(subscription, amount, currency, reference, provider, status)
        self.repo.save(subscription)
        return payment

    def history(self, user_id: str) -> List[Payment]:
        subscription = self.repo.get_by_user_id(user_id)
        if subscription is None:
            return []
        return self.repo.list_payments(subscription.id)
