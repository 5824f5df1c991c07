"""
Pricing by region and monthly quota bookkeeping.
"""
import logging
from typing import Any, Dict

from app.core.config import settings
from app.core.errors import NotFoundError, ValidationError
from app.models.user import User
from app.repositories.user_repository import QUOTA_FIELDS, UserRepository

logger = logging.getLogger(__name__)


def currency_for_country(country_code: str) -> str:
    """Only the regional country pays in its own currency; everyone else pays USD."""
    if (country_code or "").strip().upper() == settings.REGIONAL_COUNTRY_CODE:
        return "NGN"
    return "USD"


def pricing_for(country_code: str) -> Dict[str, Any]:
    if not country_code or not country_code.strip():
        raise ValidationError("Country code is required")
    currency = currency_for_country(country_code)
    config = settings.get_pricing(currency)
    if config is None:
        raise ValidationError(f"No pricing configured for {currency}")
    return {
        "currency": currency,
        "amount": config["amount"],
        "symbol": config["symbol"],
        "provider": config["provider"],
    }


def initialize_limits(user: User) -> User:
    """Set quotas for the user's current plan. Does not persist."""
    if user.plan == "pro":
        user.project_ideas_left = settings.UNLIMITED_QUOTA
        user.collaboration_requests_left = settings.UNLIMITED_QUOTA
    else:
        user.project_ideas_left = settings.FREE_PROJECT_IDEAS
        user.collaboration_requests_left = settings.FREE_COLLABORATION_REQUESTS
    return user


class LimitService:
    def __init__(self, user_repo: UserRepository, entitlements):
        self.user_repo = user_repo
        self.entitlements = entitlements

    def monthly_reset(self) -> int:
        """Reset free-plan quotas to their base values. Returns the number of users reset."""
        if not settings.PRICING_ENABLED:
            logger.info("Pricing features are disabled. Skipping limit reset.")
            return 0

        count = self.user_repo.reset_free_quotas(
            settings.FREE_PROJECT_IDEAS,
            settings.FREE_COLLABORATION_REQUESTS,
        )
        for user in self.user_repo.list_by_plan("free"):
            self.entitlements.refresh_cache(user)
        logger.info(f"Successfully reset limits for {count} free users.")
        return count

    def consume(self, user_id: str, field: str) -> bool:
        """
        Spend one unit of a quota. Pro users and pricing-disabled mode always succeed
        without touching the counter.
        """
        if field not in QUOTA_FIELDS:
            raise ValidationError(f"Unknown quota: {field}")
        if not settings.PRICING_ENABLED:
            return True

        user = self.user_repo.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.plan == "pro":
            return True

        consumed = self.user_repo.decrement_quota_if_positive(user_id, field)
        self.user_repo.db.refresh(user)
        self.entitlements.refresh_cache(user)
        if not consumed:
            logger.info(f"User {user_id} has no {field} left")
        return consumed
