import logging
from datetime import datetime
from typing import Optional

import redis

from app.core.cache import cache_delete, cache_set
from app.core.config import settings
from app.models.user import User
from app.repositories.user_repository import UserRepository
from app.schemas.user import CurrentUser
from app.services.pricing_service import initialize_limits

logger = logging.getLogger(__name__)


def entitlement_cache_key(external_id: str) -> str:
    return f"user:{external_id}"


class EntitlementService:
    """
    Writes the effective plan onto the User record and refreshes the cache read by
    the authentication dependency.

    This write is not in the same transaction as the Subscription write: callers
    commit the Subscription first, then call apply().
    """

    def __init__(self, user_repo: UserRepository):
        self.user_repo = user_repo

    def apply(self, user: User, plan: str, expiry: Optional[datetime] = None) -> User:
        user.plan = plan
        user.plan_expiry_date = expiry if plan == "pro" else None
        initialize_limits(user)
        self.user_repo.update(user)
        logger.info(f"User {user.id} entitlements set to plan={plan} expiry={user.plan_expiry_date}")
        self.refresh_cache(user)
        return user

    def refresh_cache(self, user: User) -> None:
        """
        Replace the cached entitlement snapshot. TTL follows the identity token
        lifetime so a stale snapshot can never outlive one sign-in session.
        """
        key = entitlement_cache_key(user.external_id)
        snapshot = CurrentUser.model_validate(user).model_dump(mode="json")
        try:
            cache_set(key, snapshot, ttl=settings.entitlement_cache_ttl_seconds)
        except redis.RedisError as e:
            logger.error(f"Falha ao atualizar cache de entitlements do usuário {user.id}: {e}")
            try:
                cache_delete(key)
            except redis.RedisError:
                logger.error(f"Cache entry {key} may be stale until it expires")
