from typing import Optional
import logging

import redis
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.core.cache import cache_get, require_client
from app.core.errors import AuthError, ForbiddenError
from app.core.security import decode_access_token
from app.db.session import get_db
from app.repositories.user_repository import UserRepository
from app.schemas.user import CurrentUser
from app.services.entitlement_service import EntitlementService, entitlement_cache_key
from app.services.flutterwave_service import FlutterwaveGateway, build_flutterwave_gateway
from app.services.idempotency import IdempotencyGuard
from app.services.stripe_service import StripeGateway, build_stripe_gateway

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


def _cached_user(external_id: str) -> Optional[CurrentUser]:
    try:
        data = cache_get(entitlement_cache_key(external_id))
    except redis.RedisError as e:
        logger.warning(f"Cache de usuário indisponível, usando banco: {e}")
        return None
    if not data:
        return None
    return CurrentUser.model_validate(data)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> CurrentUser:
    """
    Resolve the bearer token to a user snapshot. The snapshot is read through the
    entitlement cache, which payment processing refreshes on every plan change.
    """
    if credentials is None or not credentials.credentials.strip():
        logger.warning("Token de autenticação não fornecido")
        raise AuthError("Token de autenticação não fornecido")

    payload = decode_access_token(credentials.credentials.strip())
    if payload is None:
        raise AuthError("Token inválido ou expirado")

    external_id = payload.get("sub")
    if not external_id:
        logger.error(f"Token não contém 'sub'. Payload keys: {list(payload.keys())}")
        raise AuthError("Token inválido")
    external_id = str(external_id)

    user = _cached_user(external_id)
    if user is None:
        user_repo = UserRepository(db)
        db_user = user_repo.get_by_external_id(external_id)
        if db_user is None:
            logger.error(f"Usuário {external_id} não encontrado no banco de dados")
            raise AuthError("Usuário não encontrado")
        EntitlementService(user_repo).refresh_cache(db_user)
        user = CurrentUser.model_validate(db_user)

    if not user.is_active:
        logger.warning(f"Usuário {user.id} está inativo")
        raise ForbiddenError("Usuário inativo")
    return user


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        logger.warning(f"Usuário {current_user.id} tentou acessar rota de admin")
        raise ForbiddenError("Admin access required")
    return current_user


def get_stripe_gateway() -> StripeGateway:
    return build_stripe_gateway()


def get_flutterwave_gateway() -> FlutterwaveGateway:
    return build_flutterwave_gateway()


def get_idempotency_guard() -> IdempotencyGuard:
    return IdempotencyGuard(require_client())
