import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.v1.dependencies import (
    get_current_user,
    get_flutterwave_gateway,
    get_idempotency_guard,
    get_stripe_gateway,
    require_admin,
)
from app.core.config import settings
from app.core.errors import NotFoundError, ValidationError
from app.db.session import get_db
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.user_repository import UserRepository
from app.schemas.subscription import (
    CancelSubscriptionResponse,
    CreatePaymentRequest,
    LimitsResponse,
    ManualUpgradeRequest,
    PaymentEntry,
    PaymentHistoryResponse,
    PricingResponse,
    SubscriptionStatusResponse,
    VerifyPaymentRequest,
)
from app.schemas.user import CurrentUser
from app.services.flutterwave_service import FlutterwaveGateway
from app.services.idempotency import IdempotencyGuard
from app.services.ledger_service import PaymentLedger
from app.services.payment_service import build_payment_service
from app.services.pricing_service import pricing_for
from app.services.stripe_service import StripeGateway
from app.services.subscription_service import build_subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])

PAYMENT_METHODS = {"stripe", "flutterwave"}


def _load_user(db: Session, current_user: CurrentUser):
    user = UserRepository(db).get_by_id(current_user.id)
    if user is None:
        raise NotFoundError("User not found")
    return user


@router.get("/pricing", response_model=PricingResponse)
def get_pricing(country_code: Optional[str] = Query(None, alias="countryCode")):
    """Preço para a região do usuário (público)."""
    pricing = pricing_for(country_code or "")
    logger.info(f"Pricing for {country_code}: {pricing['currency']} {pricing['amount']}")
    return PricingResponse(pricing=pricing)


@router.post("/create-payment")
def create_payment(
    body: CreatePaymentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    flutterwave_gateway: FlutterwaveGateway = Depends(get_flutterwave_gateway),
):
    """
    Inicia o pagamento do plano Pro.

    - **stripe**: retorna a Checkout Session (`session.url` para redirecionar)
    - **flutterwave**: retorna o link de pagamento e o `tx_ref`; requer `phoneNumber`
    """
    method = (body.payment_method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method")

    if method == "stripe":
        session = stripe_gateway.create_subscription_checkout(
            current_user.id, current_user.email, current_user.name
        )
        return {"success": True, "session": session}

    if not body.phone_number or not body.phone_number.strip():
        raise ValidationError("Phone number is required for Flutterwave payments")
    payment = flutterwave_gateway.create_regional_charge(
        current_user.id, current_user.email, current_user.name, body.phone_number.strip()
    )
    return {"success": True, "payment": payment}


@router.post("/verify-payment")
def verify_payment(
    body: VerifyPaymentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    flutterwave_gateway: FlutterwaveGateway = Depends(get_flutterwave_gateway),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
):
    """Confirma uma cobrança Flutterwave após o redirecionamento do usuário."""
    service = build_payment_service(db, guard=guard, flutterwave_gateway=flutterwave_gateway)
    return service.verify_regional_payment(body.tx_ref or "", current_user)


@router.get("/subscription", response_model=SubscriptionStatusResponse)
def get_subscription(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Retorna o status da assinatura do usuário atual."""
    user = _load_user(db, current_user)
    return SubscriptionStatusResponse(**build_subscription_service(db).get_status(user))


@router.post("/cancel", response_model=CancelSubscriptionResponse, status_code=status.HTTP_200_OK)
def cancel_subscription(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Cancela a assinatura do usuário atual.

    Stripe: cancela no fim do período já pago (o plano Pro continua até `end_date`).
    Flutterwave: cancelamento imediato, volta para o plano free.
    """
    service = build_subscription_service(db, stripe_gateway=stripe_gateway)
    subscription, message = service.cancel(current_user.id)
    return CancelSubscriptionResponse(message=message, plan=subscription.plan)


@router.get("/payment-history", response_model=PaymentHistoryResponse)
def get_payment_history(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payments = PaymentLedger(SubscriptionRepository(db)).history(current_user.id)
    return PaymentHistoryResponse(payments=[PaymentEntry.model_validate(p) for p in payments])


@router.get("/limits", response_model=LimitsResponse)
def get_limits(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = _load_user(db, current_user)
    return LimitsResponse(
        plan=user.plan,
        project_ideas_left=user.project_ideas_left,
        collaboration_requests_left=user.collaboration_requests_left,
        plan_expiry_date=user.plan_expiry_date,
        pricing_enabled=settings.PRICING_ENABLED,
    )


@router.post("/manual-upgrade")
def manual_upgrade(
    body: ManualUpgradeRequest,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Concede o plano Pro sem pagamento (admin)."""
    if not body.user_id or not body.user_id.strip():
        raise ValidationError("User ID is required")
    build_subscription_service(db).manual_upgrade(body.user_id.strip())
    logger.info(f"Admin {admin.id} upgraded user {body.user_id} to pro")
    return {"success": True, "message": "User upgraded to Pro plan successfully"}
