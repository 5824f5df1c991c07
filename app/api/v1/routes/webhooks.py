import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from app.api.v1.dependencies import get_flutterwave_gateway, get_stripe_gateway
from app.core.errors import SignatureError
from app.services.flutterwave_service import FlutterwaveGateway
from app.services.stripe_service import StripeGateway
from app.tasks.payment_tasks import dispatch_payment_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/subscription-gateway")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Webhook da Stripe. A assinatura é validada sobre o corpo bruto; sem assinatura
    válida retorna 400 e nada é processado.
    """
    raw_body = await request.body()
    event = gateway.parse_event(raw_body, request.headers.get("stripe-signature"))
    if event is None:
        return {"received": True}

    dispatch_payment_event(event, background_tasks)
    return {"received": True}


@router.post("/regional-gateway")
async def flutterwave_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: FlutterwaveGateway = Depends(get_flutterwave_gateway),
):
    """
    Webhook da Flutterwave. Sempre responde 200: o evento é só um aviso e cada
    cobrança é confirmada na API da Flutterwave antes de liberar o plano.
    """
    try:
        payload = json.loads(await request.body() or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook Flutterwave com payload inválido")
        return {"status": "ignored"}

    try:
        event = gateway.parse_event(payload, request.headers.get("verif-hash"))
    except SignatureError:
        logger.warning("Webhook Flutterwave com verif-hash inválido")
        return {"status": "ignored"}
    except Exception as e:
        logger.error(f"Webhook Flutterwave não pôde ser interpretado: {e}", exc_info=True)
        return {"status": "ignored"}
    if event is None:
        return {"status": "ignored"}

    try:
        dispatch_payment_event(event, background_tasks)
    except Exception as e:
        logger.error(f"Falha ao enfileirar evento Flutterwave {event.tx_ref}: {e}", exc_info=True)
        return {"status": "ignored"}
    return {"status": "ok"}
