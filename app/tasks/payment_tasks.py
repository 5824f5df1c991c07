"""
Post-acknowledgment processing of payment webhooks.

Webhook routes enqueue the normalized event as JSON; the worker rebuilds it and
runs it through the idempotency guard. With PROCESS_WEBHOOKS_SYNC the same code
runs in a FastAPI background task instead (single-process deployments, tests).
"""
import logging
from typing import Any, Dict

from fastapi import BackgroundTasks

from app.core.config import settings
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_payment_event(payload: Dict[str, Any]) -> str:
    from app.core.cache import require_client
    from app.db.session import SessionLocal
    from app.schemas.events import parse_payment_event
    from app.services.flutterwave_service import build_flutterwave_gateway
    from app.services.idempotency import IdempotencyGuard
    from app.services.payment_service import build_payment_service
    from app.services.stripe_service import build_stripe_gateway

    event = parse_payment_event(payload)
    db = SessionLocal()
    try:
        service = build_payment_service(
            db,
            guard=IdempotencyGuard(require_client()),
            stripe_gateway=build_stripe_gateway(),
            flutterwave_gateway=build_flutterwave_gateway(),
        )
        outcome = service.process_event(event)
        logger.info(
            "payment event handled",
            extra={"dedup_key": event.dedup_key, "kind": event.kind, "outcome": outcome},
        )
        return outcome
    finally:
        db.close()


@celery_app.task(bind=True, acks_late=True, max_retries=5)
def process_payment_event(self, payload: Dict[str, Any]):
    try:
        return run_payment_event(payload)
    except Exception as exc:
        logger.exception(f"process_payment_event failed ({payload.get('kind')}): {exc}")
        raise self.retry(exc=exc, countdown=min(30 * 2 ** self.request.retries, 1800))


def _run_in_background(payload: Dict[str, Any]) -> None:
    try:
        run_payment_event(payload)
    except Exception:
        # Already acknowledged to the gateway; the guard marker was released so a
        # redelivery is admitted again.
        logger.exception(f"Inline payment processing failed ({payload.get('kind')})")


def dispatch_payment_event(event, background_tasks: BackgroundTasks) -> None:
    payload = event.model_dump(mode="json")
    if settings.PROCESS_WEBHOOKS_SYNC:
        background_tasks.add_task(_run_in_background, payload)
    else:
        process_payment_event.delay(payload)
    logger.info(f"Payment event {event.dedup_key} queued")
