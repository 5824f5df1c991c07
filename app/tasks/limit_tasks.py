"""
Scheduled maintenance: monthly quota reset, subscription expiry and plan drift repair.
"""
import logging

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def monthly_reset(self):
    from app.db.session import SessionLocal
    from app.repositories.user_repository import UserRepository
    from app.services.entitlement_service import EntitlementService
    from app.services.pricing_service import LimitService

    db = SessionLocal()
    try:
        user_repo = UserRepository(db)
        count = LimitService(user_repo, EntitlementService(user_repo)).monthly_reset()
        return {"reset": count}
    except Exception as exc:
        logger.error(f"Error resetting monthly limits: {exc}")
        raise self.retry(exc=exc, countdown=300)
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def expire_subscriptions(self):
    from app.db.session import SessionLocal
    from app.services.subscription_service import build_subscription_service

    db = SessionLocal()
    try:
        count = build_subscription_service(db).expire_lapsed_subscriptions()
        logger.info("expiry sweep done", extra={"expired": count})
        return {"expired": count}
    except Exception as exc:
        logger.exception(f"Expiry sweep failed: {exc}")
        raise self.retry(exc=exc, countdown=300)
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def repair_drift(self):
    from app.db.session import SessionLocal
    from app.services.subscription_service import build_subscription_service

    db = SessionLocal()
    try:
        count = build_subscription_service(db).repair_plan_drift()
        logger.info("drift sweep done", extra={"repaired": count})
        return {"repaired": count}
    except Exception as exc:
        logger.exception(f"Drift sweep failed: {exc}")
        raise self.retry(exc=exc, countdown=300)
    finally:
        db.close()
