from fastapi import APIRouter

from app.api.v1.routes import payments, webhooks

router = APIRouter()
router.include_router(payments.router, prefix="/payments")
router.include_router(webhooks.router, prefix="/payments/webhooks")
