"""
Flutterwave adapter (regional-charge gateway).

Flutterwave notifications are not trusted on their own: the tx_ref travels in the
redirect URL and anyone can post a "successful" payload, so every charge is
confirmed with an authenticated verify call before it can grant anything.
"""
import hmac
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import GatewayError, SignatureError
from app.schemas.events import FlutterwaveChargeCompleted

logger = logging.getLogger(__name__)

SUCCESSFUL = "successful"


class ChargeVerification(BaseModel):
    success: bool
    tx_ref: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _meta_user_id(meta: Any) -> Optional[str]:
    if isinstance(meta, dict):
        value = meta.get("userId") or meta.get("user_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class FlutterwaveGateway:
    name = "flutterwave"

    def __init__(
        self,
        secret_key: Optional[str],
        api_base: str,
        frontend_url: str,
        currency: str,
        amount: Any,
        tx_ref_prefix: str = "proj",
        webhook_hash: Optional[str] = None,
        verify_retries: int = 3,
        verify_backoff: float = 1.0,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency
        self.amount = Decimal(str(amount))
        self.tx_ref_prefix = tx_ref_prefix
        self.webhook_hash = webhook_hash
        self.verify_retries = max(1, verify_retries)
        self.verify_backoff = verify_backoff

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise GatewayError("Flutterwave credentials not configured")
        return {"Authorization": f"Bearer {self.secret_key}"}

    def new_tx_ref(self, user_id: str) -> str:
        return f"{self.tx_ref_prefix}-{int(time.time() * 1000)}-{user_id}"

    @staticmethod
    def user_id_from_tx_ref(tx_ref: Optional[str]) -> Optional[str]:
        """tx_ref format is <prefix>-<epoch ms>-<user id>; the user id may itself contain dashes."""
        if not tx_ref:
            return None
        parts = tx_ref.split("-", 2)
        if len(parts) < 3 or not parts[2]:
            return None
        return parts[2]

    def create_regional_charge(
        self, user_id: str, email: str, name: Optional[str], phone: Optional[str]
    ) -> Dict[str, str]:
        tx_ref = self.new_tx_ref(user_id)
        payload = {
            "tx_ref": tx_ref,
            "amount": str(self.amount),
            "currency": self.currency,
            "redirect_url": f"{self.frontend_url}/payment/callback",
            "customer": {"email": email, "name": name or email, "phonenumber": phone or ""},
            "customizations": {
                "title": "Pro Subscription",
                "description": "Monthly subscription to the Pro plan",
            },
            "meta": {"userId": user_id, "productType": "subscription"},
        }
        try:
            resp = requests.post(f"{self.api_base}/payments", json=payload, headers=self._headers(), timeout=10)
        except requests.RequestException as e:
            logger.error(f"Flutterwave payment link request failed for user {user_id}: {e}")
            raise GatewayError("Failed to create payment link") from e

        data = resp.json() if resp.content else {}
        if resp.status_code >= 400 or data.get("status") != "success":
            logger.error(f"Flutterwave payment link rejected ({resp.status_code}): {data.get('message')}")
            raise GatewayError(data.get("message") or "Failed to create payment link")

        link = (data.get("data") or {}).get("link")
        if not link:
            raise GatewayError("Flutterwave response missing payment link")
        logger.info(f"Flutterwave payment link created for user {user_id} (tx_ref={tx_ref})")
        return {"payment_link": link, "tx_ref": tx_ref}

    def verify_charge(self, tx_ref: str) -> ChargeVerification:
        """
        Pull-verify a charge by reference.

        Transport errors and 5xx responses are retried; a definitive answer from
        Flutterwave (2xx/4xx) is returned as-is. Raises GatewayError once retries
        are exhausted.
        """
        url = f"{self.api_base}/transactions/verify_by_reference"
        headers = self._headers()
        resp = None
        last_error = None
        for attempt in range(1, self.verify_retries + 1):
            try:
                resp = requests.get(url, params={"tx_ref": tx_ref}, headers=headers, timeout=10)
                if resp.status_code < 500:
                    break
                last_error = f"HTTP {resp.status_code}"
            except requests.RequestException as e:
                last_error = str(e)
            resp = None
            logger.warning(f"Flutterwave verify attempt {attempt}/{self.verify_retries} failed for {tx_ref}: {last_error}")
            if attempt < self.verify_retries:
                time.sleep(self.verify_backoff * attempt)

        if resp is None:
            raise GatewayError(f"Flutterwave verification unavailable: {last_error}")

        body = resp.json() if resp.content else {}
        data = body.get("data") or {}
        if resp.status_code >= 400 or body.get("status") != "success":
            return ChargeVerification(success=False, tx_ref=tx_ref, message=body.get("message") or "Verification failed")

        amount = _decimal(data.get("amount"))
        currency = (data.get("currency") or "").upper() or None
        result = ChargeVerification(
            success=False,
            tx_ref=tx_ref,
            amount=amount,
            currency=currency,
            user_id=_meta_user_id(data.get("meta")) or self.user_id_from_tx_ref(tx_ref),
        )
        if data.get("status") != SUCCESSFUL:
            result.message = f"Charge status is {data.get('status')}"
        elif data.get("tx_ref") != tx_ref:
            result.message = "Charge reference mismatch"
        elif currency != self.currency or amount is None or amount < self.amount:
            result.message = f"Charge of {amount} {currency} does not cover {self.amount} {self.currency}"
        else:
            result.success = True
        if not result.success:
            logger.warning(f"Flutterwave charge {tx_ref} not accepted: {result.message}")
        return result

    def parse_event(self, payload: Any, verif_hash: Optional[str]) -> Optional[FlutterwaveChargeCompleted]:
        """
        Decode a webhook body. The payload may be flat or nested under ``data``.

        Returns None unless the status is literally "successful". The returned event
        is only a hint; the worker confirms it with verify_charge.
        """
        if self.webhook_hash and not hmac.compare_digest(verif_hash or "", self.webhook_hash):
            raise SignatureError("Flutterwave verif-hash mismatch")
        if not isinstance(payload, dict):
            return None

        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        tx_ref = data.get("tx_ref") or data.get("txRef") or data.get("txref")
        status = data.get("status")
        if not isinstance(tx_ref, str) or not tx_ref.strip():
            logger.info("Flutterwave webhook without tx_ref ignored")
            return None
        if status != SUCCESSFUL:
            logger.info(f"Flutterwave webhook for {tx_ref} ignored (status={status})")
            return None

        currency = data.get("currency")
        return FlutterwaveChargeCompleted(
            tx_ref=tx_ref.strip(),
            user_id=_meta_user_id(data.get("meta") or payload.get("meta_data")) or self.user_id_from_tx_ref(tx_ref),
            amount=_decimal(data.get("amount")),
            currency=currency.upper() if isinstance(currency, str) else None,
        )


def build_flutterwave_gateway() -> FlutterwaveGateway:
    regional = next(
        (currency for currency, cfg in settings.PRICING.items() if cfg.get("provider") == "flutterwave"),
        "NGN",
    )
    return FlutterwaveGateway(
        secret_key=settings.FLUTTERWAVE_SECRET_KEY,
        api_base=settings.FLUTTERWAVE_API_BASE,
        frontend_url=settings.FRONTEND_URL,
        currency=regional,
        amount=settings.PRICING.get(regional, {}).get("amount", 0),
        tx_ref_prefix=settings.FLUTTERWAVE_TX_REF_PREFIX,
        webhook_hash=settings.FLUTTERWAVE_WEBHOOK_HASH,
        verify_retries=settings.FLUTTERWAVE_VERIFY_RETRIES,
        verify_backoff=settings.FLUTTERWAVE_VERIFY_BACKOFF_SECONDS,
    )
