"""
Shared fixtures: in-memory SQLite bound to SessionLocal, an in-memory Redis
stand-in installed as the cache client, gateway adapters with test credentials.
"""
import hashlib
import hmac
import json
import os
import threading
import time

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["PROCESS_WEBHOOKS_SYNC"] = "true"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_ID"] = "price_pro_monthly"
os.environ["FLUTTERWAVE_SECRET_KEY"] = "FLWSECK_TEST-123"
os.environ["FLUTTERWAVE_WEBHOOK_HASH"] = "flw-test-hash"
os.environ["FLUTTERWAVE_VERIFY_BACKOFF_SECONDS"] = "0"
os.environ.pop("REDIS_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.core import cache
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import SessionLocal
from app.models import User  # noqa: F401  (registers every model on Base)
from app.services.flutterwave_service import FlutterwaveGateway
from app.services.idempotency import IdempotencyGuard
from app.services.stripe_service import StripeGateway

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
SessionLocal.configure(bind=test_engine)


class FakeRedis:
    """Thread-safe subset of redis.Redis (decode_responses=True) with a movable clock."""

    def __init__(self):
        self._data = {}
        self._expires = {}
        self._lock = threading.Lock()
        self._offset = 0.0

    def _now(self):
        return time.monotonic() + self._offset

    def _alive(self, key):
        expires = self._expires.get(key)
        if expires is not None and expires <= self._now():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def advance(self, seconds):
        with self._lock:
            self._offset += seconds

    def set(self, key, value, nx=False, ex=None):
        with self._lock:
            if nx and self._alive(key):
                return None
            self._data[key] = str(value)
            if ex is not None:
                self._expires[key] = self._now() + ex
            else:
                self._expires.pop(key, None)
            return True

    def setex(self, key, ttl, value):
        return self.set(key, value, ex=ttl)

    def get(self, key):
        with self._lock:
            return self._data.get(key) if self._alive(key) else None

    def delete(self, *keys):
        with self._lock:
            removed = 0
            for key in keys:
                if self._alive(key):
                    removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
            return removed

    def eval(self, script, numkeys, key, expected):
        """Compare-and-delete, the only script the guard runs."""
        with self._lock:
            if self._alive(key) and self._data[key] == expected:
                self._data.pop(key, None)
                self._expires.pop(key, None)
                return 1
            return 0

    def ttl(self, key):
        with self._lock:
            if not self._alive(key):
                return -2
            expires = self._expires.get(key)
            return -1 if expires is None else int(expires - self._now())

    def ping(self):
        return True


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(cache, "_client", client)
    return client


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from app.main import app
    return TestClient(app)


@pytest.fixture
def guard(fake_redis):
    return IdempotencyGuard(fake_redis, in_flight_ttl=300, done_ttl=3600)


@pytest.fixture
def stripe_gateway():
    return StripeGateway(
        api_key="sk_test_123",
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        price_id="price_pro_monthly",
        frontend_url="http://localhost:5173",
    )


@pytest.fixture
def flutterwave_gateway():
    return FlutterwaveGateway(
        secret_key="FLWSECK_TEST-123",
        api_base="https://api.flutterwave.com/v3",
        frontend_url="http://localhost:5173",
        currency="NGN",
        amount=5000,
        verify_retries=3,
        verify_backoff=0,
    )


@pytest.fixture
def make_user(db):
    def _make(user_id="U1", plan="free", role="user", **fields):
        user = User(
            id=user_id,
            external_id=fields.pop("external_id", f"ext-{user_id}"),
            email=fields.pop("email", f"{user_id.lower()}@example.com"),
            name=fields.pop("name", f"User {user_id}"),
            role=role,
            plan=plan,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_access_token({"sub": user.external_id})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def sign_stripe():
    """Build a Stripe-Signature header for a JSON payload the way Stripe does."""
    def _sign(event, secret=STRIPE_WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(event)
        timestamp = int(timestamp if timestamp is not None else time.time())
        signed = f"{timestamp}.{payload}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return payload, f"t={timestamp},v1={signature}"
    return _sign


@pytest.fixture
def flutterwave_verify_response():
    """Body of a successful verify_by_reference call; override fields per test."""
    def _body(tx_ref, amount=5000, currency="NGN", status="successful", user_id=None):
        data = {
            "id": 4821093,
            "tx_ref": tx_ref,
            "amount": amount,
            "currency": currency,
            "status": status,
            "meta": {"userId": user_id} if user_id else None,
        }
        return {"status": "success", "message": "Transaction fetched successfully", "data": data}
    return _body
