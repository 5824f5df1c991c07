from typing import Any, Optional, Dict

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str

    # JWT (identity tokens are issued by the identity provider, we only decode them)
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24

    # App Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Entitlements Backend"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Cache / Redis
    REDIS_URL: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    CACHE_TTL_SECONDS: int = 300

    # Idempotency markers: in_flight must outlive one processing attempt,
    # done must outlive the gateways' redelivery windows (Stripe retries for 3 days).
    IDEMPOTENCY_IN_FLIGHT_TTL_SECONDS: int = 300
    IDEMPOTENCY_DONE_TTL_SECONDS: int = 7 * 24 * 3600

    # Processar webhooks no próprio processo da API (BackgroundTasks), sem Celery.
    # Use quando não houver worker. O remetente continua recebendo 200 antes do processamento.
    PROCESS_WEBHOOKS_SYNC: bool = False

    @model_validator(mode='after')
    def assemble_redis_url(self) -> 'Settings':
        if self.REDIS_PASSWORD and self.REDIS_URL:
            # Se a URL já contiver senha (ex: :password@...), não fazemos nada
            if "@" in self.REDIS_URL:
                return self

            import urllib.parse
            if "redis://" in self.REDIS_URL:
                encoded_pwd = urllib.parse.quote_plus(self.REDIS_PASSWORD)
                # Formato: redis://:PASSWORD@HOST:PORT/DB
                self.REDIS_URL = self.REDIS_URL.replace("redis://", f"redis://:{encoded_pwd}@", 1)
        return self

    # Stripe (subscription gateway)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300

    # Flutterwave (regional-charge gateway)
    FLUTTERWAVE_API_BASE: str = "https://api.flutterwave.com/v3"
    FLUTTERWAVE_SECRET_KEY: Optional[str] = None
    FLUTTERWAVE_WEBHOOK_HASH: Optional[str] = None
    FLUTTERWAVE_TX_REF_PREFIX: str = "proj"
    FLUTTERWAVE_VERIFY_RETRIES: int = 3
    FLUTTERWAVE_VERIFY_BACKOFF_SECONDS: float = 1.0

    FRONTEND_URL: str = "http://localhost:5173"

    # Pricing & limits
    PRICING_ENABLED: bool = True
    RENEWAL_PERIOD_DAYS: int = 30
    EXPIRY_GRACE_HOURS: int = 48
    FREE_PROJECT_IDEAS: int = 3
    FREE_COLLABORATION_REQUESTS: int = 3
    UNLIMITED_QUOTA: int = 999999
    REGIONAL_COUNTRY_CODE: str = "NG"

    # Preços por moeda: amount em unidade de exibição (não em centavos)
    PRICING: Dict[str, Dict[str, Any]] = {
        "USD": {"provider": "stripe", "amount": 5, "symbol": "$"},
        "NGN": {"provider": "flutterwave", "amount": 5000, "symbol": "₦"},
    }

    def get_pricing(self, currency: str) -> Optional[Dict[str, Any]]:
        """Retorna a configuração de preço de uma moeda ou None se não existir."""
        return self.PRICING.get(currency)

    @property
    def entitlement_cache_ttl_seconds(self) -> int:
        """Cached entitlements live as long as one identity token, never longer."""
        return self.JWT_EXPIRATION_HOURS * 3600

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ]

    def get_cors_origins(self) -> list[str]:
        return self.CORS_ORIGINS.copy()

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
