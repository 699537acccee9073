from decimal import Decimal
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_URL: str = "http://localhost:3000"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 1

    SURCHARGE_ENABLED: bool = True
    SURCHARGE_CREDIT_CARD_RATE: Decimal = Decimal("0.029")
    SURCHARGE_CREDIT_CARD_FIXED: Decimal = Decimal("0.30")
    SURCHARGE_DEBIT_CARD_RATE: Decimal = Decimal("0")
    SURCHARGE_DEBIT_CARD_FIXED: Decimal = Decimal("0")
    SURCHARGE_RESTRICTED_STATES: str = "CT,MA"
    SURCHARGE_DISPLAY_NAME: str = "Processing Fee"

    PAYOUT_CURRENCY: str = "usd"
    CONNECT_DEFAULT_COUNTRY: str = "US"

    ADMIN_DOCUMENTS_DIR: str = "/app/data/admin_invoices"
    ADMIN_DOCUMENT_MAX_BYTES: int = 10 * 1024 * 1024

    NOTIFICATIONS_ENABLED: bool = True
    NOTIFICATIONS_SERVICE_URL: str = "http://notifications-service:8010"
    NOTIFICATIONS_TIMEOUT_SECONDS: float = 10.0
    CELERY_BROKER_URL: str = "redis://redis:6379/5"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/6"
    CELERY_BILLING_QUEUE: str = "billing.tasks"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("PAYOUT_CURRENCY")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def restricted_states(self) -> frozenset[str]:
        return frozenset(s.strip().upper() for s in self.SURCHARGE_RESTRICTED_STATES.split(",") if s.strip())

    @property
    def stripe_livemode(self) -> bool:
        return self.STRIPE_SECRET_KEY.startswith(("sk_live_", "rk_live_"))


@lru_cache()
def get_settings() -> Settings:
    return Settings()
