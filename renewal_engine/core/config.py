from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "Renewal Billing Engine"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    # Database
    DB_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE: int = 300
    STRIPE_PRICE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ANNUAL: Optional[str] = None

    # Apple App Store Server Notifications (JWS)
    APPLE_JWS_KEY: Optional[str] = None
    APPLE_JWS_ALGORITHMS: list[str] = ["ES256"]
    APPLE_YEARLY_PRODUCT_MARKER: str = "yearly"

    # Client auth (tokens are issued elsewhere, only verified here)
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Billing rules
    GRACE_PERIOD_DAYS: int = 7
    REFUND_WINDOW_DAYS: int = 7
    FREE_TIER_ITEM_LIMIT: int = 5
    PREMIUM_MONTHLY_PRICE: Decimal = Decimal("4.99")
    PREMIUM_ANNUAL_PRICE: Decimal = Decimal("39.99")
    DEFAULT_CURRENCY: str = "usd"
    STATE_MACHINE_MAX_RETRIES: int = 3
    WEBHOOK_CLAIM_TIMEOUT_SECONDS: int = 300

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
