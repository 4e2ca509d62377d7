from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Marketing Billing"

    # Frontend Configuration
    FRONTEND_URL: str = "http://localhost:3000"

    # MongoDB Configuration
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "marketing"

    # Record store backend: "mongo" or "memory"
    SUBSCRIPTION_STORE_BACKEND: str = "mongo"

    # Stripe Configuration
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_SUCCESS_URL: Optional[str] = None
    STRIPE_CANCEL_URL: Optional[str] = None
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Stripe price ids backing the default plan catalog
    STRIPE_PRICE_BASIC_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_ANNUALLY: Optional[str] = None

    # Optional JSON file replacing the default plan catalog
    PLAN_CATALOG_FILE: Optional[str] = None

    # Webhook reconciliation
    BILLING_ENFORCE_EVENT_ORDERING: bool = True
    WEBHOOK_EVENT_LEDGER_SIZE: int = 10000
    WEBHOOK_EVENT_TTL_SECONDS: int = 7 * 24 * 3600

    # Firebase Configuration
    FIREBASE_CREDENTIALS_JSON: Optional[str] = None
    FIREBASE_CREDENTIALS_PATH: str = "firebase-credentials.json"

    # Testing Configuration
    TEST_MODE: bool = False

    @property
    def checkout_success_url(self) -> str:
        """Where the processor sends the customer after paying."""
        if self.STRIPE_SUCCESS_URL:
            return self.STRIPE_SUCCESS_URL
        return f"{self.FRONTEND_URL}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        if self.STRIPE_CANCEL_URL:
            return self.STRIPE_CANCEL_URL
        return f"{self.FRONTEND_URL}/pricing?canceled=true"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra env variables


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
