"""
Application configuration.
All settings are loaded from environment variables.
"""
from decimal import Decimal

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # CORS: comma-separated origins. Empty = default list in main.py.
    cors_origins: str = ""
    public_app_url: str = "http://localhost:3000"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # WEBHOOKS (inbound payment providers)
    # ===========================================
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    yookassa_webhook_secret: str = ""
    coingate_webhook_secret: str = ""

    # ===========================================
    # COMMISSION PAYOUTS
    # ===========================================
    payout_minimum_amount: Decimal = Decimal("50")
    payout_default_method: str = "bank_transfer"
    payout_currency: str = "USD"
    # Hard deadline for a single transfer call; a timeout marks the payout failed.
    payout_provider_timeout_seconds: float = 30.0
    # Parallel referrers in a bulk run (bounded by provider rate limits).
    payout_bulk_concurrency: int = 4

    # ===========================================
    # PAYOUT PROVIDERS
    # ===========================================
    stripe_secret_key: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_api_base: str = "https://api-m.paypal.com"
    bank_transfer_api_url: str = ""
    bank_transfer_api_token: str = ""

    # ===========================================
    # ADMIN / PARTNER AUTH
    # ===========================================
    admin_api_key: str | None = None
    jwt_secret_key: str | None = None
    jwt_algorithm: str = "HS256"

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    request_id_header: str = "X-Request-Id"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("payout_default_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("payout_bulk_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("payout_bulk_concurrency must be at least 1")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
