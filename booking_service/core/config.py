# booking_service/core/config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Values come from the process environment (docker compose passes the
    # root .env through), so no env_file is configured here.
    model_config = SettingsConfigDict(extra="ignore")

    # The environment mode: 'local' or 'prod'
    ENV: str

    # --- Production URLs (for inside Docker) ---
    DATABASE_URL_PROD: str
    REDIS_URL_PROD: Optional[str] = None
    KAFKA_BOOTSTRAP_SERVERS_PROD: Optional[str] = None

    # --- Local Development URLs (for running locally) ---
    DATABASE_URL_LOCAL: str
    REDIS_URL_LOCAL: Optional[str] = None
    KAFKA_BOOTSTRAP_SERVERS_LOCAL: Optional[str] = None

    # Identity provider tokens
    JWT_SECRET: str

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # Booking behaviour
    CURRENCY: str = "gbp"
    DEFAULT_TIMEZONE: str = "Europe/London"
    CHECKOUT_EXPIRY_MINUTES: int = 35
    PENDING_BOOKING_GRACE_MINUTES: int = 15
    CONFIRMATION_POLL_MAX_ATTEMPTS: int = 20
    CONFIRMATION_POLL_INTERVAL_MS: int = 1500
    INSTANCE_GENERATION_MONTHS: int = 3
    APP_BASE_URL: str = "http://localhost:3000"

    # Infrastructure toggles
    LOOKUP_CACHE_TTL_SECONDS: int = 300
    ENABLE_SCHEDULER: bool = True
    ENABLE_EVENT_PUBLISHING: bool = True
    REFUND_WORKERS: int = 4
    LOG_LEVEL: str = "INFO"

    # --- Dynamic Properties ---
    # These return the correct URL based on ENV
    @property
    def DATABASE_URL(self) -> str:
        return (
            self.DATABASE_URL_LOCAL if self.ENV == "local" else self.DATABASE_URL_PROD
        )

    @property
    def REDIS_URL(self) -> Optional[str]:
        return self.REDIS_URL_LOCAL if self.ENV == "local" else self.REDIS_URL_PROD

    @property
    def KAFKA_BOOTSTRAP_SERVERS(self) -> Optional[str]:
        return (
            self.KAFKA_BOOTSTRAP_SERVERS_LOCAL
            if self.ENV == "local"
            else self.KAFKA_BOOTSTRAP_SERVERS_PROD
        )


# Create a single instance of the settings
settings = Settings()
