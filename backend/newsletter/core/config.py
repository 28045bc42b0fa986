from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Width of idempotency_records.idempotency_key
IDEMPOTENCY_KEY_COLUMN_LENGTH = 50


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "newsletter-backend"
    APP_DATABASE_DSN: str = "sqlite:////tmp/newsletter.db"
    REDIS_URL: str = "redis://localhost:6379"
    LOG_LEVEL: str = "INFO"

    # Email delivery API (Postmark-compatible)
    EMAIL_BASE_URL: str = "http://localhost:8025"
    EMAIL_SENDER: str = "newsletter@example.com"
    EMAIL_AUTHORIZATION_TOKEN: str = ""
    EMAIL_TIMEOUT_MILLISECONDS: int = 10000

    # Idempotency
    IDEMPOTENCY_KEY_MAX_LENGTH: int = Field(
        default=IDEMPOTENCY_KEY_COLUMN_LENGTH, ge=1, le=IDEMPOTENCY_KEY_COLUMN_LENGTH
    )
    IDEMPOTENCY_WAIT_TIMEOUT_SECONDS: float = 10.0
    IDEMPOTENCY_POLL_INTERVAL_SECONDS: float = 0.05
    IDEMPOTENCY_TTL_HOURS: int = 24 * 7

    # Delivery worker
    WORKER_IDLE_SECONDS: float = 10.0
    WORKER_ERROR_BACKOFF_SECONDS: float = 1.0
    WORKER_CONCURRENCY: int = 1
    # Claim lifetime where SKIP LOCKED is unavailable; keep well above the email timeout
    DELIVERY_LEASE_SECONDS: float = 60.0

    @property
    def version(self) -> str:
        return "0.1.0"


settings = Settings()
