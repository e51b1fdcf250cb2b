from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(alias="DATABASE_URL")

    payment_provider: str = Field(default="mock", alias="PAYMENT_PROVIDER")
    mock_webhook_secret: str = Field(default="dev-secret", alias="MOCK_WEBHOOK_SECRET")
    # succeeded | initiated | requires_redirect | failed | error
    mock_payment_outcome: str = Field(default="succeeded", alias="MOCK_PAYMENT_OUTCOME")
    mock_refund_outcome: str = Field(default="succeeded", alias="MOCK_REFUND_OUTCOME")
    webhook_tolerance_secs: int = Field(default=300, alias="WEBHOOK_TOLERANCE_SECS")

    # Deadlock / lock-timeout retry for stock transactions
    stock_retry_attempts: int = Field(default=3, alias="STOCK_RETRY_ATTEMPTS")
    stock_retry_backoff_ms: int = Field(default=50, alias="STOCK_RETRY_BACKOFF_MS")

    base_url: str = Field(default="http://localhost:8000", alias="BASE_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Pydantic v2-style config: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # don't error on POSTGRES_USER/PASSWORD/DB
    )

settings = Settings()
