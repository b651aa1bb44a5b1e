"""
Configuration settings for the storefront billing and import backend
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGS_DIR = Path("./logs")

# Normalized plan IDs
PLAN_FREE = "free"
PLAN_MONTHLY = "monthly"
PLAN_ANNUAL = "annual"
PLAN_PRO = "pro"

# Rendered in JSON for "no monthly limit" (JSON has no infinity)
UNLIMITED_MODELS_MARKER = 999999


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_monthly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_MONTHLY")
    stripe_price_annual: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ANNUAL")
    billing_timeout_seconds: float = Field(default=10.0, alias="BILLING_TIMEOUT_SECONDS")

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    database_pool_pre_ping: bool = Field(default=True, alias="DATABASE_POOL_PRE_PING")
    sqlite_busy_timeout_seconds: float = Field(default=15.0, alias="SQLITE_BUSY_TIMEOUT_SECONDS")

    # Frontend / public URLs
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")
    domain: str = Field(default="https://fishcad.com", alias="DOMAIN")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Entitlement rules
    free_models_per_month: int = Field(default=2, alias="FREE_MODELS_PER_MONTH")
    trial_days: int = Field(default=7, alias="TRIAL_DAYS")
    reset_batch_size: int = Field(default=400, alias="RESET_BATCH_SIZE")

    # STL import configuration
    uploads_dir: Path = Field(default=Path("./uploads"), alias="UPLOADS_DIR")
    import_download_timeout_seconds: float = Field(default=60.0, alias="IMPORT_DOWNLOAD_TIMEOUT_SECONDS")
    import_retention_hours: int = Field(default=24, alias="IMPORT_RETENTION_HOURS")
    max_upload_bytes: int = Field(default=50 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")
    storage_signing_secret: str = Field(default="dev-signing-secret", alias="STORAGE_SIGNING_SECRET")

    # Background loops
    sweep_interval_seconds: float = Field(default=3600.0, alias="SWEEP_INTERVAL_SECONDS")

    # Outgoing email (SMTP)
    smtp_host: Optional[str] = Field(default=None, alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, alias="SMTP_USER")
    smtp_password: Optional[str] = Field(default=None, alias="SMTP_PASSWORD")
    email_from: Optional[str] = Field(default=None, alias="EMAIL_FROM")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or (settings.env and settings.env.lower() == "production")
