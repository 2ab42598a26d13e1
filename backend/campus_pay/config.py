"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "Campus Payment Settlement API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    SYSTEM_VERSION: str = "1.0.0"

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'campus_pay.db'}"

    # --- Credential Security ---
    PAYMENT_CREDENTIAL_ENCRYPTION_KEY: str = ""
    ENCRYPTION_VERSION: str = "v1"
    CREDENTIAL_MAX_AGE_DAYS: int = 90

    # --- Settlement ---
    GST_RATE_PERCENT: float = 18.0
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    SETTLEMENT_CURRENCY: str = "INR"

    # --- Audit ---
    AUDIT_RETENTION_DAYS: int = 30
    EXPOSE_ERROR_DETAILS: bool = False

    # --- HTTP ---
    CORS_ORIGINS: list[str] = ["*"]

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
