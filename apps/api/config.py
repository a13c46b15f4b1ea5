"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./typix.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Public URL of the web app (checkout success redirects land here)
    APP_URL: str = "http://localhost:3000"

    # Creem payment processor
    CREEM_API_KEY: str = ""
    CREEM_WEBHOOK_SECRET: str = ""
    CREEM_API_BASE_URL: str = "https://test-api.creem.io"
    CREEM_TIMEOUT_SECONDS: float = 15.0
    WEBHOOK_DEDUP_ENABLED: bool = True

    # Billing
    PRODUCT_CATALOG_PATH: Optional[str] = None
    REGISTRATION_BONUS_CREDITS: int = 0

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    AUTH_SYNC_SECRET: str = ""
    AUTO_CREATE_DB_SCHEMA: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def require_creem_api_key() -> str:
    """Return configured Creem API key or raise a configuration error."""
    api_key = (settings.CREEM_API_KEY or "").strip()
    if not api_key:
        raise ValueError("CREEM_API_KEY is not configured")
    return api_key


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    insecure_values = {
        "",
        "change_me_in_production",
        "your_jwt_secret_change_in_production",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()

    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
