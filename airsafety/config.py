"""
Application configuration using pydantic-settings.
Loads from environment variables with .env file support.
"""

from functools import lru_cache
from typing import List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./airsafety.db"

    # Security
    secret_key: str = Field(
        default="",
        validation_alias=AliasChoices("secret_key", "jwt_secret"),
    )
    algorithm: str = "HS256"
    session_token_expire_days: int = 7

    # Designated administrator (bootstrap / self-heal)
    admin_email: str = "admin@airline.com"
    admin_password: str = ""

    # Demo login, never honoured when environment == "production"
    demo_email: str = "demo@airline.com"
    demo_password: str = "password123"

    # Audit sink
    audit_webhook_url: str = ""
    audit_webhook_timeout_seconds: float = 3.0

    # Application
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # API Settings
    api_prefix: str = "/api"
    project_name: str = "Air Safety Report System"
    version: str = "1.0.0"
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5000",
        "http://localhost:5173",  # Vite default
        "http://127.0.0.1:5173",
    ]

    # Rate limiting (login gateway)
    login_rate_limit_max: int = 5
    login_rate_limit_window_seconds: int = 300
    rate_limit_store_timeout_seconds: float = 2.0
    rate_limit_enabled: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
