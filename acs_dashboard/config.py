from __future__ import annotations

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Central configuration for the ACS dashboard backend.

    - Reads from .env (local) and the process environment.
    - Accepts the env var names the dashboard frontend already uses.
    - Ignores extra env vars so adding new ones doesn't break startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # Core app
    # -------------------------------------------------------------------------
    app_name: str = Field(default="ACS Dashboard Backend", alias="APP_NAME")
    debug: bool = Field(default=False, alias="DEBUG")
    environment: str = Field(default="local", alias="ENVIRONMENT")

    # -------------------------------------------------------------------------
    # Remote backend
    # -------------------------------------------------------------------------
    api_url: str = Field(
        default="http://localhost:8000",
        validation_alias=AliasChoices("API_URL", "BACKEND_API_URL"),
    )
    backend_timeout_seconds: float = Field(default=30.0, alias="BACKEND_TIMEOUT_SECONDS")
    # Only the bulk thread fetch retries; every other proxy call is single-shot.
    backend_max_retries: int = Field(default=3, alias="BACKEND_MAX_RETRIES")
    backend_retry_delay_seconds: float = Field(
        default=1.0,
        alias="BACKEND_RETRY_DELAY_SECONDS",
    )

    # -------------------------------------------------------------------------
    # Conversation cache
    # -------------------------------------------------------------------------
    database_url: str = Field(default="sqlite:///./acs_dashboard.db", alias="DATABASE_URL")
    cache_max_age_minutes: int = Field(default=30, alias="CACHE_MAX_AGE_MINUTES")

    # -------------------------------------------------------------------------
    # Auth provider (external; kept so deployments share one .env)
    # -------------------------------------------------------------------------
    nextauth_url: Optional[str] = Field(default=None, alias="NEXTAUTH_URL")
    nextauth_secret: Optional[str] = Field(default=None, alias="NEXTAUTH_SECRET")
    google_client_id: Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_SECRET")
    cognito_user_pool_id: Optional[str] = Field(
        default=None,
        alias="NEXT_PUBLIC_COGNITO_USER_POOL_ID",
    )
    cognito_client_id: Optional[str] = Field(default=None, alias="NEXT_PUBLIC_COGNITO_CLIENT_ID")
    cognito_region: Optional[str] = Field(default=None, alias="NEXT_PUBLIC_COGNITO_REGION")
    cognito_client_secret: Optional[str] = Field(default=None, alias="COGNITO_CLIENT_SECRET")

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    #   CORS_ORIGINS=http://localhost:3000,https://app.example.com
    cors_origins_raw: Optional[str] = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )

    @property
    def cors_origins(self) -> List[str]:
        """
        Returns a list of origins from the comma-separated env string.
        Safe if env is missing or empty.
        """
        if not self.cors_origins_raw:
            return []
        return [
            origin.strip()
            for origin in self.cors_origins_raw.split(",")
            if origin.strip()
        ]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader so config is evaluated once per process.
    """
    settings = Settings()
    logger.info(
        "Settings loaded (env=%s, debug=%s, api_url=%s)",
        settings.environment,
        settings.debug,
        settings.api_url,
    )
    return settings


# Singleton used everywhere else
settings: Settings = get_settings()
