from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.services.lockout import LockoutPolicy

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR.parent / ".env")

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "AuthGateway"
    environment: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"

    supabase_url: str
    supabase_anon_key: str = Field(min_length=1)
    supabase_service_role_key: str = Field(min_length=1)
    idp_timeout_seconds: float = 10.0

    frontend_url: str
    backend_url: Optional[str] = None
    port: int = 3000

    cookie_domain: str = "localhost"
    cookie_secure: bool = False
    cookie_same_site: Literal["strict", "lax", "none"] = "lax"

    rate_limit_window_seconds: int = 900
    rate_limit_max_requests: int = 100
    strict_rate_limit_max_requests: int = 20
    auth_rate_limit_max_requests: int = 5
    rate_limit_storage_uri: str = "memory://"

    lockout_max_attempts: int = Field(5, ge=1)
    lockout_duration_minutes: int = Field(15, ge=1)
    lockout_max_duration_hours: int = Field(24, ge=1)
    lockout_cleanup_interval_seconds: int = Field(3600, ge=1)
    lockout_retention_hours: int = Field(24, ge=1)

    @field_validator("supabase_url", "frontend_url", "backend_url")
    @classmethod
    def strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def public_backend_url(self) -> str:
        return self.backend_url or f"http://localhost:{self.port}"

    @property
    def global_rate_limit(self) -> str:
        limit = self.strict_rate_limit_max_requests if self.is_production else self.rate_limit_max_requests
        return f"{limit}/{self.rate_limit_window_seconds} seconds"

    @property
    def auth_rate_limit(self) -> str:
        return f"{self.auth_rate_limit_max_requests}/{self.rate_limit_window_seconds} seconds"

    def lockout_policy(self) -> LockoutPolicy:
        return LockoutPolicy(
            max_attempts=self.lockout_max_attempts,
            base_duration=timedelta(minutes=self.lockout_duration_minutes),
            max_duration=timedelta(hours=self.lockout_max_duration_hours),
            cleanup_interval=timedelta(seconds=self.lockout_cleanup_interval_seconds),
            retention=timedelta(hours=self.lockout_retention_hours),
        )

    def warn_if_insecure(self) -> None:
        if not self.is_production:
            return
        if not self.cookie_secure:
            logger.warning("COOKIE_SECURE is false in production; the session cookie will travel over HTTP")
        if self.cookie_same_site == "none":
            logger.warning("COOKIE_SAME_SITE should be 'strict' or 'lax' in production")


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
