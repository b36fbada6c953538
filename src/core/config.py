"""Application settings loaded from the environment."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LimitSettings(BaseModel):
    """Per-account request limits."""

    rate_limit_rpm: int = Field(default=60, ge=1)


class GuardSettings(BaseModel):
    """Storage for the per-account "operation in flight" flags."""

    backend: Literal["memory", "redis"] = "memory"
    # Upper bound for a lease left behind by a crashed worker.
    ttl_seconds: int = Field(default=15 * 60, ge=1)


class GatewaySettings(BaseModel):
    """Card gateway (Stripe) connection settings."""

    api_base: str = "https://api.stripe.com/v1"
    publishable_key_live: str = ""
    publishable_key_test: str = ""
    force_live: bool = False
    timeout_seconds: float = 30.0


class BillingServiceSettings(BaseModel):
    """Internal billing API (GraphQL) connection settings."""

    graphql_url: str = "http://localhost:8080/graphql"
    api_token: str = ""
    timeout_seconds: float = 10.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(Path(__file__).resolve().parents[2] / ".env"), ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    ENV: Literal["development", "staging", "production", "test"] = "development"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    JWT_SECRET: str = "change-me-in-production-0123456789abcdef"
    JWT_ALG: str = "HS256"

    REDIS_URI: str = "redis://localhost:6379/0"

    limits: LimitSettings = Field(default_factory=LimitSettings)
    guard: GuardSettings = Field(default_factory=GuardSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    billing_service: BillingServiceSettings = Field(default_factory=BillingServiceSettings)

    @field_validator("API_PREFIX")
    @classmethod
    def validate_api_prefix(cls, value: str) -> str:
        """Ensure the API prefix starts with a slash and has no trailing slash."""
        normalized = value.strip()
        if not normalized.startswith("/"):
            raise ValueError("API_PREFIX must start with '/'.")
        return normalized.rstrip("/") or "/"

    @property
    def gateway_publishable_key(self) -> str:
        """Live key outside development, or whenever the live key is forced."""
        if self.gateway.force_live or self.ENV != "development":
            return self.gateway.publishable_key_live
        return self.gateway.publishable_key_test


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()


settings: Settings = get_settings()
