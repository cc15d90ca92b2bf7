"""Application settings using Pydantic BaseSettings."""

import ipaddress
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    # The gallery frontend is served from a different origin than this API.
    cors_origins: str = Field(default="https://ermiasgelaye.github.io")

    # Peers whose X-Forwarded-For is believed (comma-separated CIDRs). Behind
    # a hosting proxy, add its egress ranges or every client shares one
    # network quota bucket.
    trusted_proxies: str = Field(default="127.0.0.0/8,::1/128,172.17.0.0/16,10.244.0.0/16")

    # Store backend
    # "memory" = per-process dicts (single worker only)
    # "redis" = shared store (requires redis_url)
    store_backend: str = Field(default="memory")
    redis_url: str = Field(default="")
    redis_key_prefix: str = Field(default="gallery:")
    # Upper bound on any single store call. A timeout is reported to the
    # caller as a retryable failure and never treated as "allowed".
    store_timeout_seconds: float = Field(default=2.0)

    # Free quota
    free_download_limit: int = Field(default=3)
    # Responses carry warning=true when remaining <= this value.
    quota_warning_threshold: int = Field(default=1)

    # Retention windows for quota records (by last-seen time)
    account_retention_days: int = Field(default=30)
    device_retention_days: int = Field(default=30)
    network_retention_days: int = Field(default=7)

    # Entitlements
    entitlement_validity_days: int = Field(default=365)
    default_features: str = Field(default="unlimited_downloads")
    max_entitlement_validity_days: int = Field(default=3650)
    # Shared secret the payment integration sends in X-Activation-Key.
    # Empty means activation is refused for every caller.
    activation_api_key: str = Field(default="")

    # Eviction sweeper
    sweeper_enabled: bool = Field(default=True)
    sweeper_interval_seconds: int = Field(default=86400)

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def default_features_list(self) -> List[str]:
        if not self.default_features:
            return []
        return [f.strip() for f in self.default_features.split(",") if f.strip()]

    @property
    def trusted_proxy_networks(self) -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        return [
            ipaddress.ip_network(net.strip(), strict=False)
            for net in self.trusted_proxies.split(",")
            if net.strip()
        ]

    @property
    def retention_days_by_dimension(self) -> dict[str, int]:
        return {
            "account": self.account_retention_days,
            "device": self.device_retention_days,
            "network": self.network_retention_days,
        }

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def is_prod_like(self) -> bool:
        """Check if running in production or staging mode."""
        return self.environment in {"production", "staging"}

    @property
    def docs_url(self) -> str | None:
        """Return docs URL if not in prod-like environment, else None."""
        return None if self.is_prod_like else "/docs"

    @property
    def openapi_url(self) -> str | None:
        """Return openapi URL if not in prod-like environment, else None."""
        return None if self.is_prod_like else "/openapi.json"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production, test")
        return vv

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"memory", "redis"}:
            raise ValueError("STORE_BACKEND must be one of: memory, redis")
        return vv

    @model_validator(mode="after")
    def validate_cross_field_constraints(self) -> "Settings":
        if self.store_backend == "redis" and not self.redis_url:
            raise ValueError("REDIS_URL is required when STORE_BACKEND=redis")
        if self.free_download_limit < 1:
            raise ValueError("FREE_DOWNLOAD_LIMIT must be at least 1")
        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive")
        for name, days in self.retention_days_by_dimension.items():
            if days < 1:
                raise ValueError(f"{name.upper()}_RETENTION_DAYS must be at least 1")
        if self.entitlement_validity_days < 1:
            raise ValueError("ENTITLEMENT_VALIDITY_DAYS must be at least 1")
        if self.max_entitlement_validity_days < self.entitlement_validity_days:
            raise ValueError("MAX_ENTITLEMENT_VALIDITY_DAYS must be >= ENTITLEMENT_VALIDITY_DAYS")
        try:
            self.trusted_proxy_networks
        except ValueError as exc:
            raise ValueError(f"TRUSTED_PROXIES contains an invalid network: {exc}") from exc
        if self.is_prod_like and not self.activation_api_key:
            raise ValueError("ACTIVATION_API_KEY is required in production/staging")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
