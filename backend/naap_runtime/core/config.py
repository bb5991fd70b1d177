"""
NaaP Runtime - Configuration
============================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "NaaP Runtime"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./naap_runtime.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Identity / Scheduler Authentication
    # ==========================================================================
    BASE_SVC_URL: str = "http://localhost:4000"
    IDENTITY_TIMEOUT_SECONDS: float = 10.0
    CRON_SECRET: Optional[str] = None

    # ==========================================================================
    # Plugin Backends
    # ==========================================================================
    PLUGIN_PORT_MIN: int = 4100
    PLUGIN_PORT_MAX: int = 4999
    PLUGIN_RESERVED_PORTS: list[int] = list(range(4000, 4011))
    PLUGIN_BACKEND_HOST: str = "localhost"
    PLUGIN_BACKEND_URLS: dict[str, str] = {}
    PLUGIN_HEALTH_PATH: str = "/healthz"

    # ==========================================================================
    # Lifecycle Hooks
    # ==========================================================================
    HOOK_TIMEOUT_SECONDS: float = 300.0
    HOOK_KILL_GRACE_SECONDS: float = 5.0

    # ==========================================================================
    # Process Monitor
    # ==========================================================================
    PROCESS_MONITOR_INTERVAL_SECONDS: float = 30.0
    PROCESS_MONITOR_MAX_FAILED_CHECKS: int = 3
    PROCESS_MONITOR_TIMEOUT_SECONDS: float = 5.0
    PROCESS_MONITOR_RECHECK_DELAY_SECONDS: float = 5.0
    PROCESS_MONITOR_MAX_RESTARTS: Optional[int] = None

    # ==========================================================================
    # Service Gateway
    # ==========================================================================
    GATEWAY_HEALTH_BATCH_SIZE: int = 5
    GATEWAY_HEALTH_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_HEALTH_DEGRADED_MS: int = 2000
    GATEWAY_HEALTH_MAX_DURATION_SECONDS: float = 55.0
    GATEWAY_CACHE_TTL_SECONDS: float = 60.0
    GATEWAY_NEGATIVE_CACHE_TTL_SECONDS: float = 5.0
    GATEWAY_PROXY_TIMEOUT_SECONDS: float = 30.0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"

    def plugin_backend_url(self, plugin_name: str, port: int) -> str:
        """Base URL of a plugin backend, honoring per-plugin overrides."""
        override = self.PLUGIN_BACKEND_URLS.get(plugin_name)
        if override:
            return override.rstrip("/")
        return f"http://{self.PLUGIN_BACKEND_HOST}:{port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
