"""
Configuration management for the OpenTV backend.
Uses pydantic-settings for environment variable loading.
"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    app_name: str = "OpenTV"
    app_version: str = "0.1.0"
    debug: bool = False

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS Configuration
    # Default allows all origins for development; set OPENTV_CORS_ORIGINS for production
    cors_origins: list[str] = ["*"]

    # Rate Limiting
    rate_limit_per_minute: int = 100

    # Database
    database_path: str = "data/opentv_catalog.db"

    # Catalog refresh (daily upstream sync, hour in UTC)
    refresh_hour_utc: int = 3

    # Listing pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Stream probing
    probing_enabled: bool = True
    probe_strategy: str = "http"  # "http" or "ffprobe"
    probe_timeout_seconds: float = 5.0
    max_concurrent_probes: int = 3

    # Probe cache
    probe_cache_path: str = "data/probe_cache.json"
    probe_cache_max_entries: int = 1000
    probe_working_ttl_hours: int = 24
    probe_failed_ttl_hours: int = 6

    # Pydantic V2 configuration
    model_config = SettingsConfigDict(env_prefix="OPENTV_", env_file=".env")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
