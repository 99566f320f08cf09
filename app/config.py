"""
Agent Analytics Configuration

All environment variables and settings for the analytics dashboard service.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ==========================================================================
    # APP
    # ==========================================================================
    app_name: str = "Agent Analytics"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # ==========================================================================
    # SUPABASE (event store + auth provider)
    # ==========================================================================
    supabase_url: str
    supabase_service_key: str

    # ==========================================================================
    # DASHBOARD
    # ==========================================================================
    dashboard_cors_origins: str = "https://app.agentdesk.ai"
    dashboard_rate_limit_rpm: int = 120
    # Per-operator controllers are dropped after this much idle time
    dashboard_registry_ttl_seconds: float = 1800.0
    dashboard_registry_max_entries: int = 1000

    # ==========================================================================
    # ANALYTICS
    # ==========================================================================
    analytics_default_period: str = "7d"
    # Unknown period tokens raise unless this is switched on
    analytics_allow_period_fallback: bool = False
    analytics_top_intents: int = 5
    analytics_page_size: int = 1000

    # ==========================================================================
    # REAL-TIME FEED
    # ==========================================================================
    realtime_interval_seconds: float = 5.0
    realtime_lookback_seconds: int = 300
    realtime_max_retries: int = 3
    realtime_backoff_base_seconds: float = 0.5
    realtime_backoff_max_seconds: float = 8.0

    # ==========================================================================
    # SERVER
    # ==========================================================================
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
