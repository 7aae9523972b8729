from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    env: str = "dev"
    database_url: str = "sqlite:///./data/farewatch.db"
    redis_url: Optional[str] = None

    scheduler_enabled: bool = True
    monitoring_tick_minutes: int = 5
    urgent_tick_minutes: int = 30
    quality_update_hours: int = 6
    max_concurrent_checks: int = 5
    timezone: str = "UTC"

    ntfy_url: str = "http://localhost:8080"
    ntfy_topic: str = "farewatch-alerts"
    base_url: str = "http://localhost:8000"

    # Route statistics
    stats_lookback_days: int = 30
    stats_cache_ttl_seconds: int = 3 * 3600
    stats_recent_window_days: int = 7
    trend_slope_threshold: float = 0.1
    recent_drop_window: int = 10
    observation_retention_days: int = 90

    # Break detection
    price_floor: float = 10.0
    price_ceiling: float = 50000.0
    min_drop_percentage: float = 5.0
    min_confidence: float = 0.6
    max_drop_percentage: float = 80.0
    max_recent_drops: int = 5
    min_history_for_analysis: int = 5
    ample_history_count: int = 20
    min_data_quality: float = 0.5

    # Spam prevention
    spam_min_price: float = 25.0
    spam_max_price: float = 20000.0
    hard_volatility_threshold: float = 80.0
    soft_volatility_threshold: float = 50.0
    filter_triggers_soft_limit: int = 3
    filter_triggers_hard_limit: int = 5
    route_triggers_hourly_limit: int = 10
    min_provider_observations: int = 10
    unreliable_providers: list[str] = ["fake_provider", "test_provider"]

    # Alert intelligence
    max_notifications_per_hour: int = 3
    same_route_cooldown_hours: int = 2

    # Alert quality
    quality_change_threshold: float = 0.1
    quality_batch_size: int = 100

    # Fetching
    fetch_timeout_seconds: float = 30.0
    fetch_max_retries: int = 2
    fetch_retry_delay: float = 1.0
    quote_provider_url: Optional[str] = None
    quote_provider_api_key: Optional[str] = None
    quote_strategy: str = "cascade"
    provider_requests_per_minute: int = 30
    provider_requests_per_hour: int = 500
    provider_burst_limit: int = 5
    rate_limit_max_wait_seconds: float = 10.0

    # Rescheduling
    no_data_retry_hours: float = 2.0
    persistence_retry_minutes: float = 15.0
    jitter_min: float = 0.1
    jitter_max: float = 0.3

    def model_post_init(self, __context):
        if self.env == "prod" and self.database_url.startswith("sqlite"):
            raise ValueError(
                "Production requires explicit DATABASE_URL (not SQLite)"
            )

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
