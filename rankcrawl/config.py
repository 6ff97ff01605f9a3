from pydantic_settings import BaseSettings, SettingsConfigDict

# Leaderboard range flag (days) -> API range name
LEADERBOARD_RANGES: dict[int, str] = {
    7: "last_7_days",
    30: "last_30_days",
    180: "last_6_months",
    365: "last_year",
}

TEN_YEARS_SECONDS = 60 * 60 * 24 * 365 * 10


def leaderboard_range_name(days: int) -> str:
    """Map a range flag to the API's range name, defaulting to the last 7 days."""
    return LEADERBOARD_RANGES.get(days, LEADERBOARD_RANGES[7])


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # WakaTime API
    wakatime_api_key: str = ""
    wakatime_base_url: str = "https://wakatime.com/api/v1"
    leaderboard_range: int = 7  # 7, 30, 180 or 365
    http_timeout: float = 10.0  # seconds, client-wide

    # Crawling
    concurrency: int = 1  # detail-phase workers
    progress_every: int = 100

    # Storage
    data_dir: str = "."
    checkpoint_file: str = "users.json"
    seed_file: str = "allusers.json"
    flush_interval_seconds: float = 60.0

    # Response cache
    cache_backend: str = "disk"  # disk, redis, memory
    cache_for_seconds: int = TEN_YEARS_SECONDS
    mark_cached_responses: bool = True
    redis_url: str = "redis://localhost:6379/0"

    # Backoff on 429
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 15 * 60
    backoff_max_elapsed_seconds: float = 60 * 60

    # Notifications
    webhook_url: str | None = None
    webhook_level: str = "INFO"
    webhook_max_failures: int = 10

    # App
    app_name: str = "rankcrawl"
    app_version: str = "1.0.0"
    debug: bool = False

    @property
    def range_name(self) -> str:
        return leaderboard_range_name(self.leaderboard_range)


settings = Settings()
