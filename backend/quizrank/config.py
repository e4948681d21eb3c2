import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="QUIZRANK_DATABASE_URL")
    database_pool_size: int = Field(10, alias="QUIZRANK_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="QUIZRANK_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="QUIZRANK_DATABASE_ECHO")
    debug_endpoints: bool = Field(False, alias="QUIZRANK_DEBUG_ENDPOINTS")
    page_size: int = Field(20, ge=1, le=500, alias="QUIZRANK_PAGE_SIZE")
    cache_ttl_seconds: int = Field(60 * 60 * 24, ge=0, alias="QUIZRANK_CACHE_TTL_SECONDS")
    session_cache_ttl_seconds: int = Field(60 * 30, ge=0, alias="QUIZRANK_SESSION_CACHE_TTL_SECONDS")
    cache_key_prefix: str = Field("quizrank_leaderboard_", alias="QUIZRANK_CACHE_KEY_PREFIX")
    cache_dir: Optional[str] = Field(None, alias="QUIZRANK_CACHE_DIR")
    off_peak_timezone: str = Field("America/Chicago", alias="QUIZRANK_OFF_PEAK_TIMEZONE")
    off_peak_start_hour: int = Field(0, ge=0, le=23, alias="QUIZRANK_OFF_PEAK_START_HOUR")
    off_peak_end_hour: int = Field(6, ge=0, le=24, alias="QUIZRANK_OFF_PEAK_END_HOUR")
    period_timezone: str = Field("UTC", alias="QUIZRANK_PERIOD_TIMEZONE")
    default_test_duration_seconds: int = Field(900, ge=0, alias="QUIZRANK_DEFAULT_TEST_DURATION_SECONDS")
    fetch_throttle_seconds: float = Field(5.0, ge=0.0, alias="QUIZRANK_FETCH_THROTTLE_SECONDS")
    fetch_tracker_size: int = Field(256, ge=1, alias="QUIZRANK_FETCH_TRACKER_SIZE")
    live_subscription_max_seconds: float = Field(60 * 30, ge=0.0, alias="QUIZRANK_LIVE_MAX_SECONDS")
    profile_batch_size: int = Field(10, ge=1, alias="QUIZRANK_PROFILE_BATCH_SIZE")
    session_registry_size: int = Field(512, ge=1, alias="QUIZRANK_SESSION_REGISTRY_SIZE")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[arg-type]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
