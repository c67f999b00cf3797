from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict
from typing import List
from functools import lru_cache

class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"  # Allow extra environment variables
    )

    # Application
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    ENVIRONMENT: str = Field(default="development")
    ENABLE_STRUCTURED_LOGGING: bool = Field(default=True)
    API_PORT: int = Field(default=8000)

    # Database
    DATABASE_URL: str = Field(default="sqlite:///./catalog_sync.db", description="Database connection string")

    # Redis/Celery
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")
    SYNC_QUEUE_NAME: str = Field(default="sync-jobs")
    WORKER_CONCURRENCY: int = Field(default=5, description="Jobs processed in parallel per worker")
    JOB_MAX_ATTEMPTS: int = Field(default=3, description="Total attempts per job, including the first run")
    JOB_RETRY_DELAY_SECONDS: int = Field(default=5, description="Base delay of the exponential job backoff")
    QUEUE_RATE_LIMIT: str = Field(default="10/s", description="Celery rate limit for sync jobs")
    JOB_RESULT_TTL_SECONDS: int = Field(default=24 * 3600)
    STALLED_JOB_MINUTES: int = Field(default=30)

    # Scheduler
    SCHEDULER_INTERVAL_SECONDS: int = Field(default=60)
    MAX_JOBS_PER_CYCLE: int = Field(default=100)
    CLEANUP_OLDER_THAN_DAYS: int = Field(default=7)
    CLEANUP_INTERVAL_SECONDS: int = Field(default=3600)
    HEALTH_CHECK_INTERVAL_SECONDS: int = Field(default=300)

    # HTTP adapters
    API_TIMEOUT: int = Field(default=30)
    RETRY_ATTEMPTS: int = Field(default=3)
    RETRY_DELAY_SECONDS: float = Field(default=1.0, description="Incremental backoff step for 5xx/network errors")
    RATE_LIMIT_DEFAULT_WAIT_SECONDS: float = Field(default=60.0, description="Wait used when a 429 carries no Retry-After")
    MAX_RATE_LIMIT_WAITS: int = Field(default=5)
    SOURCE_PAGE_SIZE: int = Field(default=100)
    SOURCE_PAGE_DELAY_SECONDS: float = Field(default=0.1)
    IMAGE_FETCH_CONCURRENCY: int = Field(default=10)
    IMAGE_FETCH_DELAY_SECONDS: float = Field(default=0.05)
    SINK_RATE_LIMIT: int = Field(default=50, description="Requests per 10 seconds")

    # Sync behavior
    SYNC_BATCH_SIZE: int = Field(default=100)
    CONFIG_CACHE_TTL_SECONDS: int = Field(default=300)
    CONFIG_STALE_AFTER_HOURS: int = Field(default=6)
    DEFAULT_TAX_RATE: float = Field(default=19.0, description="Used for net prices when the tenant sets no tax rate")
    DEFAULT_LANGUAGE: str = Field(default="de")
    FALLBACK_LANGUAGES: List[str] = Field(default_factory=lambda: ["en"])

@lru_cache()
def get_settings() -> Settings:
    return Settings()
