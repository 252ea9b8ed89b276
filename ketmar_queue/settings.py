"""Configuration settings for the KETMAR queue layer."""

from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FallbackPolicy(str, Enum):
    """What the queue manager does with a job it could not enqueue."""
    DROP = "drop"
    INLINE = "inline"


class QueueSettings(BaseSettings):
    """Queue layer settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Broker configuration
    redis_url: Optional[str] = Field(None, validation_alias="REDIS_URL")
    upstash_redis_url: Optional[str] = Field(None, validation_alias="UPSTASH_REDIS_URL")
    queue_connect_retries: int = Field(3, ge=1, le=10)

    # Queue behaviour
    queue_fallback_policy: FallbackPolicy = FallbackPolicy.DROP
    queue_events_poll_interval: float = Field(5.0, gt=0)  # seconds
    queue_scheduler_interval: float = Field(1.0, gt=0)  # seconds
    queue_worker_max_jobs: int = Field(50, ge=1)
    queue_job_timeout: int = Field(300, ge=1)  # 5 minutes

    # Logging
    log_level: str = "INFO"

    @property
    def broker_url(self) -> Optional[str]:
        """First non-empty broker URL, REDIS_URL winning over UPSTASH_REDIS_URL."""
        for url in (self.redis_url, self.upstash_redis_url):
            if url and url.strip():
                return url.strip()
        return None


# Global settings instance
settings = QueueSettings()


def get_settings() -> QueueSettings:
    """Get global queue settings."""
    return settings
