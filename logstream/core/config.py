"""Environment-based settings for the logstream consumer."""

from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Consumer settings, read from ``LOGSTREAM_*`` environment variables.

    Blank values fall back to the defaults below.
    """

    stream_name: str = "log-stream"
    application_name: str = "log-stream-consumer"
    region: str = "us-east-2"
    table_name: str = "log-stream-logs"
    event_bus: str = "default"
    # When false, an alert that exhausts its retries is logged and the
    # record is still stored and checkpointed.
    alerts_block_checkpoint: bool = True

    redis_url: str = "redis://localhost:6379"
    shard_count: int = 1
    read_batch_size: int = 1000
    read_timeout: float = 0.1
    # Entries another consumer has held unacknowledged this long are taken over
    claim_min_idle_ms: int = 60_000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="LOGSTREAM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("*", mode="before")
    @classmethod
    def blank_means_default(cls, v: Any, info) -> Any:
        if isinstance(v, str) and not v.strip():
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("shard_count", "read_batch_size")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("claim_min_idle_ms")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    def shard_streams(self) -> list[str]:
        """Redis stream key of every shard, ``{stream_name}:{n}``."""
        return [f"{self.stream_name}:{n}" for n in range(self.shard_count)]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
