"""
treesync Configuration

Environment-based configuration for the stream synchronization engine.
Every field can be overridden with a ``TREESYNC_``-prefixed variable.
"""
import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    debug: bool = False
    log_level: str = "INFO"

    # Patch buffering
    flush_interval_ms: int = 50  # timer delay once the first patch of a batch arrives
    max_buffer_size: int = 100   # backpressure: forced flush at this many pending patches
    validate_after_flush: bool = False

    # Stream reading
    idle_timeout_seconds: float = 90.0
    accept_legacy_payloads: bool = True  # pre-wire-frame {op, path, value} / {type: ...} shapes

    # Undo/redo
    history_limit: int = 100

    # Reconnection (exponential backoff + resume-from-sequence)
    reconnect_max_retries: int = 3
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 8000

    # Element types that `remove` patches may not delete (e.g. ["Canvas"])
    protected_types: list[str] = []

    @model_validator(mode="after")
    def _warn_unbatched_flush(self) -> "Settings":
        """Warn when a zero flush interval defeats batching."""
        if self.flush_interval_ms <= 0 and self.max_buffer_size > 1:
            logging.getLogger(__name__).warning(
                "TREESYNC_FLUSH_INTERVAL_MS=0 flushes on every event loop tick; "
                "patch batching will be mostly ineffective."
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="TREESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience access
settings = get_settings()
