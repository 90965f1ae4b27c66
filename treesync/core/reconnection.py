"""Reconnection bookkeeping: exponential backoff plus resume-from-sequence.

The engine does not own the transport.  The integrating client records
every processed frame sequence here; when the connection drops it asks
``should_retry()``, sleeps ``next_delay()`` seconds and reconnects with
``resume_headers()`` so the server skips frames already delivered.
Frames replayed anyway are dropped by the session's ``StreamGuard``.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional

from treesync.config import settings

logger = logging.getLogger(__name__)

RESUME_HEADER = "X-Resume-After-Sequence"


@dataclass(frozen=True)
class ReconnectionState:
    last_sequence: int
    retry_count: int
    is_reconnecting: bool


class ReconnectionManager:
    """Tracks the last processed sequence and the retry budget for one stream."""

    def __init__(
        self,
        *,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.max_retries = settings.reconnect_max_retries if max_retries is None else max_retries
        self.base_delay_ms = settings.reconnect_base_delay_ms if base_delay_ms is None else base_delay_ms
        self.max_delay_ms = settings.reconnect_max_delay_ms if max_delay_ms is None else max_delay_ms
        self._rng = rng or random.Random()
        self._last_sequence = -1
        self._retry_count = 0

    def record_sequence(self, sequence: int) -> None:
        """Record a processed frame; the high-water mark never moves backwards."""
        if sequence > self._last_sequence:
            self._last_sequence = sequence

    @property
    def last_sequence(self) -> int:
        """Highest processed sequence, -1 before the first frame."""
        return self._last_sequence

    @property
    def retry_count(self) -> int:
        return self._retry_count

    def should_retry(self) -> bool:
        return self._retry_count < self.max_retries

    def next_delay(self) -> float:
        """Seconds to wait before the next attempt, and count the attempt.

        ``base * 2**retries`` capped at ``max_delay``, plus 10-30% jitter.
        """
        exponential = self.base_delay_ms * (2 ** self._retry_count)
        capped = min(exponential, self.max_delay_ms)
        jitter = capped * (0.1 + self._rng.random() * 0.2)
        self._retry_count += 1
        delay_ms = round(capped + jitter)
        logger.info(f"🔁 Reconnect attempt {self._retry_count}/{self.max_retries} in {delay_ms}ms")
        return delay_ms / 1000

    def resume_headers(self) -> dict[str, str]:
        if self._last_sequence < 0:
            return {}
        return {RESUME_HEADER: str(self._last_sequence)}

    def reset(self) -> None:
        self._last_sequence = -1
        self._retry_count = 0

    @property
    def state(self) -> ReconnectionState:
        return ReconnectionState(
            last_sequence=self._last_sequence,
            retry_count=self._retry_count,
            is_reconnecting=self._retry_count > 0,
        )
