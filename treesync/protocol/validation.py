"""Runtime stream guardrails.

Stateful checks the session runs on every decoded event.  In debug mode
violations log at ERROR level, otherwise at WARNING.  The guard never
crashes the stream: it only reports, and tells the caller whether a
replayed (duplicate) frame should be dropped.
"""

from __future__ import annotations

import logging
from typing import Optional

from treesync.config import settings
from treesync.protocol.events import StreamEvent
from treesync.protocol.registry import EVENT_REGISTRY

logger = logging.getLogger(__name__)


class StreamGuard:
    """Tracks ordering invariants for one stream."""

    def __init__(self) -> None:
        self._event_count = 0
        self._last_sequence: Optional[int] = None
        self._has_done = False
        self._duplicates = 0

    def check_event(self, event: StreamEvent) -> list[str]:
        """Validate an event before dispatch. Returns list of violations (empty = ok)."""
        violations: list[str] = []

        if event.type not in EVENT_REGISTRY:
            violations.append(f"Unregistered event type: '{event.type}'")

        if self._has_done:
            violations.append(
                f"Event '{event.type}' received after 'done' (terminal violation)"
            )

        seq = event.sequence
        if seq is not None and self._last_sequence is not None and seq <= self._last_sequence:
            violations.append(
                f"Duplicate or out-of-order sequence {seq} (last seen {self._last_sequence})"
            )

        for v in violations:
            if settings.debug:
                logger.error(f"❌ Stream violation: {v}")
            else:
                logger.warning(f"⚠️ Stream violation: {v}")

        return violations

    def accept(self, event: StreamEvent) -> bool:
        """Record ``event`` and return ``False`` when it is a replayed frame to drop."""
        self.check_event(event)
        seq = event.sequence
        if seq is not None and self._last_sequence is not None and seq <= self._last_sequence:
            self._duplicates += 1
            return False
        if seq is not None:
            self._last_sequence = seq
        self._event_count += 1
        if event.type == "done":
            self._has_done = True
        return True

    @property
    def last_sequence(self) -> Optional[int]:
        return self._last_sequence

    @property
    def duplicates(self) -> int:
        """Number of replayed frames dropped so far."""
        return self._duplicates

    @property
    def event_count(self) -> int:
        return self._event_count

    @property
    def terminated(self) -> bool:
        """``True`` once a ``done`` event has been accepted for this stream."""
        return self._has_done
