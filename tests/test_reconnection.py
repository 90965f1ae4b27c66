"""Tests for ReconnectionManager backoff and resume bookkeeping."""

from __future__ import annotations

import random

from treesync.core.reconnection import RESUME_HEADER, ReconnectionManager


def _manager(max_retries: int = 3) -> ReconnectionManager:
    return ReconnectionManager(
        max_retries=max_retries,
        base_delay_ms=1000,
        max_delay_ms=8000,
        rng=random.Random(0),
    )


class TestBackoff:
    def test_exponential_with_jitter_and_cap(self) -> None:
        manager = _manager(max_retries=10)
        bounds = [(1.1, 1.3), (2.2, 2.6), (4.4, 5.2), (8.8, 10.4), (8.8, 10.4)]
        for low, high in bounds:
            assert low <= manager.next_delay() <= high
        assert manager.retry_count == 5

    def test_retry_budget(self) -> None:
        manager = _manager(max_retries=3)
        for _ in range(3):
            assert manager.should_retry()
            manager.next_delay()
        assert not manager.should_retry()

    def test_reset(self) -> None:
        manager = _manager()
        manager.record_sequence(4)
        manager.next_delay()
        assert manager.state.is_reconnecting
        manager.reset()
        assert manager.retry_count == 0
        assert manager.last_sequence == -1
        assert not manager.state.is_reconnecting


class TestResume:
    def test_no_header_before_first_frame(self) -> None:
        assert _manager().resume_headers() == {}

    def test_high_water_mark(self) -> None:
        manager = _manager()
        for seq in (0, 3, 2, 5, 1):
            manager.record_sequence(seq)
        assert manager.last_sequence == 5
        assert manager.resume_headers() == {RESUME_HEADER: "5"}

    def test_state_snapshot(self) -> None:
        manager = _manager()
        manager.record_sequence(7)
        state = manager.state
        assert (state.last_sequence, state.retry_count, state.is_reconnecting) == (7, 0, False)
