"""Patch buffer: decouples patch arrival rate from tree application rate.

Patches are queued as they are classified and applied in ordered batches.
A batch is flushed when:

  - the queue reaches ``max_buffer_size`` (backpressure, immediate), or
  - the ``flush_interval_ms`` timer fires (armed on the first queued patch
    when an asyncio loop is running), or
  - the owner calls ``flush()`` at a scheduling boundary (end of a chunk,
    end of stream).

Within a batch patches are sorted by path depth (stable), so "create X"
always lands before "append a child to X".  Cross-batch order is arrival
order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Optional

from treesync.config import settings
from treesync.core.ordering import coalesce_prop_patches, order_patches
from treesync.core.tree_store import PatchInput, TreeStore, UITree, validate_tree
from treesync.protocol.events import Patch

logger = logging.getLogger(__name__)

__all__ = [
    "PatchBuffer",
    "coalesce_prop_patches",
    "order_patches",
]


@dataclass
class _Segment:
    """A run of queued patches applied as one ordered batch."""

    atomic: bool
    patches: list[Patch] = field(default_factory=list)


class PatchBuffer:
    """Queue of pending patches in front of a ``TreeStore``.

    One buffer per stream.  Call ``close()`` on teardown so no flush timer
    outlives the stream.  If a store listener raises mid-flush the error
    propagates and the batches not yet applied stay queued.
    """

    def __init__(
        self,
        store: TreeStore,
        *,
        flush_interval_ms: Optional[int] = None,
        max_buffer_size: Optional[int] = None,
        on_flush: Optional[Callable[[UITree], None]] = None,
        validate_after_flush: Optional[bool] = None,
    ) -> None:
        self._store = store
        self._interval_ms = settings.flush_interval_ms if flush_interval_ms is None else flush_interval_ms
        self._max_size = settings.max_buffer_size if max_buffer_size is None else max_buffer_size
        self._validate = settings.validate_after_flush if validate_after_flush is None else validate_after_flush
        self._on_flush = on_flush
        self._segments: list[_Segment] = []
        self._size = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._closed = False
        self.flush_count = 0

    @property
    def size(self) -> int:
        """Number of queued patches."""
        return self._size

    @property
    def scheduled(self) -> bool:
        """``True`` while a flush timer is armed."""
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, patch: PatchInput) -> None:
        """Queue one patch.  Unusable patches are logged and dropped."""
        self._enqueue([patch], atomic=False)

    def add_many(self, patches: Iterable[PatchInput], atomic: bool = False) -> None:
        """Queue several patches; ``atomic`` keeps them together as their own batch."""
        self._enqueue(list(patches), atomic=atomic)

    def _enqueue(self, raw: list[PatchInput], atomic: bool) -> None:
        if self._closed:
            logger.debug(f"Patch buffer closed; dropping {len(raw)} patch(es)")
            return
        usable: list[Patch] = []
        for item in raw:
            try:
                usable.append(Patch.coerce(item))
            except ValueError as exc:
                logger.warning(f"⚠️ Dropping unusable patch {item!r}: {exc}")
        if not usable:
            return

        if atomic:
            self._segments.append(_Segment(atomic=True, patches=usable))
        elif self._segments and not self._segments[-1].atomic:
            self._segments[-1].patches.extend(usable)
        else:
            self._segments.append(_Segment(atomic=False, patches=usable))
        self._size += len(usable)

        if self._size >= self._max_size:
            logger.debug(f"Patch buffer full ({self._size}), flushing")
            self.flush()
        else:
            self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: the owner flushes at its scheduling boundary
        self._timer = loop.call_later(max(self._interval_ms, 0) / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def flush(self) -> UITree:
        """Apply everything queued, in order, and return the store's tree."""
        self._cancel_timer()
        if not self._segments:
            return self._store.tree

        segments, self._segments = self._segments, []
        count, self._size = self._size, 0
        started = 0
        try:
            for segment in segments:
                started += 1
                self._store.apply_batch(segment.patches)
        finally:
            # a store listener raised: that batch is committed, the rest go back in front
            if started < len(segments):
                rest = segments[started:]
                self._segments = rest + self._segments
                self._size += sum(len(s.patches) for s in rest)
                logger.warning(f"⚠️ Flush interrupted; re-queued {len(rest)} batch(es)")
        tree = self._store.tree
        self.flush_count += 1
        logger.debug(f"Flushed {count} patch(es) in {len(segments)} batch(es) → v{self._store.version}")

        if self._validate:
            for violation in validate_tree(tree):
                logger.warning(f"⚠️ Tree invariant violated after flush: {violation}")
        if self._on_flush is not None:
            self._on_flush(tree)
        return tree

    def clear(self) -> None:
        """Drop everything queued without applying it."""
        self._cancel_timer()
        self._segments = []
        self._size = 0

    def close(self) -> None:
        """Teardown: cancel the timer and drop the queue.  Later adds are ignored."""
        self.clear()
        self._closed = True
