"""Undo/redo history of tree + conversation snapshots.

History is caller-driven: the engine never checkpoints on its own.  The
integrating application calls ``push_history`` at whatever granularity it
wants (typically once per completed turn).
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Optional

from treesync.config import settings
from treesync.core.tree_store import UITree
from treesync.models.conversation import ConversationTurn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistorySnapshot:
    """Deep copies of the tree and the conversation at a checkpoint.

    ``undo`` and ``redo`` hand out private copies, so editing a returned
    snapshot never changes what the manager holds.
    """

    tree: Optional[UITree]
    conversation: list[ConversationTurn] = field(default_factory=list)


HistoryListener = Callable[["HistoryManager"], None]


class HistoryManager:
    """Ordered snapshot list with a current index.

    ``index`` is -1 when empty.  ``can_undo == (index >= 0)`` and
    ``can_redo == (index < length - 1)`` hold at all times.
    """

    def __init__(self, limit: Optional[int] = None) -> None:
        self._limit = settings.history_limit if limit is None else limit
        self._snapshots: list[HistorySnapshot] = []
        self._index = -1
        self._listeners: list[HistoryListener] = []

    @property
    def index(self) -> int:
        return self._index

    @property
    def length(self) -> int:
        return len(self._snapshots)

    @property
    def can_undo(self) -> bool:
        return self._index >= 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._snapshots) - 1

    @property
    def snapshots(self) -> tuple[HistorySnapshot, ...]:
        return tuple(self._snapshots)

    def push_history(
        self,
        tree: Optional[UITree],
        conversation: Sequence[ConversationTurn] = (),
    ) -> HistorySnapshot:
        """Append a deep-copied snapshot, discarding any redo tail."""
        snapshot = HistorySnapshot(
            tree=copy.deepcopy(tree),
            conversation=copy.deepcopy(list(conversation)),
        )
        del self._snapshots[self._index + 1:]
        self._snapshots.append(snapshot)
        self._index = len(self._snapshots) - 1

        if self._limit > 0 and len(self._snapshots) > self._limit:
            dropped = len(self._snapshots) - self._limit
            del self._snapshots[:dropped]
            self._index = max(self._index - dropped, -1)
            logger.debug(f"History limit {self._limit} reached; dropped {dropped} oldest snapshot(s)")

        self._notify()
        return snapshot

    def undo(self) -> Optional[HistorySnapshot]:
        """Return the snapshot at ``index`` and step back.  ``None`` when nothing to undo."""
        if self._index < 0:
            return None
        snapshot = self._snapshots[self._index]
        self._index -= 1
        self._notify()
        return copy.deepcopy(snapshot)

    def redo(self) -> Optional[HistorySnapshot]:
        """Return the snapshot at ``index + 1`` and step forward.  ``None`` at the end."""
        if self._index + 1 >= len(self._snapshots):
            return None
        self._index += 1
        snapshot = self._snapshots[self._index]
        self._notify()
        return copy.deepcopy(snapshot)

    def clear_history(self) -> None:
        self._snapshots = []
        self._index = -1
        self._notify()

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        """Register a listener called after every change.  Returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
