"""treesync — streaming UI tree synchronization.

Reconstructs and patches a keyed element tree from an incremental,
server-streamed description while the stream is still arriving.

    raw chunks → LineBuffer → parse_line → StreamSession dispatch
               → PatchBuffer (ordered batch) → TreeStore.apply_batch
"""
from __future__ import annotations

from treesync.core.history import HistoryManager, HistorySnapshot
from treesync.core.line_buffer import LineBuffer
from treesync.core.patch_buffer import PatchBuffer
from treesync.core.session import StreamOutcome, StreamSession
from treesync.core.stream_parser import parse_line
from treesync.core.tree_store import (
    TreeStore,
    UITree,
    apply_patch,
    apply_patches_batch,
    flat_to_tree,
    remove_node_from_tree,
    tree_to_flat,
)
from treesync.protocol.events import Patch, StreamEvent

__all__ = [
    "HistoryManager",
    "HistorySnapshot",
    "LineBuffer",
    "Patch",
    "PatchBuffer",
    "StreamEvent",
    "StreamOutcome",
    "StreamSession",
    "TreeStore",
    "UITree",
    "apply_patch",
    "apply_patches_batch",
    "flat_to_tree",
    "parse_line",
    "remove_node_from_tree",
    "tree_to_flat",
]
