"""treesync wire protocol: frame schema, typed events, registry, guard."""
from __future__ import annotations

from treesync.protocol.events import (
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    Patch,
    PatchEvent,
    StreamEvent,
    UnknownEvent,
)
from treesync.protocol.frames import FrameDecodeError, build_frame, decode_frame, encode_frame
from treesync.protocol.registry import EVENT_REGISTRY, get_event_class, is_known_event
from treesync.protocol.validation import StreamGuard
from treesync.protocol.wire import WireFrame

__all__ = [
    "DoneEvent",
    "EVENT_REGISTRY",
    "ErrorEvent",
    "FrameDecodeError",
    "MessageEvent",
    "Patch",
    "PatchEvent",
    "StreamEvent",
    "StreamGuard",
    "UnknownEvent",
    "WireFrame",
    "build_frame",
    "decode_frame",
    "encode_frame",
    "get_event_class",
    "is_known_event",
]
