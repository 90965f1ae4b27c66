"""Line framing: split ``<tag>:<content>`` lines and encode/decode wire frames.

Two directions:

  ``decode_frame(content)``  strict decode of a data-event payload into a
                             ``WireFrame``.  Raises ``FrameDecodeError``.
  ``encode_frame(frame)``    serialize a ``WireFrame`` back to a ``d:`` line.
                             Used by replay fixtures and tests.

The streaming parser (``treesync.core.stream_parser``) never lets
``FrameDecodeError`` escape; it logs and drops the line.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import ValidationError

from treesync.protocol.events import (
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    PatchEvent,
    StreamEvent,
    StreamingStartedEvent,
    ToolProgressEvent,
)
from treesync.protocol.registry import CONTROL_ACTIONS
from treesync.protocol.wire import WireFrame

logger = logging.getLogger(__name__)

TEXT_TAG = "0"
DATA_TAGS: frozenset[str] = frozenset({"d", "data"})
DONE_MARKER = "[DONE]"

_ACTION_FOR_TYPE = {event_type: action for action, event_type in CONTROL_ACTIONS.items()}


class FrameDecodeError(Exception):
    """Raised when a line payload is not valid JSON or not a valid wire frame.

    ``issues`` carries the Pydantic error list for schema violations and is
    empty for JSON syntax errors.
    """

    def __init__(self, message: str, issues: Optional[list[dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.issues = issues or []


def split_line(line: str) -> Optional[tuple[str, str]]:
    """Split ``tag:content`` at the first colon.  ``None`` if there is no colon.

    A single space after the colon (SSE ``data: {...}`` style) is dropped.
    """
    idx = line.find(":")
    if idx == -1:
        return None
    tag, content = line[:idx], line[idx + 1:]
    if content.startswith(" "):
        content = content[1:]
    return tag, content


def decode_frame(content: str | Mapping[str, Any]) -> WireFrame:
    """Decode and validate one data-event payload."""
    if isinstance(content, str):
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise FrameDecodeError(f"Invalid JSON in frame: {exc.msg}") from exc
    else:
        data = content
    try:
        return WireFrame.model_validate(data)
    except ValidationError as exc:
        issues = exc.errors(include_url=False)
        raise FrameDecodeError(f"Wire frame failed validation ({len(issues)} issue(s))", issues) from exc


def encode_frame(frame: WireFrame, tag: str = "d") -> str:
    """Serialize a frame to ``<tag>:{json}\\n``."""
    data = frame.to_wire()
    return f"{tag}:{json.dumps(data, separators=(',', ':'), ensure_ascii=False)}\n"


def encode_text(text: str) -> str:
    """Serialize a text part to ``0:"..."\\n``."""
    return f"{TEXT_TAG}:{json.dumps(text, ensure_ascii=False)}\n"


def build_frame(event: StreamEvent, sequence: int, correlation_id: Optional[str] = None) -> WireFrame:
    """Build the wire frame that decodes back to ``event``.

    Raises ``ValueError`` for event types with no frame representation
    (``text-delta`` and ``unknown`` travel outside sequenced frames).
    """
    body: dict[str, Any]
    if isinstance(event, MessageEvent):
        body = {"kind": "message", **event.message.to_wire()}
    elif isinstance(event, ToolProgressEvent):
        body = {"kind": "progress", **event.progress.to_wire()}
    elif isinstance(event, PatchEvent):
        patches = event.patches or [event.patch]
        body = {"kind": "patch", "patches": [p.to_dict() for p in patches], "atomic": event.atomic}
    elif isinstance(event, ErrorEvent):
        body = {"kind": "error", "code": event.code, "message": event.message, "recoverable": event.recoverable}
    elif isinstance(event, DoneEvent):
        body = {"kind": "done"}
    elif isinstance(event, StreamingStartedEvent):
        body = {"kind": "control", "action": "start", "data": event.data}
    elif event.type in _ACTION_FOR_TYPE:
        fields = event.model_dump(by_alias=True, exclude={"type", "sequence"})
        body = {"kind": "control", "action": _ACTION_FOR_TYPE[event.type], "data": fields}
    else:
        raise ValueError(f"Event type '{event.type}' has no wire frame representation")
    return WireFrame.model_validate(
        {"sequence": sequence, "correlationId": correlation_id, "event": body}
    )
