"""Wire frame parser: one text line → one typed ``StreamEvent`` (or nothing).

Line format::

    0:"text part"                      text delta (JSON string payload)
    d:{"sequence": 3, "event": {...}}  data event (wire frame)
    data: {...}                        SSE-style data event
    d:[DONE]                           end-of-stream marker

Failures never propagate: an unknown tag, bad JSON or a schema violation
is logged and the line yields ``None``.  The stream continues.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import ValidationError

from treesync.config import settings
from treesync.core.classifier import classify_patch_entries, classify_payload
from treesync.models.conversation import ChatMessage, ToolProgress
from treesync.protocol.events import (
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolProgressEvent,
)
from treesync.protocol.frames import (
    DATA_TAGS,
    DONE_MARKER,
    TEXT_TAG,
    FrameDecodeError,
    decode_frame,
    split_line,
)
from treesync.protocol.registry import CONTROL_ACTIONS, control_event_from_fields
from treesync.protocol.wire import (
    ControlBody,
    ErrorBody,
    MessageBody,
    PatchBody,
    ProgressBody,
    WireFrame,
)

logger = logging.getLogger(__name__)


def parse_line(line: str, *, accept_legacy: Optional[bool] = None) -> Optional[StreamEvent]:
    """Parse a single stream line into a typed event.

    ``accept_legacy`` overrides ``settings.accept_legacy_payloads`` for
    payloads without an ``event`` key.  Returns ``None`` for blank lines,
    comments, unknown tags and anything malformed.
    """
    line = line.rstrip("\r")
    if not line:
        return None

    parts = split_line(line)
    if parts is None:
        return None
    tag, content = parts

    if tag == TEXT_TAG:
        return _parse_text(content)
    if tag not in DATA_TAGS:
        return None

    if content.strip() == DONE_MARKER:
        logger.debug("Stream [DONE] marker received")
        return DoneEvent(reason="end-marker")

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse stream JSON: %s (line: %s)", e, content[:100])
        return None

    # Wrapped format: {"type": "data", "data": {...}}
    if isinstance(data, Mapping) and data.get("type") == "data" and "data" in data:
        data = data["data"]

    if isinstance(data, Mapping) and "event" in data:
        try:
            frame = decode_frame(data)
        except FrameDecodeError as e:
            logger.warning("Dropping invalid wire frame: %s %s", e, e.issues)
            return None
        return event_from_frame(frame)

    if accept_legacy is None:
        accept_legacy = settings.accept_legacy_payloads
    if not accept_legacy:
        logger.warning("Dropping legacy payload (legacy payloads disabled): %s", content[:100])
        return None
    if data is None:
        return None
    return classify_payload(data)


def event_from_frame(frame: WireFrame) -> Optional[StreamEvent]:
    """Map a validated wire frame onto its typed event, stamped with the frame's sequence."""
    body = frame.event
    seq = frame.sequence
    try:
        if isinstance(body, ControlBody):
            return _control_event(body, seq)
        if isinstance(body, ProgressBody):
            progress = ToolProgress.model_validate(
                body.model_dump(exclude={"kind"}, exclude_none=True)
            )
            return ToolProgressEvent(progress=progress, sequence=seq)
        if isinstance(body, MessageBody):
            message = ChatMessage.model_validate(
                body.model_dump(exclude={"kind"}, exclude_none=True)
            )
            return MessageEvent(message=message, sequence=seq)
        if isinstance(body, PatchBody):
            entries: list[Any]
            if body.patches is not None:
                entries = body.patches
            elif body.patch is not None:
                entries = [body.patch]
            else:
                entries = []
            event = classify_patch_entries(entries, sequence=seq, atomic=body.atomic)
            if event is None:
                logger.warning("Patch frame %s carried no usable patch", seq)
            return event
        if isinstance(body, ErrorBody):
            return ErrorEvent(
                code=body.code,
                message=body.message,
                recoverable=body.recoverable,
                sequence=seq,
            )
        return DoneEvent(reason="complete", sequence=seq)
    except ValidationError as e:
        logger.warning("Dropping frame %s with invalid event body: %s", seq, e.errors(include_url=False))
        return None


def _control_event(body: ControlBody, seq: int) -> StreamEvent:
    event_type = CONTROL_ACTIONS[body.action]
    if event_type == "streaming-started":
        return control_event_from_fields(event_type, {"data": body.data}, sequence=seq)
    return control_event_from_fields(event_type, body.data or {}, sequence=seq)


def _parse_text(content: str) -> Optional[StreamEvent]:
    try:
        text = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse text part: %s (line: %s)", e, content[:100])
        return None
    if not isinstance(text, str):
        logger.warning("Text part is not a JSON string: %s", content[:100])
        return None
    return TextDeltaEvent(text=text)
