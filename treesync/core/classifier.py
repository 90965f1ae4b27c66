"""Payload classification: the one place inbound payload variants are matched.

A decoded payload can arrive in several historical shapes:

  ``[op, path, value]``               tuple patch
  ``{"op", "path", "value"}``         flat tree patch
  ``{"op": "message", ...}``          domain operation (message/question/suggestion)
  ``{"type": "plan-created", ...}``   type-keyed legacy event

``classify_payload`` maps all of them onto the typed ``ParsedOperation``
union.  Anything it cannot place becomes an ``UnknownEvent``; nothing here
raises.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Optional

from pydantic import ValidationError

from treesync.contracts.json_types import TREE_PATCH_OPS
from treesync.models.conversation import ChatMessage, ToolProgress
from treesync.protocol.events import (
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    ParsedOperation,
    Patch,
    PatchEvent,
    QuestionEvent,
    StreamEvent,
    SuggestionEvent,
    TextDeltaEvent,
    ToolProgressEvent,
    UnknownEvent,
)
from treesync.protocol.registry import CONTROL_EVENT_TYPES, control_event_from_fields

logger = logging.getLogger(__name__)

DOMAIN_OPS: frozenset[str] = frozenset({"message", "question", "suggestion", "tool-progress"})

_TOOL_PROGRESS_FIELDS = ("toolName", "toolCallId", "status", "message", "data", "progress")


def is_tree_patch(payload: Any) -> bool:
    """``True`` for a tuple or mapping with a tree op and a ``/``-rooted path."""
    if isinstance(payload, Mapping):
        op, path = payload.get("op"), payload.get("path")
    elif isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)) and len(payload) in (2, 3):
        op, path = payload[0], payload[1]
    else:
        return False
    return op in TREE_PATCH_OPS and isinstance(path, str) and path.startswith("/")


def normalize_patch(payload: Any) -> Optional[Patch]:
    """Coerce a patch-shaped payload into a ``Patch``; ``None`` when unusable."""
    if not is_tree_patch(payload):
        return None
    try:
        return Patch.coerce(payload)
    except (ValidationError, ValueError) as exc:
        logger.warning(f"⚠️ Dropping malformed patch {payload!r}: {exc}")
        return None


def classify_payload(payload: Any, sequence: Optional[int] = None) -> ParsedOperation:
    """Classify one decoded payload.  ``sequence`` is stamped on the result."""
    event = _classify(payload)
    event.sequence = sequence
    return event


def classify_patch_entries(
    entries: Sequence[Any],
    *,
    sequence: Optional[int] = None,
    atomic: bool = False,
) -> Optional[ParsedOperation]:
    """Classify the entries of a ``patch`` frame.

    The first entry decides the event kind: a domain operation is returned
    as-is.  Otherwise every usable tree patch is collected, in order, into
    one ``PatchEvent``.  Returns ``None`` when no entry is usable.
    """
    if not entries:
        return None
    first = _classify(entries[0])
    if isinstance(first, (MessageEvent, QuestionEvent, SuggestionEvent, ToolProgressEvent)):
        first.sequence = sequence
        return first

    usable: list[Patch] = []
    for entry in entries:
        patch = normalize_patch(entry)
        if patch is None:
            logger.warning(f"⚠️ Skipping unusable patch entry: {str(entry)[:100]}")
            continue
        usable.append(patch)
    if not usable:
        return None
    return PatchEvent(patch=usable[0], patches=usable, atomic=atomic, sequence=sequence)


def _classify(payload: Any) -> StreamEvent:
    if isinstance(payload, Mapping):
        event_type = payload.get("type")
        if isinstance(event_type, str) and event_type not in ("data",):
            typed = _classify_typed(event_type, payload)
            if typed is not None:
                return typed
        op = payload.get("op")
        if isinstance(op, str):
            return _classify_op(op, payload)
        return UnknownEvent(payload=dict(payload))

    if isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)):
        patch = normalize_patch(payload)
        if patch is not None:
            return PatchEvent(patch=patch, patches=[patch])
        return UnknownEvent(payload=list(payload))

    return UnknownEvent(payload=payload)


def _classify_typed(event_type: str, payload: Mapping[str, Any]) -> Optional[StreamEvent]:
    """Type-keyed legacy payloads.  ``None`` means "not a type-keyed event"."""
    try:
        if event_type == "text-delta":
            text = payload.get("textDelta") or payload.get("delta") or payload.get("text") or ""
            return TextDeltaEvent(text=str(text))
        if event_type == "tool-progress":
            return ToolProgressEvent(progress=_tool_progress(payload))
        if event_type == "error":
            return ErrorEvent(
                code=str(payload.get("code") or "unknown"),
                message=str(payload.get("message") or payload.get("error") or ""),
                recoverable=bool(payload.get("recoverable", False)),
            )
        if event_type == "done":
            return DoneEvent()
        if event_type == "streaming-started":
            data = payload.get("data")
            return control_event_from_fields(event_type, {"data": data if isinstance(data, Mapping) else None})
        if event_type == "citations" and not isinstance(payload.get("citations"), list):
            return UnknownEvent(payload=dict(payload))
        if event_type in CONTROL_EVENT_TYPES:
            return control_event_from_fields(event_type, payload)
    except ValidationError as exc:
        logger.warning(
            f"⚠️ Invalid '{event_type}' payload: {exc.errors(include_url=False)}"
        )
        return UnknownEvent(payload=dict(payload))
    return None


def _classify_op(op: str, payload: Mapping[str, Any]) -> StreamEvent:
    value = payload.get("value")

    if op == "message":
        content = payload.get("content") or (value if isinstance(value, str) else None)
        if not content:
            return UnknownEvent(payload=dict(payload))
        role = payload.get("role") or "assistant"
        try:
            message = ChatMessage(
                role=role,
                content=content,
                id=payload.get("id"),
                mode=payload.get("mode"),
            )
        except ValidationError as exc:
            logger.warning(f"⚠️ Invalid message payload: {exc.errors(include_url=False)}")
            return UnknownEvent(payload=dict(payload))
        return MessageEvent(message=message)

    if op == "question":
        question = value or payload.get("question")
        if not isinstance(question, Mapping):
            question = {k: v for k, v in payload.items() if k != "op"}
        if not question.get("id"):
            return UnknownEvent(payload=dict(payload))
        return QuestionEvent(question=dict(question))

    if op == "suggestion":
        suggestions = value or payload.get("suggestions")
        if not isinstance(suggestions, list):
            return UnknownEvent(payload=dict(payload))
        return SuggestionEvent(suggestions=suggestions)

    if op == "tool-progress":
        try:
            return ToolProgressEvent(progress=_tool_progress(payload))
        except ValidationError as exc:
            logger.warning(f"⚠️ Invalid tool-progress payload: {exc.errors(include_url=False)}")
            return UnknownEvent(payload=dict(payload))

    patch = normalize_patch(payload)
    if patch is not None:
        return PatchEvent(patch=patch, patches=[patch])
    return UnknownEvent(payload=dict(payload))


def _tool_progress(payload: Mapping[str, Any]) -> ToolProgress:
    fields = {k: payload[k] for k in _TOOL_PROGRESS_FIELDS if payload.get(k) is not None}
    return ToolProgress.model_validate(fields)
