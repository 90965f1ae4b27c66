"""Event registry: canonical mapping of event type strings to model classes.

Invariants:
  - Every event the parser can produce has an entry.
  - Every control ``action`` maps to exactly one registered type.
  - The registry is frozen at import time. No runtime mutation.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Type

from treesync.protocol.events import (
    CitationsEvent,
    DocumentIndexUIEvent,
    DoneEvent,
    ErrorEvent,
    LevelCompletedEvent,
    LevelStartedEvent,
    MessageEvent,
    OrchestrationDoneEvent,
    PatchEvent,
    PersistedAttachmentsEvent,
    PlanCreatedEvent,
    QuestionEvent,
    StepDoneEvent,
    StepStartedEvent,
    StreamEvent,
    StreamingStartedEvent,
    SubtaskDoneEvent,
    SubtaskStartedEvent,
    SuggestionEvent,
    TextDeltaEvent,
    ToolProgressEvent,
    UnknownEvent,
)

EVENT_REGISTRY: dict[str, Type[StreamEvent]] = {
    "text-delta": TextDeltaEvent,
    "message": MessageEvent,
    "question": QuestionEvent,
    "suggestion": SuggestionEvent,
    "tool-progress": ToolProgressEvent,
    "patch": PatchEvent,
    "streaming-started": StreamingStartedEvent,
    "persisted-attachments": PersistedAttachmentsEvent,
    "plan-created": PlanCreatedEvent,
    "step-started": StepStartedEvent,
    "step-done": StepDoneEvent,
    "subtask-started": SubtaskStartedEvent,
    "subtask-done": SubtaskDoneEvent,
    "level-started": LevelStartedEvent,
    "level-completed": LevelCompletedEvent,
    "orchestration-done": OrchestrationDoneEvent,
    "document-index-ui": DocumentIndexUIEvent,
    "citations": CitationsEvent,
    "error": ErrorEvent,
    "done": DoneEvent,
    "unknown": UnknownEvent,
}

ALL_EVENT_TYPES: frozenset[str] = frozenset(EVENT_REGISTRY.keys())

# control.action → event type.  Only ``start`` is renamed.
CONTROL_ACTIONS: dict[str, str] = {
    "start": "streaming-started",
    "persisted-attachments": "persisted-attachments",
    "plan-created": "plan-created",
    "step-started": "step-started",
    "step-done": "step-done",
    "subtask-started": "subtask-started",
    "subtask-done": "subtask-done",
    "level-started": "level-started",
    "level-completed": "level-completed",
    "orchestration-done": "orchestration-done",
    "document-index-ui": "document-index-ui",
    "citations": "citations",
}

CONTROL_EVENT_TYPES: frozenset[str] = frozenset(CONTROL_ACTIONS.values())


def get_event_class(event_type: str) -> Type[StreamEvent]:
    """Look up the model class for an event type. Raises KeyError for unknown types."""
    return EVENT_REGISTRY[event_type]


def is_known_event(event_type: str) -> bool:
    """Return ``True`` when ``event_type`` is a registered event type string."""
    return event_type in EVENT_REGISTRY


def control_event_from_fields(
    event_type: str,
    fields: Mapping[str, Any],
    sequence: int | None = None,
) -> StreamEvent:
    """Validate a control event from its loose payload fields.

    ``fields`` uses wire (camelCase) or Python names; ``type`` and any keys
    the model does not declare are dropped before validation.
    Raises ``KeyError`` for non-control types and ``pydantic.ValidationError``
    for bad field values.
    """
    if event_type not in CONTROL_EVENT_TYPES:
        raise KeyError(event_type)
    cls = EVENT_REGISTRY[event_type]
    declared = {name for name in cls.model_fields} | {
        f.alias for f in cls.model_fields.values() if f.alias
    }
    data = {k: v for k, v in fields.items() if k in declared and k not in ("type", "sequence")}
    return cls.model_validate({**data, "type": event_type, "sequence": sequence})
