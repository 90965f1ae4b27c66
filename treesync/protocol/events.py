"""Typed stream events: the single source of truth for what a line decodes to.

Every line the parser accepts becomes exactly one ``StreamEvent`` subclass
instance.  Events are produced once, handed to the dispatcher and never
retained by the engine.

Wire format rules:
  - Keys are camelCase on the wire (via ``CamelModel``), snake_case in Python
  - Every event has ``type`` and an optional ``sequence`` (set when the
    event came from a sequenced wire frame)
  - Events use ``extra="forbid"``; inbound shape tolerance lives in the
    classifier, not here
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from treesync.contracts.json_types import PatchDict, PatchOp
from treesync.models.base import CamelModel
from treesync.models.conversation import ChatMessage, ToolProgress


class Patch(BaseModel):
    """A JSON-Pointer-style structural edit ``{op, path, value}``.

    ``path`` must be a non-empty pointer starting with ``/``; anything else
    fails validation and is treated as unusable by callers.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    op: PatchOp
    path: str = Field(min_length=1, pattern=r"^/")
    value: Any = None

    @classmethod
    def coerce(cls, raw: Patch | Mapping[str, Any] | Sequence[Any]) -> Patch:
        """Build a ``Patch`` from a model, a mapping or an ``[op, path, value]`` tuple.

        Raises ``pydantic.ValidationError`` or ``ValueError`` for unusable input.
        """
        if isinstance(raw, Patch):
            return raw
        if isinstance(raw, Mapping):
            return cls.model_validate(raw)
        if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
            if len(raw) not in (2, 3):
                raise ValueError(f"Patch tuple must have 2 or 3 items, got {len(raw)}")
            op, path, *rest = raw
            return cls.model_validate({"op": op, "path": path, "value": rest[0] if rest else None})
        raise ValueError(f"Cannot build a patch from {type(raw).__name__}")

    @property
    def segments(self) -> list[str]:
        """Decoded pointer segments (``~1`` → ``/``, ``~0`` → ``~``)."""
        return [s.replace("~1", "/").replace("~0", "~") for s in self.path.split("/")[1:]]

    def to_dict(self) -> PatchDict:
        data: PatchDict = {"op": self.op, "path": self.path}
        if self.op != "remove" or self.value is not None:
            data["value"] = self.value
        return data


class StreamEvent(CamelModel):
    """Base class for every decoded stream event."""

    model_config = ConfigDict(extra="forbid")

    type: str
    sequence: Optional[int] = None


# ═══════════════════════════════════════════════════════════════════════
# Content events
# ═══════════════════════════════════════════════════════════════════════


class TextDeltaEvent(StreamEvent):
    """Incremental assistant text (tag ``0``)."""

    type: Literal["text-delta"] = "text-delta"
    text: str = ""


class MessageEvent(StreamEvent):
    type: Literal["message"] = "message"
    message: ChatMessage


class QuestionEvent(StreamEvent):
    """A clarifying question; the payload is opaque apart from its ``id``."""

    type: Literal["question"] = "question"
    question: dict[str, Any]


class SuggestionEvent(StreamEvent):
    type: Literal["suggestion"] = "suggestion"
    suggestions: list[Any]


class ToolProgressEvent(StreamEvent):
    type: Literal["tool-progress"] = "tool-progress"
    progress: ToolProgress


class PatchEvent(StreamEvent):
    """One or more tree patches from a single frame.

    ``patch`` is the first usable patch; ``patches`` holds every usable
    patch in arrival order (``patches[0] is patch``).  ``atomic`` asks the
    buffer to apply the group as its own ordered batch.
    """

    type: Literal["patch"] = "patch"
    patch: Patch
    patches: list[Patch] = Field(default_factory=list)
    atomic: bool = False


# ═══════════════════════════════════════════════════════════════════════
# Control events (lifecycle, plan orchestration, attachments, citations)
# ═══════════════════════════════════════════════════════════════════════


class StreamingStartedEvent(StreamEvent):
    type: Literal["streaming-started"] = "streaming-started"
    data: Optional[dict[str, Any]] = None


class PersistedAttachmentsEvent(StreamEvent):
    type: Literal["persisted-attachments"] = "persisted-attachments"
    attachments: list[Any] = Field(default_factory=list)


class PlanCreatedEvent(StreamEvent):
    """Execution plan: ``{"goal": str, "steps": [{"id", "task", "agent", ...}]}``."""

    type: Literal["plan-created"] = "plan-created"
    plan: dict[str, Any] = Field(default_factory=dict)


class StepStartedEvent(StreamEvent):
    type: Literal["step-started"] = "step-started"
    step_id: int


class StepDoneEvent(StreamEvent):
    type: Literal["step-done"] = "step-done"
    step_id: int
    result: Any = None


class SubtaskStartedEvent(StreamEvent):
    type: Literal["subtask-started"] = "subtask-started"
    parent_id: int
    step_id: int


class SubtaskDoneEvent(StreamEvent):
    type: Literal["subtask-done"] = "subtask-done"
    parent_id: int
    step_id: int
    result: Any = None


class LevelStartedEvent(StreamEvent):
    type: Literal["level-started"] = "level-started"
    level: int


class LevelCompletedEvent(StreamEvent):
    type: Literal["level-completed"] = "level-completed"
    level: int


class OrchestrationDoneEvent(StreamEvent):
    type: Literal["orchestration-done"] = "orchestration-done"
    final_result: Any = None


class DocumentIndexUIEvent(StreamEvent):
    """Document index component; ``ui_component["props"]`` carries the index."""

    type: Literal["document-index-ui"] = "document-index-ui"
    ui_component: Any = None


class CitationsEvent(StreamEvent):
    type: Literal["citations"] = "citations"
    citations: list[Any] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════
# Terminal and fallback events
# ═══════════════════════════════════════════════════════════════════════


class ErrorEvent(StreamEvent):
    """Server-reported error.  Recoverability is the integrator's decision."""

    type: Literal["error"] = "error"
    code: str = "unknown"
    message: str
    recoverable: bool = False


class DoneEvent(StreamEvent):
    """Graceful end of stream: a ``done`` frame or the ``[DONE]`` marker."""

    type: Literal["done"] = "done"
    reason: Literal["complete", "end-marker"] = "complete"


class UnknownEvent(StreamEvent):
    """A payload no classifier rule matched; kept for diagnostics."""

    type: Literal["unknown"] = "unknown"
    payload: Any = None


ControlEvent = Union[
    StreamingStartedEvent,
    PersistedAttachmentsEvent,
    PlanCreatedEvent,
    StepStartedEvent,
    StepDoneEvent,
    SubtaskStartedEvent,
    SubtaskDoneEvent,
    LevelStartedEvent,
    LevelCompletedEvent,
    OrchestrationDoneEvent,
    DocumentIndexUIEvent,
    CitationsEvent,
]

ParsedOperation = Union[
    MessageEvent,
    QuestionEvent,
    SuggestionEvent,
    PatchEvent,
    TextDeltaEvent,
    ToolProgressEvent,
    ControlEvent,
    UnknownEvent,
]
