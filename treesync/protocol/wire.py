"""Wire-frame schema: the shape of one decoded data-event line.

Every data line on the current protocol carries::

    {"sequence": 7, "correlationId": "...", "event": {"kind": "...", ...}}

``event`` is a discriminated union keyed by ``kind``.  Validation goes
through Pydantic; a frame that fails it is dropped by the parser with the
issue list logged.

Extra fields policy:
  - Frames and bodies ignore unknown keys so newer servers can add fields.
  - ``kind`` and ``action`` are closed sets; an unknown value is a
    schema violation.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field

from treesync.models.base import CamelModel

ControlAction = Literal[
    "start",
    "persisted-attachments",
    "plan-created",
    "step-started",
    "step-done",
    "subtask-started",
    "subtask-done",
    "level-started",
    "level-completed",
    "orchestration-done",
    "document-index-ui",
    "citations",
]


class ControlBody(CamelModel):
    """Lifecycle signal.  ``data`` holds the action's fields (``stepId``, ``plan``...)."""

    kind: Literal["control"]
    action: ControlAction
    data: Optional[dict[str, Any]] = None


class ProgressBody(CamelModel):
    kind: Literal["progress"]
    tool_name: str = ""
    tool_call_id: str = ""
    status: str = "progress"
    message: Optional[str] = None
    data: Any = None
    progress: Optional[float] = None


class MessageBody(CamelModel):
    kind: Literal["message"]
    content: str
    role: Literal["assistant", "user", "system"] = "assistant"
    id: Optional[str] = None
    mode: Optional[Literal["final", "append", "replace"]] = None


class PatchBody(CamelModel):
    """One patch or a patch array.  Entries are classified after validation."""

    kind: Literal["patch"]
    patch: Any = None
    patches: Optional[list[Any]] = None
    atomic: bool = False


class ErrorBody(CamelModel):
    kind: Literal["error"]
    message: str
    code: str = "unknown"
    recoverable: bool = False


class DoneBody(CamelModel):
    kind: Literal["done"]


WireEventBody = Annotated[
    Union[ControlBody, ProgressBody, MessageBody, PatchBody, ErrorBody, DoneBody],
    Field(discriminator="kind"),
]


class WireFrame(CamelModel):
    """One data-event frame: a sequence number and a typed event body."""

    sequence: int = Field(ge=0)
    correlation_id: Optional[str] = None
    event: WireEventBody
