"""Conversation-side models carried alongside the UI tree.

``ChatMessage`` and ``ToolProgress`` travel inside stream events, so they
are Pydantic models with camelCase aliases.  ``ConversationTurn`` is
engine-side state (one user prompt and everything streamed back for it)
and is a plain dataclass, like the other in-memory state records.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import ConfigDict

from treesync.contracts.json_types import UITreeDict
from treesync.models.base import CamelModel

MessageRole = Literal["assistant", "user", "system"]
MessageMode = Literal["final", "append", "replace"]
ToolProgressStatus = Literal["pending", "starting", "progress", "running", "complete", "error"]
TurnStatus = Literal["pending", "streaming", "complete", "failed", "partial"]


class ChatMessage(CamelModel):
    """One assistant/user/system message.

    ``id`` and ``mode`` are only used for incremental messages: a message
    with ``mode="append"`` is concatenated onto the earlier message with the
    same ``id``; ``mode="replace"`` overwrites it.
    """

    model_config = ConfigDict(extra="allow")

    role: MessageRole = "assistant"
    content: str
    id: Optional[str] = None
    mode: Optional[MessageMode] = None


class ToolProgress(CamelModel):
    """Progress report for a server-side tool invocation."""

    model_config = ConfigDict(extra="allow")

    tool_name: str = ""
    tool_call_id: str = ""
    status: ToolProgressStatus = "progress"
    message: Optional[str] = None
    data: Any = None
    progress: Optional[float] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ConversationTurn:
    """A single turn of the conversation: the prompt and its streamed results."""

    id: str
    user_message: str
    assistant_messages: list[ChatMessage] = field(default_factory=list)
    tree_snapshot: Optional[UITreeDict] = None
    timestamp: int = field(default_factory=_now_ms)
    questions: list[dict[str, Any]] = field(default_factory=list)
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    tool_progress: list[ToolProgress] = field(default_factory=list)
    attachments: list[dict[str, Any]] = field(default_factory=list)
    persisted_attachments: list[dict[str, Any]] = field(default_factory=list)
    document_index: Optional[dict[str, Any]] = None
    is_proactive: bool = False
    is_loading: bool = False
    status: TurnStatus = "pending"
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userMessage": self.user_message,
            "assistantMessages": [m.to_wire() for m in self.assistant_messages],
            "treeSnapshot": self.tree_snapshot,
            "timestamp": self.timestamp,
            "questions": self.questions,
            "suggestions": self.suggestions,
            "toolProgress": [p.to_wire() for p in self.tool_progress],
            "attachments": self.attachments,
            "persistedAttachments": self.persisted_attachments,
            "documentIndex": self.document_index,
            "isProactive": self.is_proactive,
            "isLoading": self.is_loading,
            "status": self.status,
            "error": self.error,
        }
