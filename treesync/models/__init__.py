"""Pydantic models and conversation state for treesync."""
from __future__ import annotations

from treesync.models.base import CamelModel, to_camel
from treesync.models.conversation import (
    ChatMessage,
    ConversationTurn,
    ToolProgress,
)

__all__ = [
    "CamelModel",
    "ChatMessage",
    "ConversationTurn",
    "ToolProgress",
    "to_camel",
]
