"""Conversation turn lifecycle.

Every function takes the current turn list and returns a new one; turns
are never edited in place, so a list held by history or a listener stays
valid.
"""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Sequence
from typing import Any, NamedTuple, Optional

from treesync.core.tree_store import UITree
from treesync.models.conversation import ChatMessage, ConversationTurn, ToolProgress


def create_turn_id() -> str:
    return f"turn-{uuid.uuid4()}"


def create_pending_turn(
    prompt: str,
    *,
    is_proactive: bool = False,
    attachments: Optional[Sequence[dict[str, Any]]] = None,
) -> ConversationTurn:
    """New turn in the ``streaming`` state, waiting for the response."""
    return ConversationTurn(
        id=create_turn_id(),
        user_message=prompt,
        is_proactive=is_proactive,
        attachments=list(attachments or []),
        is_loading=True,
        status="streaming",
    )


def update_turn(
    turns: Sequence[ConversationTurn],
    turn_id: str,
    *,
    messages: Optional[Sequence[ChatMessage]] = None,
    questions: Optional[Sequence[dict[str, Any]]] = None,
    suggestions: Optional[Sequence[Any]] = None,
    tool_progress: Optional[Sequence[ToolProgress]] = None,
    persisted_attachments: Optional[Sequence[dict[str, Any]]] = None,
    document_index: Optional[dict[str, Any]] = None,
) -> list[ConversationTurn]:
    """Merge streaming data into a turn.  ``None`` keeps the current value.

    An empty ``persisted_attachments`` list also keeps the current value.
    """
    def _update(turn: ConversationTurn) -> ConversationTurn:
        changes: dict[str, Any] = {}
        if messages is not None:
            changes["assistant_messages"] = list(messages)
        if questions is not None:
            changes["questions"] = list(questions)
        if suggestions is not None:
            changes["suggestions"] = list(suggestions)
        if tool_progress is not None:
            changes["tool_progress"] = list(tool_progress)
        if persisted_attachments:
            changes["persisted_attachments"] = list(persisted_attachments)
        if document_index is not None:
            changes["document_index"] = document_index
        return dataclasses.replace(turn, **changes)

    return [_update(t) if t.id == turn_id else t for t in turns]


def finalize_turn(
    turns: Sequence[ConversationTurn],
    turn_id: str,
    *,
    messages: Sequence[ChatMessage],
    questions: Sequence[dict[str, Any]] = (),
    suggestions: Sequence[Any] = (),
    tree_snapshot: Optional[UITree] = None,
    document_index: Optional[dict[str, Any]] = None,
) -> list[ConversationTurn]:
    """Mark a turn complete and store a deep copy of the resulting tree."""
    return [
        dataclasses.replace(
            t,
            assistant_messages=list(messages),
            questions=list(questions),
            suggestions=list(suggestions),
            tree_snapshot=tree_snapshot.to_dict() if tree_snapshot is not None else None,
            document_index=document_index if document_index is not None else t.document_index,
            is_loading=False,
            status="complete",
        )
        if t.id == turn_id
        else t
        for t in turns
    ]


def mark_turn_failed(
    turns: Sequence[ConversationTurn],
    turn_id: str,
    error: str,
) -> list[ConversationTurn]:
    return [
        dataclasses.replace(t, error=error, is_loading=False, status="failed") if t.id == turn_id else t
        for t in turns
    ]


def remove_turn(turns: Sequence[ConversationTurn], turn_id: str) -> list[ConversationTurn]:
    return [t for t in turns if t.id != turn_id]


class TurnRollback(NamedTuple):
    conversation: list[ConversationTurn]
    restored_tree: Optional[UITree]


def rollback_to_turn(turns: Sequence[ConversationTurn], turn_id: str) -> Optional[TurnRollback]:
    """Drop ``turn_id`` and everything after it.

    The tree to restore is the snapshot of the last remaining turn, or
    ``None`` when no earlier turn carries one.  Returns ``None`` for an
    unknown turn id.
    """
    index = next((i for i, t in enumerate(turns) if t.id == turn_id), -1)
    if index == -1:
        return None
    conversation = list(turns[:index])
    previous = conversation[-1] if conversation else None
    snapshot = previous.tree_snapshot if previous is not None else None
    restored = UITree.from_dict(snapshot) if snapshot is not None else None
    return TurnRollback(conversation=conversation, restored_tree=restored)
