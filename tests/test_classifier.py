"""Tests for payload classification (legacy shapes and patch-frame entries)."""

from __future__ import annotations

from typing import Any

import pytest

from treesync.core.classifier import (
    classify_patch_entries,
    classify_payload,
    is_tree_patch,
    normalize_patch,
)
from treesync.protocol.events import (
    CitationsEvent,
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    PatchEvent,
    PlanCreatedEvent,
    QuestionEvent,
    StreamingStartedEvent,
    SuggestionEvent,
    TextDeltaEvent,
    ToolProgressEvent,
    UnknownEvent,
)


# ═══════════════════════════════════════════════════════════════════════
# Patch shape detection
# ═══════════════════════════════════════════════════════════════════════


class TestPatchShapes:
    @pytest.mark.parametrize("payload", [
        {"op": "add", "path": "/elements/a", "value": {}},
        {"op": "remove", "path": "/root"},
        ["set", "/root", "a"],
        ("remove", "/elements/a"),
    ])
    def test_tree_patches(self, payload: Any) -> None:
        assert is_tree_patch(payload)

    @pytest.mark.parametrize("payload", [
        {"op": "message", "path": "/x"},
        {"op": "add", "path": "elements/a"},
        {"op": "add"},
        ["add"],
        "add /root",
        42,
    ])
    def test_not_tree_patches(self, payload: Any) -> None:
        assert not is_tree_patch(payload)
        assert normalize_patch(payload) is None

    def test_normalize_tuple(self) -> None:
        patch = normalize_patch(["replace", "/elements/a/props/x", 1])
        assert patch is not None
        assert (patch.op, patch.path, patch.value) == ("replace", "/elements/a/props/x", 1)


# ═══════════════════════════════════════════════════════════════════════
# Type-keyed payloads
# ═══════════════════════════════════════════════════════════════════════


class TestTypedPayloads:
    @pytest.mark.parametrize("key", ["textDelta", "delta", "text"])
    def test_text_delta_variants(self, key: str) -> None:
        event = classify_payload({"type": "text-delta", key: "hi"})
        assert isinstance(event, TextDeltaEvent)
        assert event.text == "hi"

    def test_plan_created(self) -> None:
        event = classify_payload({"type": "plan-created", "plan": {"goal": "g", "steps": []}})
        assert isinstance(event, PlanCreatedEvent)
        assert event.plan["goal"] == "g"

    def test_streaming_started(self) -> None:
        event = classify_payload({"type": "streaming-started", "data": {"a": 1}})
        assert isinstance(event, StreamingStartedEvent)
        assert event.data == {"a": 1}

    def test_invalid_control_fields_become_unknown(self) -> None:
        event = classify_payload({"type": "step-started", "stepId": "not-a-number"})
        assert isinstance(event, UnknownEvent)

    def test_citations_must_be_a_list(self) -> None:
        assert isinstance(classify_payload({"type": "citations", "citations": [{"n": 1}]}), CitationsEvent)
        assert isinstance(classify_payload({"type": "citations", "citations": "x"}), UnknownEvent)

    def test_error(self) -> None:
        event = classify_payload({"type": "error", "error": "boom"})
        assert isinstance(event, ErrorEvent)
        assert event.message == "boom"
        assert event.code == "unknown"
        assert event.recoverable is False

    def test_done(self) -> None:
        assert isinstance(classify_payload({"type": "done"}), DoneEvent)

    def test_tool_progress(self) -> None:
        event = classify_payload({"type": "tool-progress", "toolName": "t", "toolCallId": "c", "status": "complete"})
        assert isinstance(event, ToolProgressEvent)
        assert event.progress.status == "complete"

    def test_unregistered_type_falls_through_to_op(self) -> None:
        event = classify_payload({"type": "custom", "op": "set", "path": "/root", "value": "a"})
        assert isinstance(event, PatchEvent)


# ═══════════════════════════════════════════════════════════════════════
# Op-keyed payloads
# ═══════════════════════════════════════════════════════════════════════


class TestOpPayloads:
    def test_message_from_content(self) -> None:
        event = classify_payload({"op": "message", "content": "hello", "id": "m1", "mode": "replace"})
        assert isinstance(event, MessageEvent)
        assert event.message.role == "assistant"
        assert event.message.id == "m1"
        assert event.message.mode == "replace"

    def test_message_from_string_value(self) -> None:
        event = classify_payload({"op": "message", "value": "hello", "role": "system"})
        assert isinstance(event, MessageEvent)
        assert event.message.content == "hello"
        assert event.message.role == "system"

    def test_message_without_content(self) -> None:
        assert isinstance(classify_payload({"op": "message"}), UnknownEvent)

    def test_question_from_value(self) -> None:
        event = classify_payload({"op": "question", "value": {"id": "q1", "text": "Which?"}})
        assert isinstance(event, QuestionEvent)
        assert event.question == {"id": "q1", "text": "Which?"}

    def test_flat_question(self) -> None:
        event = classify_payload({"op": "question", "id": "q2", "text": "Why?"})
        assert isinstance(event, QuestionEvent)
        assert event.question == {"id": "q2", "text": "Why?"}

    def test_question_needs_id(self) -> None:
        assert isinstance(classify_payload({"op": "question", "value": {"text": "?"}}), UnknownEvent)

    def test_suggestions(self) -> None:
        event = classify_payload({"op": "suggestion", "value": ["a", "b"]})
        assert isinstance(event, SuggestionEvent)
        assert event.suggestions == ["a", "b"]
        assert isinstance(classify_payload({"op": "suggestion", "value": "a"}), UnknownEvent)

    def test_tool_progress_op(self) -> None:
        event = classify_payload({"op": "tool-progress", "toolName": "fetch", "status": "running"})
        assert isinstance(event, ToolProgressEvent)
        assert event.progress.tool_name == "fetch"

    def test_unknown_op(self) -> None:
        assert isinstance(classify_payload({"op": "teleport", "path": "/root"}), UnknownEvent)

    @pytest.mark.parametrize("payload", [{"hello": 1}, 42, "text", ["not", "a", "patch", "tuple"]])
    def test_unclassifiable(self, payload: Any) -> None:
        assert isinstance(classify_payload(payload), UnknownEvent)

    def test_sequence_is_stamped(self) -> None:
        assert classify_payload(["set", "/root", "a"], sequence=12).sequence == 12


# ═══════════════════════════════════════════════════════════════════════
# Patch-frame entries
# ═══════════════════════════════════════════════════════════════════════


class TestPatchEntries:
    def test_empty(self) -> None:
        assert classify_patch_entries([]) is None

    def test_first_domain_entry_wins(self) -> None:
        event = classify_patch_entries(
            [{"op": "suggestion", "value": ["x"]}, ["set", "/root", "a"]],
            sequence=3,
        )
        assert isinstance(event, SuggestionEvent)
        assert event.sequence == 3

    def test_collects_usable_patches_in_order(self) -> None:
        event = classify_patch_entries(
            [["set", "/root", "a"], {"op": "bad"}, {"op": "add", "path": "/elements/a", "value": {}}],
            sequence=1,
            atomic=True,
        )
        assert isinstance(event, PatchEvent)
        assert [p.path for p in event.patches] == ["/root", "/elements/a"]
        assert event.atomic is True
        assert event.sequence == 1

    def test_nothing_usable(self) -> None:
        assert classify_patch_entries([{"op": "bad"}, "junk"]) is None
