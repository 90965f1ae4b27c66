"""Protocol layer tests.

Verifies event models, registry, wire frames (decode/encode/build) and
the stream guard.
"""

from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError

from treesync.core.stream_parser import parse_line
from treesync.protocol.events import (
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    Patch,
    PatchEvent,
    StepDoneEvent,
    StepStartedEvent,
    StreamEvent,
    StreamingStartedEvent,
    TextDeltaEvent,
    UnknownEvent,
)
from treesync.protocol.frames import (
    FrameDecodeError,
    build_frame,
    decode_frame,
    encode_frame,
    encode_text,
    split_line,
)
from treesync.protocol.registry import (
    ALL_EVENT_TYPES,
    CONTROL_ACTIONS,
    EVENT_REGISTRY,
    control_event_from_fields,
    get_event_class,
    is_known_event,
)
from treesync.protocol.validation import StreamGuard
from treesync.protocol.wire import DoneBody, PatchBody
from treesync.models.base import to_camel
from treesync.models.conversation import ChatMessage, ToolProgress


# ═══════════════════════════════════════════════════════════════════════
# Event models
# ═══════════════════════════════════════════════════════════════════════


class TestEventModels:
    def test_extra_fields_forbidden(self) -> None:
        """Events reject unknown fields; shape tolerance lives in the classifier."""
        with pytest.raises(ValidationError):
            TextDeltaEvent(text="x", bogus=1)

    def test_camel_case_dump(self) -> None:
        event = StepDoneEvent(step_id=1, result="ok", sequence=4)
        dumped = event.model_dump(by_alias=True)
        assert dumped["stepId"] == 1
        assert dumped["type"] == "step-done"

    def test_populate_by_alias(self) -> None:
        assert StepStartedEvent.model_validate({"stepId": 3}).step_id == 3

    def test_to_wire_is_camel_case_without_nones(self) -> None:
        progress = ToolProgress(tool_name="search", tool_call_id="c1")
        assert progress.to_wire() == {"toolName": "search", "toolCallId": "c1", "status": "progress"}
        assert to_camel("correlation_id") == "correlationId"

    def test_patch_requires_rooted_path(self) -> None:
        with pytest.raises(ValidationError):
            Patch(op="add", path="elements/a")
        with pytest.raises(ValidationError):
            Patch(op="explode", path="/root")

    def test_patch_segments_decode_escapes(self) -> None:
        assert Patch(op="set", path="/elements/a~1b/props/c~0d").segments == ["elements", "a/b", "props", "c~d"]

    def test_patch_to_dict(self) -> None:
        assert Patch(op="remove", path="/root").to_dict() == {"op": "remove", "path": "/root"}
        assert Patch(op="set", path="/root", value="a").to_dict() == {"op": "set", "path": "/root", "value": "a"}

    def test_patch_coerce_rejects_bad_tuples(self) -> None:
        with pytest.raises(ValueError):
            Patch.coerce(["add"])
        with pytest.raises(ValueError):
            Patch.coerce(42)  # type: ignore[arg-type]


# ═══════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════


class TestRegistry:
    def test_every_class_type_matches_its_key(self) -> None:
        for key, cls in EVENT_REGISTRY.items():
            assert cls.model_fields["type"].default == key

    def test_control_actions_map_to_registered_types(self) -> None:
        assert set(CONTROL_ACTIONS.values()) <= ALL_EVENT_TYPES
        assert CONTROL_ACTIONS["start"] == "streaming-started"

    def test_lookup(self) -> None:
        assert get_event_class("done") is DoneEvent
        assert is_known_event("patch")
        assert not is_known_event("nope")
        with pytest.raises(KeyError):
            get_event_class("nope")

    def test_control_event_from_fields_drops_undeclared_keys(self) -> None:
        event = control_event_from_fields("step-done", {"stepId": 1, "result": "r", "extra": True}, sequence=2)
        assert isinstance(event, StepDoneEvent)
        assert event.result == "r"
        assert event.sequence == 2

    def test_control_event_from_fields_rejects_non_control(self) -> None:
        with pytest.raises(KeyError):
            control_event_from_fields("message", {})


# ═══════════════════════════════════════════════════════════════════════
# Frames
# ═══════════════════════════════════════════════════════════════════════


class TestFrames:
    def test_split_line(self) -> None:
        assert split_line('d:{"a":1}') == ("d", '{"a":1}')
        assert split_line("data: {}") == ("data", "{}")
        assert split_line('0:"a:b"') == ("0", '"a:b"')
        assert split_line("nothing") is None

    def test_decode_invalid_json(self) -> None:
        with pytest.raises(FrameDecodeError) as exc_info:
            decode_frame("{oops")
        assert exc_info.value.issues == []

    def test_decode_schema_violation_reports_issues(self) -> None:
        with pytest.raises(FrameDecodeError) as exc_info:
            decode_frame({"sequence": "x", "event": {"kind": "done"}})
        assert exc_info.value.issues

    def test_decode_discriminates_on_kind(self) -> None:
        frame = decode_frame('{"sequence": 0, "correlationId": "c1", "event": {"kind": "done"}, "future": 1}')
        assert isinstance(frame.event, DoneBody)
        assert frame.correlation_id == "c1"

    def test_encode_text(self) -> None:
        assert encode_text('say "hi"') == '0:"say \\"hi\\""\n'
        assert parse_line(encode_text("héllo").rstrip("\n")).text == "héllo"

    def test_encode_frame_shape(self) -> None:
        line = encode_frame(build_frame(DoneEvent(), 3, correlation_id="abc"))
        assert line.startswith("d:")
        assert line.endswith("\n")
        assert json.loads(line[2:]) == {"sequence": 3, "correlationId": "abc", "event": {"kind": "done"}}

    def test_message_survives_the_wire(self) -> None:
        event = MessageEvent(message=ChatMessage(content="hi", id="m1", mode="append"))
        parsed = parse_line(encode_frame(build_frame(event, 8)).rstrip("\n"))
        assert isinstance(parsed, MessageEvent)
        assert parsed.message == event.message
        assert parsed.sequence == 8

    def test_patch_event_frame(self) -> None:
        patches = [Patch(op="set", path="/root", value="a"), Patch(op="remove", path="/elements/b")]
        frame = build_frame(PatchEvent(patch=patches[0], patches=patches, atomic=True), 1)
        assert isinstance(frame.event, PatchBody)
        assert frame.event.patches == [p.to_dict() for p in patches]
        assert frame.event.atomic is True

    def test_control_event_frame(self) -> None:
        frame = build_frame(StepDoneEvent(step_id=2, result="r"), 5)
        data = frame.model_dump(by_alias=True)["event"]
        assert data["action"] == "step-done"
        assert data["data"] == {"stepId": 2, "result": "r"}

    def test_streaming_started_uses_start_action(self) -> None:
        frame = build_frame(StreamingStartedEvent(data={"x": 1}), 0)
        assert frame.event.action == "start"

    def test_error_frame(self) -> None:
        frame = build_frame(ErrorEvent(message="m", code="c", recoverable=True), 2)
        assert frame.event.kind == "error"
        assert frame.event.recoverable is True

    @pytest.mark.parametrize("event", [TextDeltaEvent(text="x"), UnknownEvent(payload=1)])
    def test_unframeable_events(self, event: StreamEvent) -> None:
        with pytest.raises(ValueError):
            build_frame(event, 0)


# ═══════════════════════════════════════════════════════════════════════
# Stream guard
# ═══════════════════════════════════════════════════════════════════════


class TestStreamGuard:
    def test_clean_stream(self) -> None:
        guard = StreamGuard()
        for seq in range(3):
            assert guard.check_event(TextDeltaEvent(text="x", sequence=seq)) == []
            assert guard.accept(TextDeltaEvent(text="x", sequence=seq))
        assert guard.last_sequence == 2
        assert guard.event_count == 3

    def test_replayed_sequence_is_dropped(self) -> None:
        guard = StreamGuard()
        assert guard.accept(DoneEvent(sequence=1)) is True
        guard = StreamGuard()
        guard.accept(TextDeltaEvent(sequence=1))
        guard.accept(TextDeltaEvent(sequence=2))
        assert guard.accept(TextDeltaEvent(sequence=2)) is False
        assert guard.accept(TextDeltaEvent(sequence=1)) is False
        assert guard.duplicates == 2
        assert guard.last_sequence == 2

    def test_unsequenced_events_always_accepted(self) -> None:
        guard = StreamGuard()
        guard.accept(TextDeltaEvent(sequence=5))
        assert guard.accept(TextDeltaEvent(text="a"))
        assert guard.accept(TextDeltaEvent(text="b"))

    def test_event_after_done_is_reported(self, caplog: pytest.LogCaptureFixture) -> None:
        guard = StreamGuard()
        guard.accept(DoneEvent())
        assert guard.terminated
        with caplog.at_level(logging.WARNING):
            violations = guard.check_event(TextDeltaEvent(text="late"))
        assert any("after 'done'" in v for v in violations)
        assert "Stream violation" in caplog.text

    def test_unregistered_type(self) -> None:
        assert any("Unregistered" in v for v in StreamGuard().check_event(StreamEvent(type="mystery")))
