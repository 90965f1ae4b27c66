"""Stream session: drives one server stream from raw chunks to tree + turn data.

    chunk ─► LineBuffer ─► parse_line ─► StreamGuard ─► dispatch
                                                        ├─ patch ─► PatchBuffer ─► TreeStore
                                                        └─ other ─► TurnAccumulator / PlanProgress

``process_chunk`` ends with a patch flush (the scheduling boundary), so the
tree is current whenever control returns to the caller.  ``finish`` drains
the carry-over line, tears the buffer down and reports how the stream
ended: ``completed``, ``failed`` or ``incomplete``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from treesync.config import Settings, settings as default_settings
from treesync.core.history import HistoryManager
from treesync.core.line_buffer import LineBuffer
from treesync.core.patch_buffer import PatchBuffer
from treesync.core.reconnection import ReconnectionManager
from treesync.core.stream_parser import parse_line
from treesync.core.tree_store import TreeStore, UITree
from treesync.models.conversation import ChatMessage, ToolProgress
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
from treesync.protocol.validation import StreamGuard

logger = logging.getLogger(__name__)

StreamStatus = Literal["completed", "failed", "incomplete"]
StepStatus = Literal["pending", "running", "complete"]
EventListener = Callable[[StreamEvent], None]


# ═══════════════════════════════════════════════════════════════════════
# Plan orchestration progress
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class PlanSubtask:
    id: int
    task: str = ""
    agent: str = ""
    status: StepStatus = "pending"
    result: Any = None


@dataclass
class PlanStep:
    id: int
    task: str = ""
    agent: str = ""
    dependencies: list[int] = field(default_factory=list)
    parallel: Optional[bool] = None
    subtasks: list[PlanSubtask] = field(default_factory=list)
    status: StepStatus = "pending"
    result: Any = None


@dataclass
class PlanProgress:
    """Multi-agent execution plan as reported by plan/step/level events."""

    goal: str
    steps: list[PlanStep] = field(default_factory=list)
    current_level: Optional[int] = None
    completed_levels: list[int] = field(default_factory=list)
    done: bool = False
    final_result: Any = None

    @classmethod
    def from_plan(cls, plan: dict[str, Any]) -> PlanProgress:
        steps = []
        for raw in plan.get("steps") or []:
            if not isinstance(raw, dict) or not isinstance(raw.get("id"), int):
                continue
            subtasks = [
                PlanSubtask(id=st["id"], task=st.get("task", ""), agent=st.get("agent", ""))
                for st in raw.get("subtasks") or []
                if isinstance(st, dict) and isinstance(st.get("id"), int)
            ]
            steps.append(
                PlanStep(
                    id=raw["id"],
                    task=raw.get("task", ""),
                    agent=raw.get("agent", ""),
                    dependencies=list(raw.get("dependencies") or []),
                    parallel=raw.get("parallel"),
                    subtasks=subtasks,
                )
            )
        return cls(goal=str(plan.get("goal", "")), steps=steps)

    def step(self, step_id: int) -> Optional[PlanStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def subtask(self, parent_id: int, step_id: int) -> Optional[PlanSubtask]:
        parent = self.step(parent_id)
        if parent is None:
            return None
        found = next((st for st in parent.subtasks if st.id == step_id), None)
        if found is None:
            found = PlanSubtask(id=step_id)
            parent.subtasks.append(found)
        return found

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, StepStartedEvent):
            step = self.step(event.step_id)
            if step is not None:
                step.status = "running"
        elif isinstance(event, StepDoneEvent):
            step = self.step(event.step_id)
            if step is not None:
                step.status = "complete"
                step.result = event.result
        elif isinstance(event, SubtaskStartedEvent):
            sub = self.subtask(event.parent_id, event.step_id)
            if sub is not None:
                sub.status = "running"
        elif isinstance(event, SubtaskDoneEvent):
            sub = self.subtask(event.parent_id, event.step_id)
            if sub is not None:
                sub.status = "complete"
                sub.result = event.result
        elif isinstance(event, LevelStartedEvent):
            self.current_level = event.level
        elif isinstance(event, LevelCompletedEvent):
            if event.level not in self.completed_levels:
                self.completed_levels.append(event.level)
        elif isinstance(event, OrchestrationDoneEvent):
            self.done = True
            self.final_result = event.final_result


# ═══════════════════════════════════════════════════════════════════════
# Turn accumulation
# ═══════════════════════════════════════════════════════════════════════


def merge_document_index(
    current: Optional[dict[str, Any]],
    incoming: Optional[dict[str, Any]],
) -> Optional[dict[str, Any]]:
    """Fold a newly indexed document into the running index.

    The first document becomes the index.  Each later one is appended as a
    separator node holding its own nodes as children.
    """
    if not incoming:
        return current
    if not current:
        return incoming
    title = incoming.get("title", "")
    return {
        "title": f"{current.get('title', '')} + {title}",
        "description": "\n\n---\n\n".join(
            d for d in (current.get("description"), incoming.get("description")) if d
        ),
        "pageCount": (current.get("pageCount") or 0) + (incoming.get("pageCount") or 0),
        "nodes": [
            *(current.get("nodes") or []),
            {
                "title": f"📄 {title}",
                "nodeId": f"doc-{int(time.time() * 1000)}",
                "startPage": 1,
                "endPage": incoming.get("pageCount"),
                "summary": incoming.get("description"),
                "children": incoming.get("nodes") or [],
            },
        ],
    }


@dataclass
class TurnAccumulator:
    """Everything a stream contributes to the current conversation turn."""

    text: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    questions: list[dict[str, Any]] = field(default_factory=list)
    suggestions: list[Any] = field(default_factory=list)
    tool_progress: list[ToolProgress] = field(default_factory=list)
    persisted_attachments: list[Any] = field(default_factory=list)
    document_index: Optional[dict[str, Any]] = None
    citations: list[Any] = field(default_factory=list)
    plan: Optional[PlanProgress] = None

    def add_message(self, message: ChatMessage) -> None:
        """Apply a message according to its mode (final/append/replace)."""
        if message.mode in ("append", "replace") and message.id is not None:
            for i, existing in enumerate(self.messages):
                if existing.id == message.id:
                    if message.mode == "append":
                        content = existing.content + message.content
                    else:
                        content = message.content
                    self.messages[i] = existing.model_copy(update={"content": content})
                    return
        self.messages.append(message)

    def add_question(self, question: dict[str, Any]) -> None:
        qid = question.get("id")
        self.questions = [q for q in self.questions if q.get("id") != qid]
        self.questions.append(question)

    def add_tool_progress(self, progress: ToolProgress) -> None:
        """Upsert by tool call id; progress without an id is appended."""
        if progress.tool_call_id:
            for i, existing in enumerate(self.tool_progress):
                if existing.tool_call_id == progress.tool_call_id:
                    self.tool_progress[i] = progress
                    return
        self.tool_progress.append(progress)


# ═══════════════════════════════════════════════════════════════════════
# Session
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class StreamOutcome:
    """How a stream ended, plus counters for diagnostics."""

    status: StreamStatus
    tree: UITree
    last_sequence: Optional[int] = None
    errors: list[ErrorEvent] = field(default_factory=list)
    patch_count: int = 0
    message_count: int = 0
    duplicates: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "lastSequence": self.last_sequence,
            "errors": [e.to_wire() for e in self.errors],
            "patchCount": self.patch_count,
            "messageCount": self.message_count,
            "duplicates": self.duplicates,
        }


class StreamSession:
    """One stream's worth of parsing, dispatch and tree updates.

    Single writer: the session is the only thing applying patches to its
    store while the stream is open.
    """

    def __init__(
        self,
        store: Optional[TreeStore] = None,
        history: Optional[HistoryManager] = None,
        *,
        settings: Optional[Settings] = None,
        turn_id: Optional[str] = None,
        reconnection: Optional[ReconnectionManager] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.store = store if store is not None else TreeStore(protected_types=self.settings.protected_types)
        self.history = history
        self.turn_id = turn_id
        self.reconnection = reconnection
        self.buffer = PatchBuffer(
            self.store,
            flush_interval_ms=self.settings.flush_interval_ms,
            max_buffer_size=self.settings.max_buffer_size,
            validate_after_flush=self.settings.validate_after_flush,
        )
        self.guard = StreamGuard()
        self.lines = LineBuffer()
        self.accumulator = TurnAccumulator()
        self.errors: list[ErrorEvent] = []
        self.patch_count = 0
        self._done = False
        self._outcome: Optional[StreamOutcome] = None
        self._listeners: list[EventListener] = []

    @property
    def done(self) -> bool:
        """``True`` once a ``done`` event was dispatched."""
        return self._done

    @property
    def tree(self) -> UITree:
        return self.store.tree

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an observer for every dispatched event.  Returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def process_chunk(self, chunk: Union[str, bytes]) -> list[StreamEvent]:
        """Feed one network chunk.  Returns the events dispatched from it."""
        if self._outcome is not None:
            logger.warning("Chunk received after finish(); ignoring")
            return []
        lines = self.lines.add_bytes(chunk) if isinstance(chunk, bytes) else self.lines.add(chunk)
        events = self._process_lines(lines)
        self.buffer.flush()
        return events

    def process_line(self, line: str) -> Optional[StreamEvent]:
        """Parse and dispatch a single complete line (no flush)."""
        event = parse_line(line, accept_legacy=self.settings.accept_legacy_payloads)
        if event is None:
            return None
        return event if self.dispatch(event) else None

    def _process_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            event = self.process_line(line)
            if event is not None:
                events.append(event)
        return events

    def drain(self) -> list[StreamEvent]:
        """Process the unterminated carry-over line and flush pending patches."""
        tail = self.lines.flush()
        events = self._process_lines([tail]) if tail else []
        self.buffer.flush()
        return events

    def dispatch(self, event: StreamEvent) -> bool:
        """Route one event.  Returns ``False`` when the guard dropped it as a replay."""
        if not self.guard.accept(event):
            return False
        if event.sequence is not None and self.reconnection is not None:
            self.reconnection.record_sequence(event.sequence)

        acc = self.accumulator
        if isinstance(event, PatchEvent):
            self.buffer.add_many(event.patches or [event.patch], atomic=event.atomic)
            self.patch_count += len(event.patches or [event.patch])
        elif isinstance(event, TextDeltaEvent):
            acc.text += event.text
        elif isinstance(event, MessageEvent):
            acc.add_message(event.message)
        elif isinstance(event, QuestionEvent):
            acc.add_question(event.question)
        elif isinstance(event, SuggestionEvent):
            acc.suggestions = list(event.suggestions)
        elif isinstance(event, ToolProgressEvent):
            acc.add_tool_progress(event.progress)
        elif isinstance(event, PersistedAttachmentsEvent):
            acc.persisted_attachments = list(event.attachments)
        elif isinstance(event, DocumentIndexUIEvent):
            component = event.ui_component
            props = component.get("props") if isinstance(component, dict) else None
            acc.document_index = merge_document_index(acc.document_index, props)
        elif isinstance(event, CitationsEvent):
            acc.citations = list(event.citations)
        elif isinstance(event, PlanCreatedEvent):
            acc.plan = PlanProgress.from_plan(event.plan)
            logger.info(f"📋 Plan created: {acc.plan.goal!r} ({len(acc.plan.steps)} steps)")
        elif isinstance(
            event,
            (StepStartedEvent, StepDoneEvent, SubtaskStartedEvent, SubtaskDoneEvent,
             LevelStartedEvent, LevelCompletedEvent, OrchestrationDoneEvent),
        ):
            if acc.plan is None:
                logger.debug(f"Plan event '{event.type}' before plan-created; ignoring")
            else:
                acc.plan.apply(event)
        elif isinstance(event, StreamingStartedEvent):
            self.store.set_streaming(True, self.turn_id)
        elif isinstance(event, ErrorEvent):
            self.errors.append(event)
            logger.warning(f"⚠️ Stream error [{event.code}] {event.message} (recoverable={event.recoverable})")
        elif isinstance(event, DoneEvent):
            self._done = True
            logger.debug(f"Stream done ({event.reason})")
        elif isinstance(event, UnknownEvent):
            logger.debug(f"Unclassified payload: {str(event.payload)[:100]}")

        for listener in list(self._listeners):
            listener(event)
        return True

    def finish(self) -> StreamOutcome:
        """Drain, tear down and report how the stream ended.  Idempotent."""
        if self._outcome is not None:
            return self._outcome
        self.drain()
        self.buffer.close()
        self.store.set_streaming(False)

        status: StreamStatus
        if any(not e.recoverable for e in self.errors):
            status = "failed"
        elif self._done:
            status = "completed"
        else:
            status = "incomplete"
            logger.warning("⚠️ Stream closed without a done event")

        self._outcome = StreamOutcome(
            status=status,
            tree=self.store.tree,
            last_sequence=self.guard.last_sequence,
            errors=list(self.errors),
            patch_count=self.patch_count,
            message_count=len(self.accumulator.messages),
            duplicates=self.guard.duplicates,
        )
        logger.info(
            f"Stream {status}: {self.patch_count} patch(es), "
            f"{len(self.accumulator.messages)} message(s), tree v{self.store.version}"
        )
        return self._outcome
