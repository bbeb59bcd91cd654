"""Client-side stream reducer.

Folds the normalized event stream into per-process conversation state
and a derived map of active session views. The reducer never decides
whether a process is alive; it only mirrors what the events say.

Per process id the status moves idle -> thinking -> streaming and ends
in success, partial or error.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from conductor.adapters.event_bus import EventBroadcaster
from conductor.adapters.events import (
    AssistantEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    NormalizedEvent,
    ResultEvent,
    SystemEvent,
    UserEvent,
)

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 200


class StreamStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    role: str
    content: str
    uuid: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ConversationState:
    """Everything a chat view needs to render one process."""
    process_id: str
    status: StreamStatus = StreamStatus.IDLE
    messages: list[ChatMessage] = field(default_factory=list)
    is_thinking: bool = False
    is_streaming: bool = False
    # Raw partial text; always complete.
    buffer: str = ""
    # What the UI shows; lags buffer by at most one debounce window.
    visible_text: str = ""
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    error: str | None = None
    seen_uuids: set[str] = field(default_factory=set, repr=False)


@dataclass
class ActiveSessionView:
    process_id: str
    session_id: str | None
    project_path: str | None
    project_name: str | None
    created_at: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False
    preview_text: str = ""


def render_content(content: Any) -> str:
    """Flatten message content blocks into display text."""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content or []:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text":
            parts.append(block.get("text") or "")
        elif kind == "tool_use":
            args = json.dumps(block.get("input"), indent=2)
            parts.append(f"```tool_use\n{block.get('name', '')}\n{args}\n```")
        elif kind == "tool_result":
            body = block.get("content")
            if not isinstance(body, str):
                body = json.dumps(body, indent=2)
            parts.append(f"```tool_result\n{body}\n```")
    return "\n".join(parts)


class ClientStreamReducer:
    """Subscribes to a broadcaster and keeps UI state per process id.

    Chunk text lands in the buffer immediately; the visible text is
    refreshed on a loop.call_later timer so bursts of deltas cost one
    UI update. Finalization always flushes synchronously.
    """

    def __init__(
        self,
        debounce_seconds: float = 0.03,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self._debounce = debounce_seconds
        self._on_change = on_change
        self._conversations: dict[str, ConversationState] = {}
        self._sessions: dict[str, ActiveSessionView] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def debounce_seconds(self) -> float:
        return self._debounce

    # ── Wiring ──

    def attach(self, broadcaster: EventBroadcaster) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = broadcaster.subscribe(self.reduce)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def detach(self, process_id: str) -> None:
        """Forget a process and its session view."""
        self._cancel_timer(process_id)
        self._conversations.pop(process_id, None)
        self._sessions.pop(process_id, None)

    # ── Queries ──

    def conversation(self, process_id: str) -> ConversationState | None:
        return self._conversations.get(process_id)

    def session_view(self, process_id: str) -> ActiveSessionView | None:
        return self._sessions.get(process_id)

    def active_sessions(self) -> list[ActiveSessionView]:
        return sorted(self._sessions.values(), key=lambda v: v.created_at)

    # ── Reduction ──

    def reduce(self, event: NormalizedEvent) -> None:
        pid = event.process_id
        if isinstance(event, SystemEvent):
            self._on_system(event)
        elif isinstance(event, ChunkEvent):
            self._on_chunk(event)
        elif isinstance(event, AssistantEvent):
            self._on_assistant(event)
        elif isinstance(event, UserEvent):
            self._touch(pid, event.session_id)
        elif isinstance(event, ResultEvent):
            self._on_result(event)
        elif isinstance(event, CompleteEvent):
            self._on_complete(event)
        elif isinstance(event, ErrorEvent):
            self._on_error(event)
        else:
            logger.debug("Reducer ignoring event type=%s process=%s", event.event_type, pid)
            return
        self._changed(pid)

    def _state(self, process_id: str) -> ConversationState:
        state = self._conversations.get(process_id)
        if state is None:
            state = ConversationState(process_id=process_id)
            self._conversations[process_id] = state
        return state

    def _touch(self, process_id: str, session_id: str | None) -> ActiveSessionView | None:
        view = self._sessions.get(process_id)
        if view is not None and session_id:
            view.session_id = session_id
        return view

    def _on_system(self, event: SystemEvent) -> None:
        if not event.is_init:
            self._touch(event.process_id, event.session_id)
            return
        state = self._state(event.process_id)
        self._cancel_timer(event.process_id)
        state.status = StreamStatus.THINKING
        state.is_thinking = True
        state.is_streaming = True
        state.error = None
        state.buffer = ""
        state.visible_text = ""

        view = self._sessions.get(event.process_id)
        project_path = event.project_path or event.cwd
        if view is None:
            view = ActiveSessionView(
                process_id=event.process_id,
                session_id=event.session_id,
                project_path=project_path,
                project_name=os.path.basename(project_path.rstrip("/\\")) if project_path else None,
            )
            self._sessions[event.process_id] = view
        elif event.session_id:
            view.session_id = event.session_id
        view.is_streaming = True

    def _on_chunk(self, event: ChunkEvent) -> None:
        if not event.content:
            return
        state = self._state(event.process_id)
        state.is_thinking = False
        state.is_streaming = True
        state.status = StreamStatus.STREAMING
        state.buffer += event.content
        view = self._touch(event.process_id, event.session_id)
        if view is not None:
            view.is_streaming = True
        self._schedule_flush(event.process_id)

    def _on_assistant(self, event: AssistantEvent) -> None:
        state = self._state(event.process_id)
        self._cancel_timer(event.process_id)
        state.is_thinking = False
        state.status = StreamStatus.STREAMING
        # The full message supersedes any deltas streamed for it.
        state.buffer = ""
        state.visible_text = ""
        text = render_content(event.message.get("content"))
        view = self._touch(event.process_id, event.session_id)
        if event.uuid and event.uuid in state.seen_uuids:
            return
        if event.uuid:
            state.seen_uuids.add(event.uuid)
        if text:
            state.messages.append(ChatMessage(role="assistant", content=text, uuid=event.uuid))
            if view is not None:
                view.preview_text = text[-_PREVIEW_CHARS:]

    def _on_result(self, event: ResultEvent) -> None:
        state = self._state(event.process_id)
        self._finalize_buffer(state)
        state.is_thinking = False
        state.is_streaming = False
        if event.total_cost_usd is not None:
            state.total_cost_usd = event.total_cost_usd
        if event.usage is not None:
            state.usage = event.usage
        if event.is_error:
            text = "\n".join(event.errors or []) or event.result or "Unknown error"
            state.error = text
            state.messages.append(ChatMessage(role="system", content=f"Error: {text}"))
            state.status = StreamStatus.ERROR
        else:
            state.status = StreamStatus.SUCCESS
        view = self._touch(event.process_id, event.session_id)
        if view is not None:
            view.is_streaming = False

    def _on_complete(self, event: CompleteEvent) -> None:
        state = self._state(event.process_id)
        self._finalize_buffer(state)
        was_running = state.status in (StreamStatus.THINKING, StreamStatus.STREAMING)
        state.is_thinking = False
        state.is_streaming = False
        if event.code != 0:
            if state.status != StreamStatus.ERROR:
                state.status = StreamStatus.PARTIAL
        elif was_running:
            state.status = StreamStatus.SUCCESS
        if event.warning:
            logger.info("Process completed with warning process=%s: %s", event.process_id, event.warning)
        if event.final:
            self._sessions.pop(event.process_id, None)
        else:
            view = self._touch(event.process_id, event.session_id)
            if view is not None:
                view.is_streaming = False

    def _on_error(self, event: ErrorEvent) -> None:
        state = self._state(event.process_id)
        self._finalize_buffer(state)
        content = event.content or "Unknown error"
        state.is_thinking = False
        state.is_streaming = False
        state.error = content
        state.status = StreamStatus.ERROR
        state.messages.append(ChatMessage(role="system", content=f"Error: {content}"))
        self._sessions.pop(event.process_id, None)

    # ── Buffering ──

    def _finalize_buffer(self, state: ConversationState) -> None:
        self._cancel_timer(state.process_id)
        if state.buffer:
            state.messages.append(ChatMessage(role="assistant", content=state.buffer))
        state.buffer = ""
        state.visible_text = ""

    def _schedule_flush(self, process_id: str) -> None:
        if process_id in self._timers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush(process_id)
            return
        self._timers[process_id] = loop.call_later(self._debounce, self._flush, process_id)

    def _flush(self, process_id: str) -> None:
        self._timers.pop(process_id, None)
        state = self._conversations.get(process_id)
        if state is None:
            return
        state.visible_text = state.buffer
        view = self._sessions.get(process_id)
        if view is not None and state.buffer:
            view.preview_text = state.buffer[-_PREVIEW_CHARS:]
        self._changed(process_id)

    def _cancel_timer(self, process_id: str) -> None:
        handle = self._timers.pop(process_id, None)
        if handle is not None:
            handle.cancel()

    def _changed(self, process_id: str) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(process_id)
        except Exception:
            logger.exception("on_change callback failed process=%s", process_id)
