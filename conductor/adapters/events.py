"""Normalized events emitted for each managed CLI session.

Every item read from a session's output stream is translated into one
of these frozen dataclasses before it is published, so UI consumers
never see raw SDK objects or CLI text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from typing import Any

# ErrorEvent.kind values
KIND_EXECUTABLE_NOT_FOUND = "executable_not_found"
KIND_SESSION_FILE_NOT_FOUND = "session_file_not_found"
KIND_TRANSPORT = "transport"


@dataclass(frozen=True)
class NormalizedEvent:
    """Base event; ``event_type`` is the union tag."""
    event_type: str = ""
    process_id: str = ""
    session_id: str | None = None


@dataclass(frozen=True)
class SystemEvent(NormalizedEvent):
    event_type: str = "system"
    subtype: str = ""
    content: str | None = None
    uuid: str | None = None
    cwd: str | None = None
    model: str | None = None
    tools: list[str] | None = None
    permission_mode: str | None = None
    project_path: str | None = None

    @property
    def is_init(self) -> bool:
        return self.subtype == "init"


@dataclass(frozen=True)
class ChunkEvent(NormalizedEvent):
    event_type: str = "chunk"
    content: str = ""
    uuid: str | None = None
    event: dict[str, Any] | None = None
    parent_tool_use_id: str | None = None


@dataclass(frozen=True)
class AssistantEvent(NormalizedEvent):
    event_type: str = "assistant"
    uuid: str | None = None
    message: dict[str, Any] = field(default_factory=dict)
    parent_tool_use_id: str | None = None


@dataclass(frozen=True)
class UserEvent(NormalizedEvent):
    event_type: str = "user"
    uuid: str | None = None
    message: dict[str, Any] = field(default_factory=dict)
    parent_tool_use_id: str | None = None


@dataclass(frozen=True)
class ResultEvent(NormalizedEvent):
    event_type: str = "result"
    subtype: str = ""
    is_error: bool = False
    num_turns: int | None = None
    duration_ms: int | None = None
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None
    errors: list[str] | None = None

    @property
    def succeeded(self) -> bool:
        return not self.is_error and self.subtype == "success"


@dataclass(frozen=True)
class ErrorEvent(NormalizedEvent):
    event_type: str = "error"
    content: str = ""
    kind: str = KIND_TRANSPORT
    path: str | None = None


@dataclass(frozen=True)
class CompleteEvent(NormalizedEvent):
    event_type: str = "complete"
    code: int = 0
    warning: str | None = None
    # True when the underlying process is gone and the entry removed.
    final: bool = False


_EVENT_MAP: dict[str, type[NormalizedEvent]] = {
    "system": SystemEvent,
    "chunk": ChunkEvent,
    "assistant": AssistantEvent,
    "user": UserEvent,
    "result": ResultEvent,
    "error": ErrorEvent,
    "complete": CompleteEvent,
}

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})

_CAMEL_RE = re.compile(r"_([a-z])")
_SNAKE_RE = re.compile(r"(?<!^)([A-Z])")


def _to_camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def _to_snake(name: str) -> str:
    return _SNAKE_RE.sub(r"_\1", name).lower()


def event_to_dict(event: NormalizedEvent) -> dict[str, Any]:
    """Convert an event to its camelCase wire form, dropping None values."""
    d: dict[str, Any] = {}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is None:
            continue
        if f.name == "event_type":
            d["type"] = val
        else:
            d[_to_camel(f.name)] = val
    return d


def dict_to_event(data: dict[str, Any]) -> NormalizedEvent:
    """Rebuild a typed event from its wire form."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, NormalizedEvent)
    valid_fields = {f.name for f in fields(cls)}
    filtered: dict[str, Any] = {}
    for key, value in data.items():
        if key == "type":
            continue
        name = _to_snake(key)
        if name in valid_fields:
            filtered[name] = value
    filtered["event_type"] = event_type
    return cls(**filtered)


def envelope(event: NormalizedEvent) -> dict[str, Any]:
    """Wrap an event the way the UI bridge delivers it."""
    return {"event": "message", "data": event_to_dict(event)}
