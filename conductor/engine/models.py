"""Core data models for the session orchestrator.

Dataclasses and enums shared by the registry, launcher and stream
adapter. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .handles import ProcessHandle


class PermissionMode(str, Enum):
    """Permission modes accepted by the claude CLI."""
    DEFAULT = "default"
    PLAN = "plan"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    DELEGATE = "delegate"
    DONT_ASK = "dontAsk"


DEFAULT_PERMISSION_MODES: list[str] = [mode.value for mode in PermissionMode]


class Transport(str, Enum):
    """How the orchestrator talks to the CLI."""
    SDK = "sdk"
    SUBPROCESS = "subprocess"


def make_process_id() -> str:
    """Millisecond timestamp plus a random suffix; never reused in practice."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """One-shot cancellation signal owned by a ProcessEntry."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class LaunchOptions:
    """Options for starting or resuming a session."""
    project_path: str
    session_id: str | None = None
    resume: bool = False
    continue_last: bool = False
    fork_session: bool = False
    permission_mode: str | None = None
    agent_name: str | None = None
    initial_message: str | None = None


@dataclass
class ProcessEntry:
    """Registry record for one launch attempt.

    Only the orchestrator mutates it. ``is_active`` flips to False
    exactly once, via mark_inactive().
    """
    process_id: str
    project_path: str
    handle: ProcessHandle
    session_id: str | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    def mark_inactive(self) -> bool:
        """Transition to inactive. Returns False if already inactive."""
        if not self.is_active:
            return False
        self.is_active = False
        return True

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Keep a reference to a task driving this entry until it finishes."""
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task
