from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
)

from conductor.adapters.orchestrator import Orchestrator
from conductor.engine.config import OrchestratorConfig
from conductor.engine.handles import ProcessHandle
from conductor.engine.locator import ExecutableLocator

_EOS = object()


class FakeHandle(ProcessHandle):
    """Scripted stand-in for a CLI session.

    per_turn handles replay the next entry of *turns* after every
    write(); raw handles are fed by the test with feed()/finish().
    """

    def __init__(self, *, per_turn=True, turns=None, open_error=None, open_gate=None):
        self.per_turn = per_turn
        self.turns = [list(t) for t in turns or []]
        self.open_error = open_error
        self.open_gate: asyncio.Event | None = open_gate
        self.queue: asyncio.Queue = asyncio.Queue()
        self.written: list[str] = []
        self.opened = False
        self.interrupted = False
        self.closed = False
        self.signals: list[int] = []
        self._returncode = None

    @property
    def kind(self) -> str:
        return "fake"

    @property
    def returncode(self):
        return self._returncode

    def feed(self, *items) -> None:
        for item in items:
            self.queue.put_nowait(item)

    def finish(self, code: int = 0) -> None:
        self._returncode = code
        self.queue.put_nowait(_EOS)

    async def open(self) -> None:
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def write(self, message: str) -> None:
        self.written.append(message)
        if self.per_turn and self.turns:
            self.feed(*self.turns.pop(0))
            self.queue.put_nowait(_EOS)

    async def stream(self):
        while True:
            item = await self.queue.get()
            if item is _EOS:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def interrupt(self) -> None:
        self.interrupted = True

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        self.signals.append(sig)

    async def close(self, grace_seconds: float = 2.0) -> None:
        # Like the real handles: nothing to close until open() has finished.
        if not self.opened:
            return
        self.closed = True


# ── SDK message builders ──


def sdk_init(session_id: str = "sess-1") -> SystemMessage:
    return SystemMessage(
        subtype="init",
        data={
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "cwd": "/work/demo",
            "model": "claude-sonnet-4-20250514",
            "tools": ["Read", "Bash"],
            "permissionMode": "default",
        },
    )


def sdk_delta(text: str, session_id: str = "sess-1") -> StreamEvent:
    return StreamEvent(
        uuid=f"delta-{text}",
        session_id=session_id,
        event={
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    )


def sdk_assistant(text: str) -> AssistantMessage:
    return AssistantMessage(content=[TextBlock(text=text)], model="claude-sonnet-4-20250514")


def sdk_result(
    *,
    is_error: bool = False,
    subtype: str = "success",
    session_id: str = "sess-1",
    result: str | None = "done",
) -> ResultMessage:
    return ResultMessage(
        subtype=subtype,
        duration_ms=1200,
        duration_api_ms=900,
        is_error=is_error,
        num_turns=1,
        session_id=session_id,
        total_cost_usd=0.0123,
        usage={"input_tokens": 10, "output_tokens": 20},
        result=result,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ── Fixtures ──


@pytest.fixture
def config(tmp_path) -> OrchestratorConfig:
    return OrchestratorConfig(
        transcripts_root=str(tmp_path / "projects"),
        kill_grace_seconds=0.1,
        chunk_debounce_seconds=0.01,
    )


@pytest.fixture
def handles() -> list[FakeHandle]:
    return []


@pytest.fixture
def make_orchestrator(config, handles):
    """Build an Orchestrator wired to FakeHandles; returns (orchestrator, events)."""

    def _make(*, per_turn=True, turns=None, located="/fake/bin/claude", open_error=None, open_gate=None):
        locator = MagicMock(spec=ExecutableLocator)
        locator.locate = AsyncMock(return_value=located)
        locator.cached_version = None

        def factory(options, executable, env):
            handle = FakeHandle(per_turn=per_turn, turns=turns, open_error=open_error, open_gate=open_gate)
            handle.options = options
            handle.executable = executable
            handle.env = env
            handles.append(handle)
            return handle

        orchestrator = Orchestrator(config, locator=locator, handle_factory=factory)
        events: list = []
        orchestrator.subscribe(events.append)
        return orchestrator, events

    return _make
