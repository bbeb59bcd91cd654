from __future__ import annotations

import pytest
from claude_agent_sdk import ProcessError
from claude_agent_sdk.types import (
    AssistantMessage,
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from conftest import FakeHandle, sdk_assistant, sdk_delta, sdk_init, sdk_result
from conductor.adapters.events import (
    KIND_TRANSPORT,
    AssistantEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    ResultEvent,
    SystemEvent,
    UserEvent,
)
from conductor.engine.models import ProcessEntry
from conductor.engine.stream import (
    BENIGN_EXIT_WARNING,
    MessageStreamAdapter,
    extract_delta_text,
    is_exit_code_one,
    normalize,
)


def _adapter():
    events = []
    released = []
    adapter = MessageStreamAdapter(events.append, released.append)
    return adapter, events, released


def _entry(handle, process_id="p-1"):
    return ProcessEntry(process_id=process_id, project_path="/work", handle=handle)


def _scripted(*items, per_turn=True):
    handle = FakeHandle(per_turn=per_turn)
    handle.feed(*items)
    handle.finish(0)
    return handle


# ── Normalization ──


def test_normalize_init_system_message():
    event = normalize(sdk_init("sess-9"), "p-1", None)
    assert isinstance(event, SystemEvent)
    assert event.is_init
    assert event.session_id == "sess-9"
    assert event.cwd == "/work/demo"
    assert event.tools == ["Read", "Bash"]
    assert event.permission_mode == "default"


def test_normalize_stream_event_extracts_text_delta():
    event = normalize(sdk_delta("Hi"), "p-1", "s")
    assert isinstance(event, ChunkEvent)
    assert event.content == "Hi"
    assert event.event["type"] == "content_block_delta"


def test_normalize_non_text_stream_event_has_empty_content():
    raw = StreamEvent(uuid="u", session_id="s", event={"type": "message_start", "message": {}})
    event = normalize(raw, "p-1", "s")
    assert isinstance(event, ChunkEvent)
    assert event.content == ""


def test_normalize_assistant_serializes_tool_blocks():
    message = AssistantMessage(
        content=[
            TextBlock(text="Let me look."),
            ToolUseBlock(id="tu-1", name="Read", input={"path": "a.py"}),
        ],
        model="claude-sonnet-4-20250514",
    )
    event = normalize(message, "p-1", "s")
    assert isinstance(event, AssistantEvent)
    assert event.message["role"] == "assistant"
    assert event.message["content"] == [
        {"type": "text", "text": "Let me look."},
        {"type": "tool_use", "id": "tu-1", "name": "Read", "input": {"path": "a.py"}},
    ]


def test_normalize_user_tool_result():
    message = UserMessage(content=[ToolResultBlock(tool_use_id="tu-1", content="ok", is_error=False)])
    event = normalize(message, "p-1", "s")
    assert isinstance(event, UserEvent)
    assert event.message["content"][0]["type"] == "tool_result"
    assert event.message["content"][0]["content"] == "ok"


def test_normalize_result_fields():
    event = normalize(sdk_result(), "p-1", None)
    assert isinstance(event, ResultEvent)
    assert event.succeeded
    assert event.total_cost_usd == pytest.approx(0.0123)
    assert event.duration_ms == 1200
    assert event.num_turns == 1
    assert event.usage == {"input_tokens": 10, "output_tokens": 20}


def test_normalize_raw_line_and_unknown_item():
    assert normalize("text\n", "p-1", None) == ChunkEvent(process_id="p-1", content="text\n")
    assert normalize(object(), "p-1", None) is None


def test_extract_delta_text_ignores_other_deltas():
    assert extract_delta_text({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "{"}}) == ""
    assert extract_delta_text(None) == ""


def test_exit_code_one_detection():
    assert is_exit_code_one(RuntimeError("Claude Code process exited with code 1"))
    assert is_exit_code_one(ProcessError("Command failed", exit_code=1))
    assert not is_exit_code_one(RuntimeError("exited with code 137"))
    assert not is_exit_code_one(ProcessError("Command failed", exit_code=2))


# ── Drain ──


@pytest.mark.asyncio
async def test_drain_turn_completes_with_code_zero():
    adapter, events, released = _adapter()
    entry = _entry(_scripted(sdk_init("s-1"), sdk_assistant("hi"), sdk_result(session_id="s-1")))

    await adapter.drain(entry)

    assert [e.event_type for e in events] == ["system", "assistant", "result", "complete"]
    assert events[-1].code == 0
    assert events[-1].final is False
    assert released == []
    assert entry.session_id == "s-1"


@pytest.mark.asyncio
async def test_drain_skips_unrecognized_items():
    adapter, events, _ = _adapter()
    entry = _entry(_scripted(object(), sdk_result()))

    await adapter.drain(entry)

    assert [e.event_type for e in events] == ["result", "complete"]


@pytest.mark.asyncio
async def test_exit_code_one_after_result_is_reclassified_as_complete():
    """Compatibility shim: the CLI can exit 1 after a successful result."""
    adapter, events, released = _adapter()
    handle = FakeHandle()
    handle.feed(sdk_assistant("answer"), sdk_result(), ProcessError("Command failed with exit code 1", exit_code=1))
    entry = _entry(handle)

    await adapter.drain(entry)

    assert not any(isinstance(e, ErrorEvent) for e in events)
    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.code == 1
    assert complete.warning == BENIGN_EXIT_WARNING
    assert released == [entry]


@pytest.mark.asyncio
async def test_exit_code_one_without_result_is_an_error():
    adapter, events, released = _adapter()
    handle = FakeHandle()
    handle.feed(sdk_delta("partial"), RuntimeError("Claude Code process exited with code 1"))
    entry = _entry(handle)

    await adapter.drain(entry)

    error = events[-1]
    assert isinstance(error, ErrorEvent)
    assert error.kind == KIND_TRANSPORT
    assert "exited with code 1" in error.content
    assert released == [entry]


@pytest.mark.asyncio
async def test_other_failure_after_result_is_an_error():
    adapter, events, _ = _adapter()
    handle = FakeHandle()
    handle.feed(sdk_result(), RuntimeError("exited with code 2"))

    await adapter.drain(_entry(handle))

    assert isinstance(events[-1], ErrorEvent)


@pytest.mark.asyncio
async def test_raw_drain_reports_exit_code_and_releases():
    adapter, events, released = _adapter()
    handle = FakeHandle(per_turn=False)
    handle.feed("a\n", "b\n")
    handle.finish(2)
    entry = _entry(handle)

    await adapter.drain(entry)

    assert [e.content for e in events if isinstance(e, ChunkEvent)] == ["a\n", "b\n"]
    assert events[-1] == CompleteEvent(process_id="p-1", code=2, final=True)
    assert released == [entry]


@pytest.mark.asyncio
async def test_cancelled_entry_publishes_nothing():
    adapter, events, released = _adapter()
    handle = FakeHandle()
    entry = _entry(handle)
    entry.mark_inactive()
    entry.cancellation.cancel()
    handle.feed(sdk_assistant("late"))

    await adapter.drain(entry)

    assert events == []
    assert released == []


def test_emit_drops_events_for_inactive_entry():
    adapter, events, _ = _adapter()
    entry = _entry(FakeHandle())
    entry.mark_inactive()

    assert adapter.emit(entry, ChunkEvent(process_id="p-1", content="x")) is False
    assert events == []
