from __future__ import annotations

import asyncio

import pytest

from conductor.adapters.event_bus import EventBroadcaster
from conductor.adapters.events import (
    AssistantEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    ResultEvent,
    SystemEvent,
)
from conductor.client.reducer import ClientStreamReducer, StreamStatus, render_content

PID = "p-1"


def _init(**kw):
    return SystemEvent(process_id=PID, session_id="s-1", subtype="init",
                       content="Starting Claude session...", project_path="/work/my-app", **kw)


def _assistant(text, uuid="m-1"):
    return AssistantEvent(process_id=PID, uuid=uuid,
                          message={"role": "assistant", "content": [{"type": "text", "text": text}]})


def test_init_creates_view_and_enters_thinking():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())

    state = reducer.conversation(PID)
    assert state.status == StreamStatus.THINKING
    assert state.is_thinking is True
    view = reducer.session_view(PID)
    assert view.project_name == "my-app"
    assert view.session_id == "s-1"
    assert view.is_streaming is True


def test_chunks_without_loop_update_visible_text_immediately():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content="Hel"))
    reducer.reduce(ChunkEvent(process_id=PID, content="lo"))

    state = reducer.conversation(PID)
    assert state.status == StreamStatus.STREAMING
    assert state.is_thinking is False
    assert state.visible_text == "Hello"
    assert reducer.session_view(PID).preview_text == "Hello"


def test_empty_chunk_does_not_leave_thinking():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content=""))
    assert reducer.conversation(PID).status == StreamStatus.THINKING


@pytest.mark.asyncio
async def test_chunks_are_debounced_on_a_running_loop():
    changes = []
    reducer = ClientStreamReducer(debounce_seconds=0.02, on_change=changes.append)
    reducer.reduce(_init())
    for part in ("a", "b", "c"):
        reducer.reduce(ChunkEvent(process_id=PID, content=part))

    state = reducer.conversation(PID)
    assert state.buffer == "abc"
    assert state.visible_text == ""
    await asyncio.sleep(0.05)
    assert state.visible_text == "abc"


@pytest.mark.asyncio
async def test_result_flushes_pending_buffer_synchronously():
    reducer = ClientStreamReducer(debounce_seconds=10.0)
    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content="partial answer"))
    reducer.reduce(ResultEvent(process_id=PID, subtype="success", total_cost_usd=0.02))

    state = reducer.conversation(PID)
    assert state.messages[-1].content == "partial answer"
    assert state.buffer == ""
    assert state.status == StreamStatus.SUCCESS
    assert state.total_cost_usd == 0.02


def test_assistant_message_replaces_buffer_and_dedupes_by_uuid():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content="Hel"))
    reducer.reduce(_assistant("Hello"))
    reducer.reduce(_assistant("Hello"))

    state = reducer.conversation(PID)
    assert [m.content for m in state.messages] == ["Hello"]
    assert state.buffer == ""


def test_error_result_appends_system_message():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ResultEvent(process_id=PID, subtype="error_max_turns", is_error=True,
                               errors=["max turns", "reached"]))

    state = reducer.conversation(PID)
    assert state.status == StreamStatus.ERROR
    assert state.messages[-1].role == "system"
    assert state.messages[-1].content == "Error: max turns\nreached"


def test_error_result_without_details_says_unknown():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ResultEvent(process_id=PID, subtype="error", is_error=True))
    assert reducer.conversation(PID).messages[-1].content == "Error: Unknown error"


def test_nonzero_complete_without_error_is_partial():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content="some"))
    reducer.reduce(CompleteEvent(process_id=PID, code=1,
                                 warning="Process exited with code 1, but messages were received"))

    state = reducer.conversation(PID)
    assert state.status == StreamStatus.PARTIAL
    assert state.messages[-1].content == "some"


def test_zero_complete_while_streaming_is_success_and_keeps_view():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content="x"))
    reducer.reduce(CompleteEvent(process_id=PID, code=0))

    assert reducer.conversation(PID).status == StreamStatus.SUCCESS
    assert reducer.session_view(PID).is_streaming is False


def test_nonzero_complete_keeps_explicit_error():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(ResultEvent(process_id=PID, subtype="error", is_error=True, result="bad"))
    reducer.reduce(CompleteEvent(process_id=PID, code=1))
    assert reducer.conversation(PID).status == StreamStatus.ERROR


def test_final_complete_and_error_remove_view():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.reduce(CompleteEvent(process_id=PID, code=0, final=True))
    assert reducer.session_view(PID) is None

    reducer.reduce(_init())
    reducer.reduce(ChunkEvent(process_id=PID, content="half"))
    reducer.reduce(ErrorEvent(process_id=PID, content="pipe broke"))
    state = reducer.conversation(PID)
    assert reducer.session_view(PID) is None
    assert state.status == StreamStatus.ERROR
    assert [m.content for m in state.messages][-2:] == ["half", "Error: pipe broke"]


def test_detach_forgets_process():
    reducer = ClientStreamReducer()
    reducer.reduce(_init())
    reducer.detach(PID)
    assert reducer.conversation(PID) is None
    assert reducer.active_sessions() == []


def test_attach_follows_broadcaster():
    bus = EventBroadcaster()
    reducer = ClientStreamReducer()
    reducer.attach(bus)
    bus.publish(_init())
    assert reducer.session_view(PID) is not None
    reducer.close()
    assert bus.listener_count == 0


def test_render_content_formats_tool_blocks():
    text = render_content([
        {"type": "text", "text": "Reading"},
        {"type": "tool_use", "name": "Read", "input": {"path": "a"}},
        {"type": "tool_result", "content": "ok"},
    ])
    assert text == 'Reading\n```tool_use\nRead\n{\n  "path": "a"\n}\n```\n```tool_result\nok\n```'
