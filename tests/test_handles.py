from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conductor.engine.handles import QueryHandle, SubprocessHandle


async def _next_line(lines, timeout: float = 5.0) -> str:
    return await asyncio.wait_for(lines.__anext__(), timeout=timeout)


# ── SubprocessHandle ──


@pytest.mark.asyncio
async def test_subprocess_write_round_trips_through_stream():
    handle = SubprocessHandle(["sh", "-c", 'while read line; do echo "got:$line"; done'])
    await handle.open()
    lines = handle.stream()
    try:
        await handle.write("hello")
        assert await _next_line(lines) == "got:hello\n"
        await handle.write("again")
        assert await _next_line(lines) == "got:again\n"
        assert handle.returncode is None
    finally:
        await handle.close(1.0)
        await lines.aclose()

    assert handle.returncode == -signal.SIGTERM


@pytest.mark.asyncio
async def test_subprocess_stream_ends_with_exit_code_and_stderr_tail():
    handle = SubprocessHandle(["sh", "-c", "echo out; echo oops >&2; exit 4"])
    await handle.open()

    received = [line async for line in handle.stream()]

    assert received == ["out\n"]
    assert handle.returncode == 4
    assert handle.stderr_tail == ["oops"]


@pytest.mark.asyncio
async def test_subprocess_close_escalates_to_sigkill():
    handle = SubprocessHandle(["sh", "-c", "trap '' TERM; echo ready; sleep 30"])
    await handle.open()
    lines = handle.stream()
    assert await _next_line(lines) == "ready\n"

    await asyncio.wait_for(handle.close(0.3), timeout=5.0)
    await lines.aclose()

    assert handle.returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_subprocess_interrupt_signals_process_group():
    script = "trap 'echo interrupted; exit 3' INT; echo ready; while :; do sleep 0.05; done"
    handle = SubprocessHandle(["sh", "-c", script])
    await handle.open()
    lines = handle.stream()
    assert await _next_line(lines) == "ready\n"

    await handle.interrupt()
    rest = []
    async for line in lines:
        rest.append(line)

    assert rest == ["interrupted\n"]
    assert handle.returncode == 3


@pytest.mark.asyncio
async def test_subprocess_write_after_close_is_broken_pipe():
    handle = SubprocessHandle(["sh", "-c", "cat"])
    await handle.open()
    await handle.close(1.0)

    with pytest.raises(BrokenPipeError):
        await handle.write("late")


@pytest.mark.asyncio
async def test_subprocess_before_open():
    handle = SubprocessHandle(["sh", "-c", "true"])

    await handle.close(0.1)
    assert handle.returncode is None
    assert handle.pid is None
    with pytest.raises(RuntimeError):
        await handle.write("hi")


# ── QueryHandle ──


def _mock_client():
    client = MagicMock()
    client.connect = AsyncMock()
    client.query = AsyncMock()
    client.interrupt = AsyncMock()
    client.disconnect = AsyncMock()
    client.receive_response = MagicMock(return_value="response-iterator")
    return client


@pytest.mark.asyncio
async def test_query_handle_drives_sdk_client():
    client = _mock_client()
    with patch("conductor.engine.handles.ClaudeAgentOptions") as options_cls, \
            patch("conductor.engine.handles.ClaudeSDKClient", return_value=client) as client_cls:
        handle = QueryHandle({"cwd": "/work", "model": "m"})
        await handle.open()

    kwargs = options_cls.call_args.kwargs
    assert kwargs["cwd"] == "/work"
    assert callable(kwargs["stderr"])
    client_cls.assert_called_once_with(options=options_cls.return_value)
    client.connect.assert_awaited_once()

    await handle.write("hello")
    client.query.assert_awaited_once_with("hello")
    assert handle.stream() == "response-iterator"

    await handle.interrupt()
    client.interrupt.assert_awaited_once()

    await handle.close()
    await handle.close()
    client.disconnect.assert_awaited_once()
    with pytest.raises(RuntimeError):
        await handle.write("after close")


@pytest.mark.asyncio
async def test_query_handle_before_open_is_inert():
    handle = QueryHandle({"cwd": "/work"})

    await handle.interrupt()
    await handle.close()
    with pytest.raises(RuntimeError):
        await handle.write("hi")


def test_query_handle_keeps_stderr_tail():
    handle = QueryHandle({})
    handle._capture_stderr("warning: slow\n")
    assert handle.stderr_tail == ["warning: slow"]
