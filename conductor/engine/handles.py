"""Process handles: the two ways of driving the claude CLI.

Each handle exposes the same narrow surface (open, write, stream,
interrupt, kill, close) so the launcher and stream adapter never need
to know which transport they are talking to:

- QueryHandle: a cooperative Claude Agent SDK client. One CLI process
  stays connected for the whole session; each write() starts a turn and
  stream() drains that turn up to its result message.
- SubprocessHandle: the raw CLI spawned as a child process. stdin takes
  one line per message and stream() yields stdout lines until exit.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import signal
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

from .models import LaunchOptions, PermissionMode

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 50


class ProcessHandle(abc.ABC):
    """Sealed interface over a live CLI session."""

    #: True when stream() drains a single turn and must be re-entered
    #: after every write(); False when it covers the whole process life.
    per_turn: bool = False

    @property
    @abc.abstractmethod
    def kind(self) -> str:
        """Short transport name ('query' or 'subprocess')."""

    @abc.abstractmethod
    async def open(self) -> None:
        """Spawn or connect. Raises OSError/SDK errors on failure."""

    @abc.abstractmethod
    async def write(self, message: str) -> None:
        """Deliver a user message to the CLI."""

    @abc.abstractmethod
    def stream(self) -> AsyncIterator[Any]:
        """Yield raw items (SDK messages or text lines) from the CLI."""

    @abc.abstractmethod
    async def interrupt(self) -> None:
        """Ask the CLI to stop the current turn."""

    @abc.abstractmethod
    async def kill(self, sig: int = signal.SIGTERM) -> None:
        """Signal the underlying process."""

    @abc.abstractmethod
    async def close(self, grace_seconds: float = 2.0) -> None:
        """Shut down, escalating to a forceful kill after *grace_seconds*."""

    @property
    def returncode(self) -> int | None:
        """Exit code once the process is gone; None while running or unknown."""
        return None

    @property
    def stderr_tail(self) -> list[str]:
        return []


class QueryHandle(ProcessHandle):
    """Handle backed by claude_agent_sdk.ClaudeSDKClient."""

    per_turn = True

    def __init__(self, options_kwargs: dict[str, Any]) -> None:
        self._options_kwargs = dict(options_kwargs)
        self._stderr: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._options_kwargs.setdefault("stderr", self._capture_stderr)
        self._client: ClaudeSDKClient | None = None
        self._closed = False

    @property
    def kind(self) -> str:
        return "query"

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr)

    def _capture_stderr(self, line: str) -> None:
        self._stderr.append(line.rstrip())
        logger.debug("claude stderr: %s", line.rstrip())

    def _require_client(self) -> ClaudeSDKClient:
        if self._client is None or self._closed:
            raise RuntimeError("Query handle is not connected")
        return self._client

    async def open(self) -> None:
        options = ClaudeAgentOptions(**self._options_kwargs)
        client = ClaudeSDKClient(options=options)
        await client.connect()
        self._client = client

    async def write(self, message: str) -> None:
        await self._require_client().query(message)

    def stream(self) -> AsyncIterator[Any]:
        return self._require_client().receive_response()

    async def interrupt(self) -> None:
        if self._client is None or self._closed:
            return
        await self._client.interrupt()

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        # The SDK owns its subprocess; disconnect() terminates it.
        await self.close(0.0)

    async def close(self, grace_seconds: float = 2.0) -> None:
        if self._client is None or self._closed:
            return
        self._closed = True
        await self._client.disconnect()


class SubprocessHandle(ProcessHandle):
    """Handle backed by a raw `claude` child process.

    The child runs in its own process group so signals reach any tools
    it spawned as well.
    """

    per_turn = False

    def __init__(
        self,
        argv: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._argv = list(argv)
        self._cwd = cwd
        self._env = env
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None

    @property
    def kind(self) -> str:
        return "subprocess"

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr)

    def _require_proc(self) -> asyncio.subprocess.Process:
        if self._proc is None:
            raise RuntimeError("Subprocess handle has not been opened")
        return self._proc

    async def open(self) -> None:
        # create_subprocess_exec passes args as array, no shell
        self._proc = await asyncio.create_subprocess_exec(
            *self._argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=self._env,
            start_new_session=True,
        )
        self._stderr_task = asyncio.create_task(self._collect_stderr())
        logger.info("Spawned claude subprocess pid=%d cwd=%s", self._proc.pid, self._cwd)

    async def _collect_stderr(self) -> None:
        proc = self._require_proc()
        if proc.stderr is None:
            return
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            self._stderr.append(text)
            logger.debug("claude stderr pid=%d: %s", proc.pid, text)

    async def write(self, message: str) -> None:
        proc = self._require_proc()
        if proc.stdin is None or proc.stdin.is_closing():
            raise BrokenPipeError(f"stdin of pid {proc.pid} is not writable")
        proc.stdin.write(message.encode("utf-8") + b"\n")
        await proc.stdin.drain()

    async def stream(self) -> AsyncIterator[str]:
        proc = self._require_proc()
        assert proc.stdout is not None
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            yield line.decode("utf-8", errors="replace")
        await proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task

    def _signal(self, sig: int) -> None:
        proc = self._require_proc()
        if proc.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass

    async def interrupt(self) -> None:
        self._signal(signal.SIGINT)

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        self._signal(sig)

    async def close(self, grace_seconds: float = 2.0) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Force killing claude subprocess pid=%d after %.1fs grace",
                proc.pid, grace_seconds,
            )
            self._signal(signal.SIGKILL)
            await proc.wait()
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()


def build_cli_args(executable: str, options: LaunchOptions) -> list[str]:
    """argv for the raw CLI transport."""
    args = [executable]
    if options.resume and options.session_id:
        args.extend(["--resume", options.session_id])
        if options.fork_session:
            args.append("--fork-session")
    elif options.session_id:
        args.extend(["--session-id", options.session_id])
    if options.continue_last and not options.resume:
        args.append("-c")
    mode = options.permission_mode
    if mode and mode != PermissionMode.DEFAULT.value:
        args.extend(["--permission-mode", mode])
    if options.agent_name:
        args.extend(["--agent", options.agent_name])
    return args


def build_query_options(
    executable: str,
    options: LaunchOptions,
    *,
    env: dict[str, str],
    model: str,
    setting_sources: list[str],
    default_permission_mode: str = "default",
) -> dict[str, Any]:
    """Keyword arguments for ClaudeAgentOptions on the SDK transport."""
    extra_args: dict[str, str | None] = {}
    if options.session_id and not options.resume:
        extra_args["session-id"] = options.session_id
    if options.agent_name:
        extra_args["agent"] = options.agent_name

    kwargs: dict[str, Any] = dict(
        cwd=options.project_path,
        cli_path=executable,
        permission_mode=options.permission_mode or default_permission_mode,
        model=model,
        include_partial_messages=True,
        env=env,
        setting_sources=list(setting_sources),
        extra_args=extra_args,
    )
    # resume and continue are mutually exclusive
    if options.resume and options.session_id:
        kwargs["resume"] = options.session_id
        kwargs["fork_session"] = bool(options.fork_session)
    elif options.continue_last:
        kwargs["continue_conversation"] = True
    return kwargs
