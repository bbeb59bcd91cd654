"""Session launcher: start, resume, message and stop CLI sessions.

Owns the lifecycle of every ProcessEntry. Entries are registered
before start()/resume() return, so a message sent immediately
afterwards always finds its process.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from conductor.adapters.events import (
    KIND_EXECUTABLE_NOT_FOUND,
    KIND_SESSION_FILE_NOT_FOUND,
    KIND_TRANSPORT,
    ErrorEvent,
    NormalizedEvent,
    SystemEvent,
)

from .config import OrchestratorConfig
from .environment import build_process_env, transcript_path
from .errors import ExecutableNotFoundError, TransportError
from .handles import (
    ProcessHandle,
    QueryHandle,
    SubprocessHandle,
    build_cli_args,
    build_query_options,
)
from .locator import ExecutableLocator, ExecutableNotFound
from .models import LaunchOptions, ProcessEntry, Transport, make_process_id
from .registry import ProcessRegistry
from .stream import MessageStreamAdapter

logger = logging.getLogger(__name__)

HandleFactory = Callable[[LaunchOptions, str, dict[str, str]], ProcessHandle]

# Upper bound on a cooperative interrupt before we stop waiting for it.
_INTERRUPT_TIMEOUT = 5.0


def missing_session_message(session_id: str, path: str) -> str:
    return (
        f"Session file not found for session {session_id}.\n"
        "This can happen if:\n"
        "- The session was deleted\n"
        "- The project path changed\n"
        "- The session was never saved\n"
        f"Expected path: {path}"
    )


class SessionLauncher:
    """Creates process handles, registers entries and drives their streams."""

    def __init__(
        self,
        config: OrchestratorConfig,
        locator: ExecutableLocator,
        registry: ProcessRegistry,
        publish: Callable[[NormalizedEvent], None],
        *,
        handle_factory: HandleFactory | None = None,
    ) -> None:
        self._config = config
        self._locator = locator
        self._registry = registry
        self._publish = publish
        self._handle_factory = handle_factory or self._default_handle_factory
        self._adapter = MessageStreamAdapter(publish, self._release)
        self._reapers: set[asyncio.Task] = set()

    @property
    def adapter(self) -> MessageStreamAdapter:
        return self._adapter

    @property
    def raw_transport(self) -> bool:
        return self._config.transport == Transport.SUBPROCESS.value

    def _default_handle_factory(
        self, options: LaunchOptions, executable: str, env: dict[str, str],
    ) -> ProcessHandle:
        if self.raw_transport:
            return SubprocessHandle(
                build_cli_args(executable, options),
                cwd=options.project_path,
                env=env,
            )
        return QueryHandle(build_query_options(
            executable,
            options,
            env=env,
            model=self._config.model,
            setting_sources=self._config.setting_sources,
            default_permission_mode=self._config.default_permission_mode,
        ))

    # ── Public API ──

    async def start(
        self,
        project_path: str,
        *,
        session_id: str | None = None,
        continue_last: bool = False,
        permission_mode: str | None = None,
        initial_message: str | None = None,
        agent_name: str | None = None,
    ) -> dict[str, Any]:
        """Start a new session. Returns {processId, sessionId}."""
        options = LaunchOptions(
            project_path=project_path,
            session_id=session_id,
            continue_last=continue_last,
            permission_mode=permission_mode,
            agent_name=agent_name,
            initial_message=initial_message,
        )
        return await self._launch(options)

    async def resume(
        self,
        project_path: str,
        session_id: str,
        *,
        permission_mode: str | None = None,
        fork_session: bool = False,
        agent_name: str | None = None,
        initial_message: str | None = None,
    ) -> dict[str, Any]:
        """Resume a saved session. Returns {processId, sessionId, resumed}."""
        options = LaunchOptions(
            project_path=project_path,
            session_id=session_id,
            resume=True,
            fork_session=fork_session,
            permission_mode=permission_mode,
            agent_name=agent_name,
            initial_message=initial_message,
        )
        return await self._launch(options)

    async def send_message(
        self,
        process_id: str,
        message: str,
        project_path: str | None = None,
    ) -> dict[str, Any]:
        """Deliver *message* to a live session.

        Raises ProcessNotFoundError / ProcessInactiveError when the
        process cannot take input.
        """
        entry = self._registry.require(process_id)
        if project_path and project_path != entry.project_path:
            logger.warning(
                "send_message project mismatch process=%s given=%s registered=%s",
                process_id, project_path, entry.project_path,
            )
        logger.info("send_message process=%s session=%s chars=%d", process_id, entry.session_id, len(message))
        if entry.handle.per_turn:
            self._schedule_turn(entry, message)
        else:
            try:
                await entry.handle.write(message)
            except (OSError, RuntimeError) as exc:
                raise TransportError(process_id, str(exc)) from exc
        return {"success": True}

    async def stop(self, process_id: str) -> dict[str, Any]:
        """Stop a session. Idempotent; never raises."""
        entry = self._registry.lookup(process_id)
        if entry is None:
            logger.info("stop: unknown process=%s", process_id)
            return {"success": True, "message": "Process not found"}
        first = entry.mark_inactive()
        entry.cancellation.cancel()
        current = asyncio.current_task()
        for task in list(entry.tasks):
            if task is not current:
                task.cancel()

        if first and entry.handle.per_turn:
            try:
                await asyncio.wait_for(entry.handle.interrupt(), timeout=_INTERRUPT_TIMEOUT)
            except Exception as exc:
                logger.warning("stop: interrupt failed process=%s: %s", process_id, exc)

        # A concurrent stop may have removed it while we awaited the interrupt.
        if self._registry.remove(process_id) is not None:
            self._spawn_reaper(entry)
            logger.info("Process stopped process=%s session=%s", process_id, entry.session_id)
        return {"success": True}

    async def shutdown(self) -> None:
        """Stop every entry and wait for kill escalations to finish."""
        ids = [entry.process_id for entry in self._registry.entries()]
        if ids:
            logger.info("Shutting down %d session(s)", len(ids))
        await asyncio.gather(*(self.stop(pid) for pid in ids))
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

    # ── Launch ──

    async def _launch(self, options: LaunchOptions) -> dict[str, Any]:
        process_id = make_process_id()
        session_id = options.session_id or process_id
        reply: dict[str, Any] = {"processId": process_id, "sessionId": session_id}
        if options.resume:
            reply["resumed"] = True

        located = await self._locator.locate()
        if isinstance(located, ExecutableNotFound):
            logger.error("Launch aborted process=%s kind=%s", process_id, KIND_EXECUTABLE_NOT_FOUND)
            self._publish(ErrorEvent(
                process_id=process_id,
                session_id=session_id,
                content=located.message,
                kind=KIND_EXECUTABLE_NOT_FOUND,
            ))
            raise ExecutableNotFoundError(located)

        env = build_process_env(raw_cli=self.raw_transport)

        if options.resume:
            path = transcript_path(
                options.project_path, session_id, self._config.transcripts_root,
            )
            if not path.is_file():
                logger.warning(
                    "Resume aborted process=%s session=%s kind=%s path=%s",
                    process_id, session_id, KIND_SESSION_FILE_NOT_FOUND, path,
                )
                self._publish(ErrorEvent(
                    process_id=process_id,
                    session_id=session_id,
                    content=missing_session_message(session_id, str(path)),
                    kind=KIND_SESSION_FILE_NOT_FOUND,
                    path=str(path),
                ))
                return reply

        handle = self._handle_factory(options, located, env)
        entry = ProcessEntry(
            process_id=process_id,
            project_path=options.project_path,
            handle=handle,
            session_id=session_id,
        )
        self._registry.register(entry)

        try:
            await handle.open()
        except Exception as exc:
            logger.error(
                "Failed to open %s handle process=%s: %s", handle.kind, process_id, exc,
            )
            self._publish(ErrorEvent(
                process_id=process_id,
                session_id=session_id,
                content=f"Failed to start Claude: {exc}",
                kind=KIND_TRANSPORT,
            ))
            self._registry.remove(process_id)
            return reply

        if not entry.is_active:
            # stop() ran while open() was in flight; its reaper found nothing to close.
            logger.info("Stopped during open process=%s; closing handle", process_id)
            self._registry.remove(process_id)
            await self._close_handle(entry)
            return reply

        intro = (
            f"Resuming session {session_id}..." if options.resume
            else "Starting Claude session..."
        )
        self._adapter.emit(entry, SystemEvent(
            process_id=process_id,
            session_id=session_id,
            subtype="init",
            content=intro,
            cwd=options.project_path,
            project_path=options.project_path,
            permission_mode=options.permission_mode or self._config.default_permission_mode,
        ))
        logger.info(
            "Session launched process=%s session=%s transport=%s resume=%s",
            process_id, session_id, handle.kind, options.resume,
        )

        if handle.per_turn:
            if options.initial_message:
                self._schedule_turn(entry, options.initial_message)
        else:
            entry.track(asyncio.create_task(
                self._adapter.drain(entry), name=f"drain-{process_id}",
            ))
            if options.initial_message:
                try:
                    await handle.write(options.initial_message)
                except (OSError, RuntimeError) as exc:
                    self._adapter.fail(entry, exc)
        return reply

    # ── Turns ──

    def _schedule_turn(self, entry: ProcessEntry, message: str) -> None:
        entry.track(asyncio.create_task(
            self._run_turn(entry, message), name=f"turn-{entry.process_id}",
        ))

    async def _run_turn(self, entry: ProcessEntry, message: str) -> None:
        # The entry's lock is FIFO, so turns run in send order.
        async with entry.turn_lock:
            if not entry.is_active:
                return
            try:
                await entry.handle.write(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._adapter.fail(entry, exc)
                return
            await self._adapter.drain(entry)

    # ── Teardown ──

    def _release(self, entry: ProcessEntry) -> None:
        """Remove an entry whose process is gone and close its handle."""
        if self._registry.remove(entry.process_id) is None:
            return
        self._spawn_reaper(entry)

    def _spawn_reaper(self, entry: ProcessEntry) -> None:
        task = asyncio.create_task(
            self._close_handle(entry), name=f"reap-{entry.process_id}",
        )
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _close_handle(self, entry: ProcessEntry) -> None:
        try:
            await entry.handle.close(self._config.kill_grace_seconds)
        except Exception:
            logger.exception("Failed to close handle process=%s", entry.process_id)
