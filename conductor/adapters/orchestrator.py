"""Orchestrator facade: the single object a UI bridge talks to.

Owns the executable locator, process registry, event broadcaster and
session launcher. Constructed explicitly (no module-level singletons)
and torn down with shutdown().
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from conductor.adapters.event_bus import EventBroadcaster, EventQueue, Listener
from conductor.adapters.events import ResultEvent
from conductor.client.reducer import ClientStreamReducer
from conductor.engine.config import OrchestratorConfig
from conductor.engine.environment import build_process_env
from conductor.engine.errors import ExecutableNotFoundError
from conductor.engine.launcher import HandleFactory, SessionLauncher
from conductor.engine.locator import ExecutableLocator, ExecutableNotFound
from conductor.engine.models import DEFAULT_PERMISSION_MODES, make_process_id
from conductor.engine.registry import ProcessRegistry
from conductor.engine.stream import normalize

logger = logging.getLogger(__name__)

_PERMISSION_CHOICES_RE = re.compile(r"--permission-mode.*?choices:\s*([^)]+)\)", re.DOTALL)


def parse_permission_modes(help_text: str) -> list[str] | None:
    """Pull the --permission-mode choices out of `claude --help` output."""
    match = _PERMISSION_CHOICES_RE.search(help_text)
    if not match:
        return None
    modes = [m.strip().strip("\"'") for m in match.group(1).split(",")]
    modes = [m for m in modes if m]
    return modes or None


class Orchestrator:
    """Facade over locator, registry, broadcaster and launcher."""

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        locator: ExecutableLocator | None = None,
        registry: ProcessRegistry | None = None,
        broadcaster: EventBroadcaster | None = None,
        handle_factory: HandleFactory | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig.from_env()
        self.locator = locator or ExecutableLocator(
            self.config.executable_name,
            install_command=self.config.install_command,
            extra_paths=self.config.extra_probe_paths,
            timeout_seconds=self.config.probe_timeout_seconds,
        )
        self.registry = registry or ProcessRegistry()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.launcher = SessionLauncher(
            self.config,
            self.locator,
            self.registry,
            self.broadcaster.publish,
            handle_factory=handle_factory,
        )
        self._permission_modes: list[str] | None = None
        self._closed = False

    # ── Subscriptions ──

    def subscribe(self, listener: Listener):
        return self.broadcaster.subscribe(listener)

    def open_queue(self) -> EventQueue:
        return self.broadcaster.open_queue(self.config.event_queue_size)

    def make_reducer(self, on_change=None) -> ClientStreamReducer:
        """Client-side reducer attached to this orchestrator's events."""
        reducer = ClientStreamReducer(
            debounce_seconds=self.config.chunk_debounce_seconds,
            on_change=on_change,
        )
        reducer.attach(self.broadcaster)
        return reducer

    # ── Executable ──

    async def check_availability(self) -> dict[str, Any]:
        """Report whether the CLI can be found and which version it is."""
        located = await self.locator.locate()
        if isinstance(located, ExecutableNotFound):
            return {
                "available": False,
                "error": located.message,
                "installCommand": located.install_command,
            }
        version = self.locator.cached_version or await self.locator.version(located)
        if version is None:
            logger.warning("check_availability: %s did not report a version", located)
            return {
                "available": False,
                "executablePath": located,
                "error": self.locator.not_found().message,
                "installCommand": self.locator.install_command,
            }
        return {"available": True, "version": version, "executablePath": located}

    def invalidate_executable(self) -> None:
        self.locator.invalidate()
        self._permission_modes = None

    async def list_permission_modes(self) -> dict[str, Any]:
        """Permission modes advertised by `claude --help`, cached."""
        if self._permission_modes is not None:
            return {"modes": list(self._permission_modes)}

        modes: list[str] | None = None
        located = await self.locator.locate()
        if isinstance(located, str):
            modes = await self._probe_permission_modes(located)
        if modes is None:
            logger.info("Using default permission modes")
            modes = list(DEFAULT_PERMISSION_MODES)
        self._permission_modes = modes
        return {"modes": list(modes)}

    async def _probe_permission_modes(self, executable: str) -> list[str] | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, "--help",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=build_process_env(),
            )
        except OSError as exc:
            logger.warning("Permission mode probe could not start: %s", exc)
            return None
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.probe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Permission mode probe timed out")
            proc.kill()
            await proc.wait()
            return None
        modes = parse_permission_modes(stdout.decode("utf-8", errors="replace"))
        logger.info("Permission modes from --help: %s", modes)
        return modes

    # ── Sessions ──

    async def start_session(self, project_path: str, **opts: Any) -> dict[str, Any]:
        return await self.launcher.start(project_path, **opts)

    async def resume_session(
        self, project_path: str, session_id: str, **opts: Any,
    ) -> dict[str, Any]:
        return await self.launcher.resume(project_path, session_id, **opts)

    async def send_message(
        self, process_id: str, message: str, project_path: str | None = None,
    ) -> dict[str, Any]:
        return await self.launcher.send_message(process_id, message, project_path)

    async def stop_session(self, process_id: str) -> dict[str, Any]:
        return await self.launcher.stop(process_id)

    def list_active_sessions(self) -> dict[str, Any]:
        ids = self.registry.list_active()
        return {"processIds": ids, "count": len(ids)}

    async def query_once(
        self,
        prompt: str,
        project_path: str,
        permission_mode: str | None = None,
        max_turns: int | None = None,
    ) -> dict[str, Any]:
        """Run a single non-interactive query without registering a session.

        Events are still published under a fresh process id so a UI can
        render the exchange.
        """
        from claude_agent_sdk import ClaudeAgentOptions, query

        located = await self.locator.locate()
        if isinstance(located, ExecutableNotFound):
            raise ExecutableNotFoundError(located)

        process_id = make_process_id()
        options = ClaudeAgentOptions(
            cwd=project_path,
            cli_path=located,
            permission_mode=permission_mode or self.config.default_permission_mode,
            model=self.config.model,
            max_turns=max_turns or self.config.query_once_max_turns,
            env=build_process_env(),
            setting_sources=list(self.config.setting_sources),
        )
        logger.info("query_once process=%s project=%s", process_id, project_path)

        count = 0
        session_id: str | None = None
        final: ResultEvent | None = None
        async for message in query(prompt=prompt, options=options):
            event = normalize(message, process_id, session_id)
            if event is None:
                continue
            count += 1
            session_id = event.session_id or session_id
            if isinstance(event, ResultEvent):
                final = event
            self.broadcaster.publish(event)

        return {
            "processId": process_id,
            "result": final.result if final else None,
            "totalCostUsd": final.total_cost_usd if final else None,
            "isError": (not final.succeeded) if final else True,
            "messageCount": count,
        }

    async def shutdown(self) -> None:
        """Stop every session and drop subscribers. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.launcher.shutdown()
        self.broadcaster.close()
        logger.info("Orchestrator shut down")
