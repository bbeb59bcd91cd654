"""Locate and cache the claude CLI executable.

Probes well-known install locations first, then falls back to a login
shell `which` with an explicit PATH. The first success is cached for the
life of the locator; invalidate() forces a fresh probe (e.g. after the
user installs the CLI while the app is running).
"""
from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from .config import INSTALL_COMMAND
from .environment import shell_probe_env

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKER = "NOT_FOUND"


@dataclass(frozen=True)
class ExecutableNotFound:
    """Returned (never raised) when no probe finds the CLI."""
    message: str
    install_command: str = INSTALL_COMMAND
    probed_paths: tuple[str, ...] = field(default_factory=tuple)


class ExecutableLocator:
    """Finds the CLI binary and caches its path.

    Concurrent locate() calls share one in-flight probe. A probe that
    started before invalidate() never writes its result into the cache.
    """

    def __init__(
        self,
        executable_name: str = "claude",
        *,
        install_command: str = INSTALL_COMMAND,
        extra_paths: list[str] | None = None,
        timeout_seconds: float = 10.0,
        home: str | None = None,
        shell: str | None = None,
    ) -> None:
        self._name = executable_name
        self._install_command = install_command
        self._extra_paths = list(extra_paths or [])
        self._timeout = timeout_seconds
        self._home = home or str(Path.home())
        self._shell = shell
        self._cached_path: str | None = None
        self._cached_version: str | None = None
        self._generation = 0
        self._inflight: asyncio.Future | None = None

    @property
    def executable_name(self) -> str:
        return self._name

    @property
    def install_command(self) -> str:
        return self._install_command

    @property
    def cached_path(self) -> str | None:
        return self._cached_path

    @property
    def cached_version(self) -> str | None:
        """Version string captured by the login-shell probe, if it ran."""
        return self._cached_version

    def candidate_paths(self) -> list[str]:
        """Ordered list of install locations checked before the shell fallback."""
        home = self._home
        name = self._name
        dirs = [
            *self._extra_paths,
            os.path.join(home, ".local", "bin"),
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/usr/bin",
            os.path.join(home, ".npm-global", "bin"),
            os.path.join(home, ".volta", "bin"),
            os.path.join(home, ".nvm", "versions", "node", "current", "bin"),
        ]
        return [os.path.join(d, name) for d in dirs]

    def not_found(self) -> ExecutableNotFound:
        return ExecutableNotFound(
            message=(
                f"Claude Code CLI not found. Please install it: "
                f"{self._install_command}"
            ),
            install_command=self._install_command,
            probed_paths=tuple(self.candidate_paths()),
        )

    def invalidate(self) -> None:
        """Forget the cached path; the next locate() probes again."""
        self._generation += 1
        self._cached_path = None
        self._cached_version = None
        self._inflight = None
        logger.info("Executable cache invalidated name=%s generation=%d", self._name, self._generation)

    async def locate(self) -> str | ExecutableNotFound:
        """Return the CLI path, or an ExecutableNotFound describing the failure."""
        if self._cached_path is not None:
            return self._cached_path

        inflight = self._inflight
        if inflight is None:
            inflight = asyncio.ensure_future(self._probe(self._generation))
            self._inflight = inflight
            inflight.add_done_callback(self._clear_inflight)
        # Shield so one cancelled caller does not abort the shared probe.
        return await asyncio.shield(inflight)

    def _clear_inflight(self, fut: asyncio.Future) -> None:
        if self._inflight is fut:
            self._inflight = None

    async def _probe(self, generation: int) -> str | ExecutableNotFound:
        path = self._probe_known_paths()
        version: str | None = None
        if path is None:
            path, version = await self._probe_login_shell()
        if path is None:
            logger.warning(
                "Executable probe failed name=%s candidates=%d",
                self._name, len(self.candidate_paths()),
            )
            return self.not_found()

        if generation == self._generation:
            self._cached_path = path
            self._cached_version = version
        else:
            logger.debug(
                "Discarding probe result from stale generation=%d (current=%d)",
                generation, self._generation,
            )
        logger.info("Found executable name=%s path=%s", self._name, path)
        return path

    def _probe_known_paths(self) -> str | None:
        for candidate in self.candidate_paths():
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        return None

    def _resolve_shell(self) -> str:
        if self._shell:
            return self._shell
        shell = os.environ.get("SHELL")
        if shell:
            return shell
        return "/bin/zsh" if os.path.exists("/bin/zsh") else "/bin/sh"

    async def _probe_login_shell(self) -> tuple[str | None, str | None]:
        """Ask a login shell for `which <name>` and `<name> --version`."""
        name = shlex.quote(self._name)
        script = (
            f"which {name} 2>/dev/null && {name} --version 2>/dev/null "
            f"|| echo {_NOT_FOUND_MARKER}"
        )
        shell = self._resolve_shell()
        try:
            proc = await asyncio.create_subprocess_exec(
                shell, "-l", "-c", script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=shell_probe_env(self._home),
            )
        except OSError as exc:
            logger.warning("Login shell probe could not start shell=%s: %s", shell, exc)
            return None, None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Login shell probe timed out after %.1fs shell=%s", self._timeout, shell)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None, None

        return parse_shell_probe_output(stdout.decode("utf-8", errors="replace"))

    async def version(self, path: str) -> str | None:
        """Run `<path> --version`; None when it fails or prints nothing."""
        try:
            proc = await asyncio.create_subprocess_exec(
                path, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.debug("Version check could not start path=%s: %s", path, exc)
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip() or None


def parse_shell_probe_output(output: str) -> tuple[str | None, str | None]:
    """Split `which` + `--version` output into (path, version)."""
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    if not lines or lines[0] == _NOT_FOUND_MARKER:
        return None, None
    path = lines[0]
    if not os.path.isabs(path):
        # Shell aliases/functions print something that is not a path.
        return None, None
    version_lines = [line for line in lines[1:] if line != _NOT_FOUND_MARKER]
    version = "\n".join(version_lines).strip() or None
    return path, version
