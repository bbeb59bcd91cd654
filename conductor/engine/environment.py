"""Execution environment and transcript location helpers.

GUI-launched hosts often run with a PATH much shorter than a login
shell's, so every child gets HOME and the common bin directories
injected explicitly.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

# Login-shell PATH used when probing for the CLI with `$SHELL -l`.
MINIMAL_SHELL_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/local/sbin:/usr/sbin:/sbin"


def common_bin_dirs(home: str) -> list[str]:
    """Directories where npm, Homebrew and version managers put binaries."""
    return [
        os.path.join(home, ".local", "bin"),
        "/usr/local/bin",
        "/opt/homebrew/bin",
        os.path.join(home, ".volta", "bin"),
        os.path.join(home, ".nvm", "versions", "node", "current", "bin"),
        "/usr/bin",
        "/bin",
    ]


def _join_unique(parts: list[str]) -> str:
    seen: set[str] = set()
    ordered: list[str] = []
    for part in parts:
        for item in part.split(os.pathsep):
            if item and item not in seen:
                seen.add(item)
                ordered.append(item)
    return os.pathsep.join(ordered)


def build_process_env(
    base: Mapping[str, str] | None = None,
    home: str | None = None,
    *,
    raw_cli: bool = False,
) -> dict[str, str]:
    """Copy *base* (default: os.environ) with HOME and an augmented PATH.

    The host PATH stays first so user overrides win; the common bin
    directories are appended after it.
    """
    env = dict(os.environ if base is None else base)
    home = home or env.get("HOME") or str(Path.home())
    env["HOME"] = home
    env["PATH"] = _join_unique([env.get("PATH", ""), *common_bin_dirs(home)])
    # The CLI refuses to start when it thinks it is nested in another session.
    env.pop("CLAUDECODE", None)
    if raw_cli:
        env["CLAUDE_DONT_PRINT_STARTUP"] = "1"
    return env


def shell_probe_env(home: str | None = None) -> dict[str, str]:
    """Minimal environment for the login-shell `which` fallback."""
    home = home or str(Path.home())
    host_path = os.environ.get("PATH", "")
    return {
        "HOME": home,
        "PATH": _join_unique([
            host_path or MINIMAL_SHELL_PATH,
            MINIMAL_SHELL_PATH,
            os.path.join(home, ".local", "bin"),
        ]),
    }


def sanitize_project_path(project_path: str) -> str:
    """Mirror the CLI's project directory naming: separators become dashes."""
    return project_path.replace("/", "-").replace("\\", "-")


def default_transcripts_root(home: str | None = None) -> Path:
    return Path(home or Path.home()) / ".claude" / "projects"


def transcript_path(
    project_path: str,
    session_id: str,
    root: str | Path | None = None,
) -> Path:
    """Where the CLI persists the transcript for *session_id*."""
    base = Path(root) if root else default_transcripts_root()
    return base / sanitize_project_path(project_path) / f"{session_id}.jsonl"
