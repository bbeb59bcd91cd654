"""Best-effort cleanup for orphaned claude CLI children.

A conductor server that crashes (or is killed with SIGKILL) leaves its
claude children running with nobody reading their output. On startup
those can be reaped when CONDUCTOR_REAP_ORPHANS=1.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

# Signatures of CLI invocations conductor spawns. The SDK transport runs
# the CLI in stream-json mode; the raw transport passes --session-id or
# --resume together with CLAUDE_DONT_PRINT_STARTUP.
_MANAGED_PATTERNS = (
    r"\bclaude\b.*--output-format\s+stream-json",
    r"\bclaude\b.*--input-format\s+stream-json",
)
_CONDUCTOR_MARKERS = ("conductor --server", "conductor.app")


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return parse_process_table(out)


def parse_process_table(out: str) -> dict[int, ProcessInfo]:
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _has_conductor_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when the process tree includes a live conductor server."""
    cur = proc
    for _ in range(32):
        if cur.pid == current_pid:
            return True
        if any(marker in cur.args for marker in _CONDUCTOR_MARKERS):
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
    return False


def is_managed_candidate(args: str) -> bool:
    """Match claude invocations conductor may have spawned."""
    return any(re.search(pat, args) for pat in _MANAGED_PATTERNS)


def find_orphans(
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> list[ProcessInfo]:
    """Managed claude processes whose parent is gone or is PID 1."""
    orphans: list[ProcessInfo] = []
    for proc in table.values():
        if proc.pid == current_pid or not is_managed_candidate(proc.args):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan:
            continue
        if _has_conductor_ancestor(proc, table, current_pid):
            continue
        orphans.append(proc)
    return orphans


def cleanup_orphaned_cli_processes(
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned claude children. Returns how many were signalled."""
    pid = current_pid or os.getpid()
    logger = log or (lambda _: None)
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger(f"Process table unavailable, skipping cleanup: {exc}")
        return 0

    killed = 0
    for proc in find_orphans(table, pid):
        try:
            os.kill(proc.pid, signal.SIGTERM)
            killed += 1
            logger(
                f"Reaped orphaned claude process pid={proc.pid} "
                f"ppid={proc.ppid} cmd={proc.args[:180]}"
            )
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Failed to reap orphaned process pid={proc.pid}: {exc}")
    return killed
