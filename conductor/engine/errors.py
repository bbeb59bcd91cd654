"""Exception hierarchy for the session orchestrator.

Specific exceptions for each synchronous failure mode. Failures that
happen mid-stream are reported as error events instead (see stream.py).
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .locator import ExecutableNotFound


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class ExecutableNotFoundError(OrchestrationError):
    """The claude CLI could not be located by any probe."""
    def __init__(self, condition: ExecutableNotFound):
        self.condition = condition
        super().__init__(condition.message)


class SessionFileNotFoundError(OrchestrationError):
    """Resume was requested for a session whose transcript is missing."""
    def __init__(self, session_id: str, path: str):
        self.session_id = session_id
        self.path = path
        super().__init__(f"Session file not found: {path}")


class ProcessNotFoundError(OrchestrationError):
    """No registry entry exists for the process id."""
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Process not found: {process_id}")


class ProcessInactiveError(OrchestrationError):
    """The registry entry exists but has been marked inactive."""
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Process is no longer active: {process_id}")


class ProcessAlreadyRegisteredError(OrchestrationError):
    """A second entry was registered under an existing process id."""
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Process already registered: {process_id}")


class TransportError(OrchestrationError):
    """The child process or SDK query failed while being driven."""
    def __init__(self, process_id: str, reason: str):
        self.process_id = process_id
        self.reason = reason
        super().__init__(f"Transport failure for process {process_id}: {reason}")
