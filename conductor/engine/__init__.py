"""Claude CLI session orchestration engine."""
from .models import (
    DEFAULT_PERMISSION_MODES,
    CancellationToken,
    LaunchOptions,
    PermissionMode,
    ProcessEntry,
    Transport,
    make_process_id,
)
from .config import OrchestratorConfig
from .errors import (
    ExecutableNotFoundError,
    OrchestrationError,
    ProcessAlreadyRegisteredError,
    ProcessInactiveError,
    ProcessNotFoundError,
    SessionFileNotFoundError,
    TransportError,
)

__all__ = [
    # Models
    "DEFAULT_PERMISSION_MODES",
    "CancellationToken",
    "LaunchOptions",
    "PermissionMode",
    "ProcessEntry",
    "Transport",
    "make_process_id",
    # Config
    "OrchestratorConfig",
    "load_yaml_config",
    # Components (lazy import)
    "ExecutableLocator",
    "ProcessRegistry",
    "SessionLauncher",
    "MessageStreamAdapter",
    "QueryHandle",
    "SubprocessHandle",
    # Errors
    "ExecutableNotFoundError",
    "OrchestrationError",
    "ProcessAlreadyRegisteredError",
    "ProcessInactiveError",
    "ProcessNotFoundError",
    "SessionFileNotFoundError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ExecutableLocator":
        from .locator import ExecutableLocator
        return ExecutableLocator
    if name == "ProcessRegistry":
        from .registry import ProcessRegistry
        return ProcessRegistry
    if name == "SessionLauncher":
        from .launcher import SessionLauncher
        return SessionLauncher
    if name == "MessageStreamAdapter":
        from .stream import MessageStreamAdapter
        return MessageStreamAdapter
    if name == "QueryHandle":
        from .handles import QueryHandle
        return QueryHandle
    if name == "SubprocessHandle":
        from .handles import SubprocessHandle
        return SubprocessHandle
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
