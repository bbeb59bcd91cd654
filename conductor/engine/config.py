"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONDUCTOR_* env vars,
or via a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .models import Transport

logger = logging.getLogger(__name__)

INSTALL_COMMAND = "npm install -g @anthropic-ai/claude-code"


def _split_paths(value: str) -> list[str]:
    return [p for p in value.split(os.pathsep) if p.strip()]


@dataclass
class OrchestratorConfig:
    """Session orchestrator configuration."""

    # CLI discovery
    executable_name: str = "claude"
    install_command: str = INSTALL_COMMAND
    # Extra install locations probed before the built-in list.
    extra_probe_paths: list[str] = field(default_factory=list)
    # Max time for the login-shell `which` fallback and `--version` calls.
    probe_timeout_seconds: float = 10.0

    # Session defaults
    model: str = "claude-sonnet-4-20250514"
    transport: str = Transport.SDK.value
    default_permission_mode: str = "default"
    setting_sources: list[str] = field(default_factory=lambda: ["user", "project"])
    query_once_max_turns: int = 10

    # Root of the CLI's per-project transcript directories.
    # None means ~/.claude/projects.
    transcripts_root: str | None = None

    # SIGTERM -> SIGKILL escalation window for raw subprocesses.
    kill_grace_seconds: float = 2.0

    # Client-side chunk coalescing window.
    chunk_debounce_seconds: float = 0.03

    # Per-subscriber queue size for SSE consumers.
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Load configuration from CONDUCTOR_* environment variables."""
        conductor_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONDUCTOR_")
        }
        if conductor_vars:
            logger.info(
                "OrchestratorConfig.from_env: CONDUCTOR_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(conductor_vars.items())),
            )
        else:
            logger.debug("OrchestratorConfig.from_env: no CONDUCTOR_* env vars set, using defaults")

        config = cls(
            executable_name=os.getenv(
                "CONDUCTOR_EXECUTABLE", cls.executable_name
            ),
            install_command=os.getenv(
                "CONDUCTOR_INSTALL_COMMAND", cls.install_command
            ),
            extra_probe_paths=_split_paths(
                os.getenv("CONDUCTOR_PROBE_PATHS", "")
            ),
            probe_timeout_seconds=float(os.getenv(
                "CONDUCTOR_PROBE_TIMEOUT", str(cls.probe_timeout_seconds)
            )),
            model=os.getenv("CONDUCTOR_MODEL", cls.model),
            transport=os.getenv("CONDUCTOR_TRANSPORT", cls.transport),
            default_permission_mode=os.getenv(
                "CONDUCTOR_PERMISSION_MODE", cls.default_permission_mode
            ),
            query_once_max_turns=int(os.getenv(
                "CONDUCTOR_QUERY_MAX_TURNS", str(cls.query_once_max_turns)
            )),
            transcripts_root=os.getenv("CONDUCTOR_TRANSCRIPTS_ROOT") or None,
            kill_grace_seconds=float(os.getenv(
                "CONDUCTOR_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            chunk_debounce_seconds=float(os.getenv(
                "CONDUCTOR_CHUNK_DEBOUNCE", str(cls.chunk_debounce_seconds)
            )),
            event_queue_size=int(os.getenv(
                "CONDUCTOR_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            log_level=os.getenv("CONDUCTOR_LOG_LEVEL", cls.log_level),
        )
        config.validate()
        logger.info(
            "OrchestratorConfig.from_env: executable=%s transport=%s model=%s log_level=%s",
            config.executable_name, config.transport,
            config.model, config.log_level,
        )
        return config

    def validate(self) -> None:
        """Raise ValueError for settings that cannot work."""
        valid = {t.value for t in Transport}
        if self.transport not in valid:
            raise ValueError(
                f"Unknown transport '{self.transport}'. "
                f"Expected one of: {', '.join(sorted(valid))}"
            )
        if self.kill_grace_seconds < 0:
            raise ValueError("kill_grace_seconds must be >= 0")
        if self.probe_timeout_seconds <= 0:
            raise ValueError("probe_timeout_seconds must be > 0")
