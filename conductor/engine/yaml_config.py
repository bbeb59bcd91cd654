"""YAML configuration loader.

Loads a single YAML file layered over the CONDUCTOR_* environment
defaults. When no YAML is provided, env vars work exactly as before.

Example YAML:
    orchestrator:
      transport: sdk            # or "subprocess" for the raw CLI
      model: claude-sonnet
      executable_name: claude
      extra_probe_paths:
        - /opt/tools/bin
      kill_grace_seconds: 2
      transcripts_root: ~/.claude/projects

    models:
      fast:
        model_id: claude-3-5-haiku-20241022
"""
from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path

import yaml

from .config import OrchestratorConfig

logger = logging.getLogger(__name__)

# Built-in Claude family aliases so users can write "claude-sonnet"
# instead of the full versioned model ID.
_BUILTIN_CLAUDE_ALIASES: dict[str, str] = {
    "claude-opus": "claude-opus-4-20250514",
    "claude-sonnet": "claude-sonnet-4-20250514",
    "claude-haiku": "claude-3-5-haiku-20241022",
}

_CONFIG_CANDIDATES = (
    Path(".conductor") / "conductor.yaml",
    Path("conductor.yaml"),
)


# OrchestratorConfig annotations are strings under postponed evaluation.
_SCALAR_CASTS = {"str": str, "int": int, "float": float}


def _coerce(key: str, type_name: str, value):
    """Cast a YAML value to the config field's type; ValueError if it can't be."""
    optional = type_name.endswith("| None")
    base_name = type_name.replace("| None", "").strip()
    if value is None:
        if optional:
            return None
        raise ValueError(f"orchestrator.{key} must not be empty")
    if base_name.startswith("list"):
        if not isinstance(value, list):
            raise ValueError(f"orchestrator.{key} must be a list, got {value!r}")
        return [str(item) for item in value]
    cast = _SCALAR_CASTS.get(base_name)
    if cast is None:
        return value
    if isinstance(value, bool) or isinstance(value, (dict, list)):
        raise ValueError(f"orchestrator.{key} must be {base_name}, got {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"orchestrator.{key} must be {base_name}, got {value!r}") from exc


def resolve_model_alias(alias: str, models: dict[str, dict] | None = None) -> str:
    """Resolve a model alias to a model id.

    Resolution order:
    1. YAML ``models:`` section (explicit user config)
    2. Built-in Claude family aliases (``claude-sonnet``, etc.)
    3. Falls back to treating *alias* as a raw model id.
    """
    if models and alias in models:
        entry = models[alias] or {}
        model_id = entry.get("model_id") if isinstance(entry, dict) else None
        if model_id:
            return str(model_id)
    return _BUILTIN_CLAUDE_ALIASES.get(alias, alias)


def discover_config_path(cwd: str | Path) -> Path | None:
    """Return the first existing config file under *cwd*, if any."""
    root = Path(cwd)
    for candidate in _CONFIG_CANDIDATES:
        path = root / candidate
        logger.debug("discover_config_path: checking %s (exists=%s)", path, path.is_file())
        if path.is_file():
            return path
    return None


def load_yaml_config(
    path: str | Path,
    base: OrchestratorConfig | None = None,
) -> OrchestratorConfig:
    """Load and parse a YAML config file.

    Values in the ``orchestrator:`` section override *base* (by default
    the environment-derived config). Unknown keys are logged and
    ignored; an unknown transport raises ValueError.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config root in {path} must be a mapping")

    config = base or OrchestratorConfig.from_env()
    section = raw.get("orchestrator") or {}
    if not isinstance(section, dict):
        raise ValueError(f"'orchestrator' section in {path} must be a mapping")

    field_types = {f.name: f.type for f in fields(OrchestratorConfig)}
    for key, value in section.items():
        if key not in field_types:
            logger.warning("load_yaml_config: ignoring unknown key orchestrator.%s", key)
            continue
        value = _coerce(key, field_types[key], value)
        if key == "transcripts_root" and isinstance(value, str):
            value = os.path.expanduser(value)
        if key == "extra_probe_paths":
            value = [os.path.expanduser(p) for p in value]
        setattr(config, key, value)

    config.model = resolve_model_alias(config.model, raw.get("models"))
    config.validate()

    logger.info(
        "Parsed YAML config %s: transport=%s model=%s executable=%s",
        path.name, config.transport, config.model, config.executable_name,
    )
    return config
