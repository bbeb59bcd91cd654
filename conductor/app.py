"""Conductor CLI: main application entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

_TRUTHY = {"1", "true", "yes", "on"}


def _configure_server_logging(log_level: str) -> Path:
    """Rotating file log plus stderr, shared by every conductor module."""
    log_dir = Path.home() / ".conductor" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "conductor-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(config_path: str | None):
    """Env defaults, overlaid by an explicit or auto-discovered YAML file."""
    from conductor.engine.config import OrchestratorConfig
    from conductor.engine.yaml_config import discover_config_path, load_yaml_config

    logger = logging.getLogger(__name__)
    config = OrchestratorConfig.from_env()
    if config_path:
        explicit = Path(config_path)
        logger.info("Using explicit config path: %s (exists=%s)", explicit, explicit.exists())
        return load_yaml_config(explicit, base=config)
    discovered = discover_config_path(Path.cwd())
    if discovered is not None:
        logger.info("Auto-discovered config: %s", discovered)
        return load_yaml_config(discovered, base=config)
    return config


def _reap_orphans() -> None:
    from conductor.shared.services.process_cleanup import cleanup_orphaned_cli_processes

    logger = logging.getLogger(__name__)
    if os.getenv("CONDUCTOR_REAP_ORPHANS", "0").lower() not in _TRUTHY:
        return
    try:
        reaped = cleanup_orphaned_cli_processes(log=logger.info)
        if reaped:
            logger.warning("Reaped %d orphaned claude process(es) at startup", reaped)
    except Exception:
        logger.exception("Startup orphan cleanup failed")


async def _run_once(coro_factory, config_path: str | None = None) -> dict:
    from conductor.adapters.orchestrator import Orchestrator

    orchestrator = Orchestrator(_load_config(config_path))
    try:
        return await coro_factory(orchestrator)
    finally:
        await orchestrator.shutdown()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor: headless orchestrator for Claude Code CLI sessions",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for the orchestrator",
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Print Claude CLI availability as JSON and exit",
    )
    parser.add_argument(
        "--permission-modes", action="store_true",
        help="Print the permission modes the CLI accepts and exit",
    )
    args = parser.parse_args()

    if args.check:
        logging.basicConfig(level=logging.WARNING)
        result = asyncio.run(_run_once(lambda o: o.check_availability(), args.config))
        print(json.dumps(result, indent=2))
        sys.exit(0 if result.get("available") else 1)

    if args.permission_modes:
        logging.basicConfig(level=logging.WARNING)
        result = asyncio.run(_run_once(lambda o: o.list_permission_modes(), args.config))
        for mode in result["modes"]:
            print(mode)
        sys.exit(0)

    if not args.server:
        parser.print_help()
        sys.exit(2)

    from conductor.adapters.orchestrator import Orchestrator
    from conductor.server.server import ConductorServer

    log_file = _configure_server_logging(os.getenv("CONDUCTOR_LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting conductor server mode cwd=%s port=%s config=%s log=%s",
        Path.cwd(), args.port, args.config or "<none>", log_file,
    )
    _reap_orphans()

    try:
        config = _load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)
    logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    server = ConductorServer(Orchestrator(config), host=args.host, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
