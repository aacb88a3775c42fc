"""devserve CLI: main application entry point.

Usage:
    devserve --server [--host HOST] [--port PORT] [--config FILE]
    devserve path/to/worktree [--project PATH]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from devserve.engine.config import DevServerConfig


def _configure_logging(level_name: str, log_file: Path | None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


def _load_config(config_path: str | None) -> DevServerConfig:
    """Env config, with an explicit or auto-discovered YAML file on top."""
    log = logging.getLogger(__name__)
    if not config_path:
        candidate = Path.cwd() / ".devserve.yaml"
        if candidate.exists():
            config_path = str(candidate)
            log.info("Auto-discovered config: %s", config_path)
    if not config_path:
        return DevServerConfig.from_env()

    from devserve.engine.yaml_config import load_yaml_config

    return load_yaml_config(config_path)


def _log_level(config: DevServerConfig, verbose: bool) -> str:
    """-v wins over DEVSERVE_LOG_LEVEL and the YAML logging.level."""
    return "DEBUG" if verbose else config.log_level


async def _run_single(config: DevServerConfig, worktree: str, project: str) -> int:
    """Run one worktree's dev server in the foreground until interrupted."""
    from devserve.adapters.event_bus import EventBus
    from devserve.adapters.events import DevServerOutput, DevServerStopped
    from devserve.engine.registry import DevServerRegistry

    bus = EventBus()
    config.event_callback = bus.make_callback()
    registry = DevServerRegistry(config)

    result = await registry.start(project, worktree)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(f"Dev server running at {result.result['url']} (Ctrl-C to stop)", file=sys.stderr)

    exit_code = 0
    try:
        async for event in bus.consume(result.result["worktree_path"]):
            if isinstance(event, DevServerOutput):
                sys.stdout.write(event.content)
                sys.stdout.flush()
            elif isinstance(event, DevServerStopped):
                print(
                    f"\nDev server stopped (exit code {event.exit_code})",
                    file=sys.stderr,
                )
                exit_code = 0 if event.exit_code in (0, None) else 1
                break
    finally:
        bus.close()
        await registry.stop_all()
    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="devserve",
        description="Per-worktree development server orchestrator",
    )
    parser.add_argument(
        "worktree",
        nargs="?",
        default=None,
        help="Run this worktree's dev server in the foreground",
    )
    parser.add_argument(
        "--project",
        default=None,
        help="Project root the worktree belongs to (default: the worktree)",
    )
    parser.add_argument(
        "--server",
        action="store_true",
        help="Run the HTTP + SSE API server",
    )
    parser.add_argument("--host", default="127.0.0.1", help="API server host")
    parser.add_argument(
        "--port",
        type=int,
        default=0,
        help="API server port (default: any free port)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file (default: ./.devserve.yaml if present)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    if args.server:
        log_file = Path.home() / ".devserve" / "logs" / "devserve.log"
        config = _load_config(args.config)
        _configure_logging(_log_level(config, args.verbose), log_file)
        logging.getLogger(__name__).info(
            "Starting devserve server mode cwd=%s port=%s config=%s log=%s",
            Path.cwd(), args.port, args.config or "<none>", log_file,
        )
        from devserve.web.server import DevServeServer

        server = DevServeServer(host=args.host, port=args.port, config=config)
        asyncio.run(server.run_forever())
        sys.exit(0)

    if not args.worktree:
        parser.print_usage(sys.stderr)
        print("Error: Provide a worktree path or --server.", file=sys.stderr)
        sys.exit(2)

    config = _load_config(args.config)
    _configure_logging(_log_level(config, args.verbose), None)
    worktree = str(Path(args.worktree).resolve())
    project = str(Path(args.project).resolve()) if args.project else worktree
    try:
        code = asyncio.run(_run_single(config, worktree, project))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
