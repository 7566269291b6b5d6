"""Command line entry point for the Orbit development server.

Commands:
    dev     Serve a project, watch its sources and push live updates
    attach  Connect a headless live-update client to a running dev server
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import socket
import sys
import webbrowser
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn

from orbit_devserver.api_server import create_app
from orbit_devserver.client_runtime import ClientRuntime
from orbit_devserver.config import ConfigurationError, LoggingSettings, Settings, get_config
from orbit_devserver.dev_server import DevServer

logger = logging.getLogger(__name__)


class PortBindError(Exception):
    """Raised when the HTTP or live-update port cannot be bound at startup."""

    def __init__(self, message: str, port: int) -> None:
        super().__init__(message)
        self.port = port


def configure_logging(settings: LoggingSettings, debug: bool = False) -> None:
    """Configure root logging from settings (console plus optional rotating file).

    Debug mode forces the DEBUG level regardless of the configured one.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.file_path:
        handlers.append(
            RotatingFileHandler(
                settings.file_path,
                maxBytes=settings.max_file_size_mb * 1024 * 1024,
                backupCount=3,
            )
        )

    logging.basicConfig(
        level="DEBUG" if debug else settings.level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orbit-dev", description="Orbit development server with hot module reload"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    dev = subparsers.add_parser("dev", help="Start the development server")
    dev.add_argument("-p", "--port", type=int, help="HTTP port (live updates use port + 1)")
    dev.add_argument("-d", "--dir", type=Path, help="Project directory (default: cwd)")
    dev.add_argument("-o", "--open", action="store_true", help="Open in browser")
    dev.add_argument(
        "--beta", action="store_true", help="Use the secondary (beta) toolchain for builds"
    )
    dev.add_argument("--debounce-ms", type=int, help="Minimum time between rebuilds")
    dev.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")

    attach = subparsers.add_parser("attach", help="Follow live updates from a running server")
    attach.add_argument("--url", default="ws://127.0.0.1:8001", help="Live-update server URL")
    attach.add_argument("--page", default="/", help="Page path to register under")

    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Return settings with command line options applied on top."""
    updates: dict[str, dict] = {"server": {}, "hmr": {}, "build": {}, "logging": {}}
    if args.port is not None:
        updates["server"]["port"] = args.port
    if args.open:
        updates["server"]["auto_open"] = True
    if args.beta:
        updates["build"]["use_secondary_toolchain"] = True
    if args.debounce_ms is not None:
        updates["hmr"]["debounce_ms"] = args.debounce_ms
    if args.log_level:
        updates["logging"]["level"] = args.log_level

    data = settings.model_dump()
    for section, values in updates.items():
        data[section].update(values)
    return Settings.model_validate(data)


def bind_socket(host: str, port: int) -> socket.socket:
    try:
        return socket.create_server((host, port))
    except OSError as e:
        raise PortBindError(f"Failed to bind {host}:{port}: {e}", port) from e


async def serve(dev_server: DevServer) -> None:
    """Run the HTTP and live-update listeners until the server is stopped."""
    settings = dev_server.settings
    sockets = [
        bind_socket(settings.server.host, settings.server.port),
        bind_socket(settings.server.host, settings.server.transport_port),
    ]

    config = uvicorn.Config(
        create_app(dev_server),
        log_config=None,
        log_level="debug" if settings.debug else settings.logging.level.lower(),
        lifespan="on",
    )
    server = uvicorn.Server(config)

    url = f"http://localhost:{settings.server.port}"
    logger.info(f"Development server running at {url}")
    if settings.server.auto_open:
        try:
            webbrowser.open(url)
        except Exception as e:
            logger.error(f"Failed to open browser: {e}")

    try:
        await server.serve(sockets=sockets)
    finally:
        for sock in sockets:
            sock.close()


def run_dev(args: argparse.Namespace) -> int:
    project_dir = (args.dir or Path.cwd()).resolve()

    try:
        settings = apply_overrides(get_config(project_dir), args)
    except (ConfigurationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging(settings.logging, debug=settings.debug)

    if settings.build.use_secondary_toolchain:
        logger.info(
            f"Starting development server with {settings.build.secondary_toolchain} toolchain "
            f"for project at {project_dir}"
        )
    else:
        logger.info(f"Starting development server for project at {project_dir}")

    try:
        asyncio.run(serve(DevServer(settings, project_dir)))
    except PortBindError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Development server interrupted by user")
    return 0


def create_attach_runtime(settings: Settings, args: argparse.Namespace) -> ClientRuntime:
    """Headless client following the configured reconnect policy."""
    return ClientRuntime(
        args.url,
        page_path=args.page,
        reconnect_interval=settings.hmr.reconnect_interval_ms / 1000.0,
        max_reconnect_attempts=settings.hmr.reconnect_max_attempts,
    )


def run_attach(args: argparse.Namespace) -> int:
    try:
        settings = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging(settings.logging, debug=settings.debug)
    runtime = create_attach_runtime(settings, args)

    async def _attach() -> None:
        await runtime.connect()
        try:
            await runtime.wait_closed()
        finally:
            await runtime.close()

    try:
        asyncio.run(_attach())
    except KeyboardInterrupt:
        logger.info("Detached")
    return 1 if runtime.gave_up else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "dev":
        return run_dev(args)
    return run_attach(args)
