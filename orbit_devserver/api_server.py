"""FastAPI application serving project files and live-update connections.

This module provides the dev server's HTTP surface: static project files with
the live-update client injected into HTML pages, the client script itself, and
the WebSocket endpoint that browsers connect to on the live-update port.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, PlainTextResponse, Response
from pydantic import ValidationError

from orbit_devserver.broadcaster import Connection
from orbit_devserver.dev_server import DevServer
from orbit_devserver.html_inject import (
    CLIENT_SCRIPT_PATH,
    get_hmr_client_js,
    is_html_file,
    render_html_file,
)
from orbit_devserver.messages import parse_client_message

logger = logging.getLogger(__name__)


def create_app(dev_server: DevServer) -> FastAPI:
    """Create and configure the FastAPI application for one dev server.

    Args:
        dev_server: Dev server whose state and broadcaster back the endpoints

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Dev server starting up...")
        try:
            await dev_server.start()
            yield
        finally:
            logger.info("Dev server shutting down...")
            try:
                await dev_server.stop()
            except Exception as e:
                logger.error(f"Error stopping dev server: {e}")

    app = FastAPI(title="Orbit dev server", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.dev_server = dev_server

    # Only an explicitly configured live-update port is passed to the client
    injected_port = dev_server.settings.server.ws_port
    client_options = {
        "reconnect_interval_ms": dev_server.settings.hmr.reconnect_interval_ms,
        "reconnect_max_attempts": dev_server.settings.hmr.reconnect_max_attempts,
    }
    extra_headers = dev_server.settings.server.headers

    @app.middleware("http")
    async def add_configured_headers(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        for name, value in extra_headers.items():
            response.headers[name] = value
        return response

    @app.get(CLIENT_SCRIPT_PATH, include_in_schema=False)
    async def hmr_client_script() -> Response:
        return Response(
            content=get_hmr_client_js(),
            media_type="application/javascript",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/{requested:path}", include_in_schema=False)
    async def static_file(requested: str) -> Response:
        file_path = resolve_static_path(dev_server.static_root, requested)
        if file_path is None:
            return PlainTextResponse("File not found", status_code=404)

        if is_html_file(file_path):
            try:
                content = render_html_file(file_path, injected_port, **client_options)
                return Response(content=content, media_type="text/html")
            except (OSError, UnicodeDecodeError) as e:
                logger.error(f"Failed to process HTML file {file_path}, serving it as is: {e}")

        return FileResponse(file_path)

    @app.websocket("/")
    async def live_update_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = Connection(channel=websocket)

        if not await dev_server.broadcaster.register(connection):
            await websocket.close(code=1013, reason="Too many connections")
            return

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = parse_client_message(raw)
                except ValidationError:
                    logger.debug(f"Ignoring unknown client message: {raw[:200]}")
                    continue

                connection.path = message.url
                logger.debug(
                    f"Client {connection.connection_id} registered for path: {message.url}"
                )

        except WebSocketDisconnect:
            logger.debug(f"Client {connection.connection_id} closed the connection")

        except Exception as e:
            logger.error(f"WebSocket error for client {connection.connection_id}: {e}")

        finally:
            dev_server.broadcaster.unregister(connection)

    return app


def resolve_static_path(root: Path, requested: str) -> Path | None:
    """Map a request path to a file under ``root``.

    Directories resolve to their ``index.html``. Paths escaping the root or not
    naming an existing file yield None.
    """
    candidate = (root / requested.lstrip("/")).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        logger.warning(f"Rejected path outside static root: {requested}")
        return None

    if candidate.is_dir():
        candidate = candidate / "index.html"

    return candidate if candidate.is_file() else None
