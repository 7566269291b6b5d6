"""Headless live-update client mirroring the browser runtime.

This module provides ClientRuntime, an asyncio implementation of the injected
client's state machine: connect, register, classify incoming notices, apply HMR
updates through a registered handler and fall back to a reload when there is no
handler or it fails. Reconnects happen on a fixed interval up to a maximum
number of attempts.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import websockets
from pydantic import ValidationError

from orbit_devserver.messages import (
    FileChangeMessage,
    HmrMessage,
    RebuildMessage,
    RebuildStatus,
    RegisterMessage,
    encode_message,
    parse_server_message,
)

logger = logging.getLogger(__name__)

NO_HANDLER_RELOAD_DELAY = 0.5
FAILURE_RELOAD_DELAY = 1.0
SUCCESS_HIDE_DELAY = 3.0

UpdateHandler = Callable[[list[str]], Any]


class ClientSocket(Protocol):
    """Transport returned by the connector (a ``websockets`` client connection)."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[ClientSocket]]


class ConnectionState(str, Enum):
    """Client connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StatusIndicator:
    """Visible status shown to the user; logged in headless mode."""

    def __init__(self) -> None:
        self.text = ""
        self.kind = "hidden"
        self.detail: str | None = None
        self.history: list[tuple[str, str]] = []

    def show(self, text: str, kind: str, detail: str | None = None) -> None:
        self.text = text
        self.kind = kind
        self.detail = detail
        self.history.append((kind, text))
        log = logger.error if kind == "error" else logger.info
        log(f"[status] {text}" + (f"\n{detail}" if detail else ""))

    def hide(self) -> None:
        self.kind = "hidden"


async def websocket_connector(url: str) -> ClientSocket:
    return await websockets.connect(url)


class ClientRuntime:
    """Live-update client with bounded fixed-interval reconnects."""

    def __init__(
        self,
        url: str,
        page_path: str = "/",
        reconnect_interval: float = 2.0,
        max_reconnect_attempts: int = 10,
        connector: Connector = websocket_connector,
        on_reload: Callable[[], Any] | None = None,
        indicator: StatusIndicator | None = None,
        no_handler_reload_delay: float = NO_HANDLER_RELOAD_DELAY,
        failure_reload_delay: float = FAILURE_RELOAD_DELAY,
        success_hide_delay: float = SUCCESS_HIDE_DELAY,
    ) -> None:
        """Initialize client runtime.

        Args:
            url: Live-update server URL, e.g. ``ws://localhost:8001``
            page_path: Path sent in the registration message
            reconnect_interval: Seconds between reconnect attempts
            max_reconnect_attempts: Reconnect attempts before giving up
            connector: Opens a socket for ``url``
            on_reload: Called when a full reload is required
            indicator: Status display
        """
        self.url = url
        self.page_path = page_path
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.connector = connector
        self.on_reload = on_reload
        self.indicator = indicator or StatusIndicator()
        self.no_handler_reload_delay = no_handler_reload_delay
        self.failure_reload_delay = failure_reload_delay
        self.success_hide_delay = success_hide_delay

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.connect_calls = 0
        self.gave_up = False
        self.reload_count = 0
        self._handler: UpdateHandler | None = None
        self._socket: ClientSocket | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._timers: set[asyncio.Task] = set()
        self._closed = False
        self._attempt = 0

    @property
    def handler(self) -> UpdateHandler | None:
        return self._handler

    def register_handler(self, handler: UpdateHandler | None) -> None:
        """Store the application's update handler (the single handler slot)."""
        self._handler = handler
        logger.info("HMR handler registered" if handler else "HMR handler cleared")

    async def connect(self) -> None:
        """Connect now, superseding any pending automatic reconnect."""
        self._closed = False
        self.gave_up = False
        self._cancel_reconnect()
        await self._open()

    async def close(self) -> None:
        """Stop the runtime: close the socket and cancel every timer."""
        self._closed = True
        tasks = [self._reconnect_task, self._reader_task, *self._timers]
        for task in tasks:
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
        for task in tasks:
            if task and task is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        await self._close_socket()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait until the runtime stops reconnecting."""
        while not self._closed and not self.gave_up:
            await asyncio.sleep(0.1)

    async def handle_message(self, raw: str | bytes) -> None:
        """Classify one server frame and act on it."""
        try:
            message = parse_server_message(raw)
        except ValidationError:
            logger.warning(f"Unknown message: {_message_type(raw)}")
            return

        if isinstance(message, FileChangeMessage):
            logger.info(f"File change detected: {', '.join(message.paths)}")
        elif isinstance(message, RebuildMessage):
            self._handle_rebuild(message)
        elif isinstance(message, HmrMessage):
            await self._handle_hmr(message.modules)

    async def _open(self) -> None:
        await self._close_socket()
        self._set_state(ConnectionState.CONNECTING)
        self.connect_calls += 1
        self._attempt += 1
        attempt = self._attempt

        try:
            socket = await self.connector(self.url)
        except Exception as e:
            if attempt != self._attempt or self._closed:
                return
            logger.error(f"Failed to connect to {self.url}: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()
            return

        # A newer attempt (or close) took over while this one was connecting
        if attempt != self._attempt or self._closed:
            with contextlib.suppress(Exception):
                await socket.close()
            return

        self._socket = socket
        self._set_state(ConnectionState.CONNECTED)
        self.reconnect_attempts = 0

        try:
            await socket.send(encode_message(RegisterMessage(url=self.page_path)))
        except Exception as e:
            logger.error(f"Failed to register with server: {e}")

        self._reader_task = asyncio.create_task(self._read_loop(socket))

    async def _read_loop(self, socket: ClientSocket) -> None:
        try:
            async for raw in socket:
                await self.handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"Connection lost: {e}")

        if self._socket is socket and not self._closed:
            self._socket = None
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self.gave_up = True
            logger.error("Maximum reconnection attempts reached")
            self.indicator.show("Dev server disconnected", "error")
            return

        self.reconnect_attempts += 1
        logger.info(
            f"Reconnecting in {self.reconnect_interval:.1f}s "
            f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_interval)
        try:
            await self._open()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _handle_rebuild(self, message: RebuildMessage) -> None:
        if message.status is RebuildStatus.STARTED:
            self.indicator.show("Rebuilding...", "rebuilding")
        elif message.status is RebuildStatus.COMPLETED:
            self.indicator.show("Rebuild successful", "success")
            self._later(self.success_hide_delay, self.indicator.hide)
        else:
            self.indicator.show("Rebuild failed", "error", message.error)

    async def _handle_hmr(self, modules: list[str]) -> None:
        logger.info(f"HMR update for modules: {', '.join(modules)}")
        handler = self._handler

        if handler is None:
            logger.warning("No HMR handler registered, performing full reload")
            self.indicator.show("No HMR handler, reloading page...", "rebuilding")
            self._later(self.no_handler_reload_delay, self._reload)
            return

        self.indicator.show("Applying HMR updates...", "rebuilding")
        try:
            result = handler(list(modules))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"HMR update failed: {e}")
            self.indicator.show("HMR failed, reloading page...", "error")
            self._later(self.failure_reload_delay, self._reload)
            return

        self.indicator.show("HMR update successful", "success")
        self._later(self.success_hide_delay, self.indicator.hide)

    def _reload(self) -> None:
        self.reload_count += 1
        logger.info("Full reload requested")
        if self.on_reload is not None:
            self.on_reload()

    def _later(self, delay: float, callback: Callable[[], Any]) -> None:
        async def _fire() -> None:
            await asyncio.sleep(delay)
            callback()

        task = asyncio.create_task(_fire())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is not state:
            logger.debug(f"Connection state: {self.state.value} -> {state.value}")
            self.state = state

    async def _close_socket(self) -> None:
        socket, self._socket = self._socket, None
        reader, self._reader_task = self._reader_task, None
        if reader and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()


def _message_type(raw: str | bytes) -> str:
    try:
        return str(json.loads(raw).get("type"))
    except (ValueError, AttributeError):
        return "<malformed>"
