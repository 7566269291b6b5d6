"""WebSocket broadcaster for live-update notifications.

This module provides the Broadcaster class for managing client connections and
pushing live-update messages to every connected browser.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from orbit_devserver.messages import encode_message

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


class SendChannel(Protocol):
    """Anything a message can be pushed through (FastAPI WebSocket in production)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass(eq=False)
class Connection:
    """One active client session."""

    channel: SendChannel
    path: str | None = None
    connection_id: int = field(default_factory=lambda: next(_connection_ids))


class Broadcaster:
    """Registry of client connections with isolated per-connection delivery."""

    def __init__(self, max_connections: int = 32, send_timeout: float = 2.0):
        """Initialize broadcaster.

        Args:
            max_connections: Maximum number of concurrent client connections
            send_timeout: Seconds a single delivery may take before the
                connection is dropped
        """
        self.max_connections = max_connections
        self.send_timeout = send_timeout
        self._connections: set[Connection] = set()
        self._lock = asyncio.Lock()
        self.connection_count = 0
        self.messages_sent = 0

    def __len__(self) -> int:
        return len(self._connections)

    @property
    def connections(self) -> frozenset[Connection]:
        return frozenset(self._connections)

    async def register(self, connection: Connection) -> bool:
        """Add a connection to the broadcast set.

        Returns:
            True if registered, False if rejected (too many connections)
        """
        async with self._lock:
            if len(self._connections) >= self.max_connections:
                logger.warning(
                    f"Connection rejected: max connections ({self.max_connections}) reached"
                )
                return False

            self._connections.add(connection)
            self.connection_count += 1

        logger.info(
            f"Client {connection.connection_id} connected. "
            f"Active: {len(self._connections)}, Total: {self.connection_count}"
        )
        return True

    def unregister(self, connection: Connection) -> None:
        """Remove a connection; unknown connections are ignored."""
        if connection in self._connections:
            self._connections.remove(connection)
            logger.info(
                f"Client {connection.connection_id} disconnected. Active: {len(self._connections)}"
            )

    async def broadcast(self, message: BaseModel) -> int:
        """Deliver one message to every registered connection.

        Deliveries run concurrently and are isolated: a connection that errors or
        exceeds the send timeout is unregistered without affecting the others.

        Args:
            message: Wire protocol message

        Returns:
            Number of successful deliveries
        """
        targets = list(self._connections)
        if not targets:
            logger.debug("No active connections for broadcasting")
            return 0

        payload = encode_message(message)
        results = await asyncio.gather(*(self._deliver(conn, payload) for conn in targets))

        failed = [conn for conn, delivered in zip(targets, results) if not delivered]
        for connection in failed:
            self.unregister(connection)

        successful_sends = len(targets) - len(failed)
        self.messages_sent += successful_sends
        logger.debug(
            f"Message {getattr(message, 'type', '?')} broadcast to "
            f"{successful_sends}/{len(targets)} clients"
        )
        return successful_sends

    async def close_all(self, code: int = 1001) -> None:
        """Close and forget every connection (server shutdown)."""
        connections = list(self._connections)
        self._connections.clear()

        for connection in connections:
            try:
                await asyncio.wait_for(connection.channel.close(code=code), self.send_timeout)
            except Exception as e:
                logger.debug(f"Error closing client {connection.connection_id}: {e}")

        if connections:
            logger.info(f"Closed {len(connections)} client connections")

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_connections": len(self._connections),
            "max_connections": self.max_connections,
            "total_connections": self.connection_count,
            "messages_sent": self.messages_sent,
        }

    async def _deliver(self, connection: Connection, payload: str) -> bool:
        try:
            await asyncio.wait_for(connection.channel.send_text(payload), self.send_timeout)
            return True

        except asyncio.TimeoutError:
            logger.warning(
                f"Send to client {connection.connection_id} timed out after {self.send_timeout}s"
            )
            return False

        except Exception as e:
            logger.warning(f"Failed to send message to client {connection.connection_id}: {e}")
            return False
