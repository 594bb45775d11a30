"""Unix socket server for streaming snapshots and receiving requests.

PUSH-BASED DESIGN:
- The poll cycle calls broadcast() after each snapshot
- Clients send requests on the same connection
- Protocol: newline-delimited JSON messages

Server -> client:
- initial_state: sent on connect with the latest snapshot (or null)
- snapshot: sent via broadcast() once per cycle
- action_result / error: replies produced by the request handler

Client -> server:
- refresh, action, track, untrack (see Daemon.handle_request)
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from taskwarden.poller import Snapshot

log = structlog.get_logger()

RequestHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]


class SocketServer:
    """Unix domain socket server for real-time streaming to clients."""

    def __init__(
        self,
        socket_path: Path,
        on_request: RequestHandler | None = None,
        latest_snapshot: Callable[[], Snapshot | None] | None = None,
    ) -> None:
        self.socket_path = socket_path
        self._on_request = on_request
        self._latest_snapshot = latest_snapshot
        self._server: asyncio.Server | None = None
        self._clients: dict[asyncio.StreamWriter, asyncio.Lock] = {}
        self._running = False

    @property
    def has_clients(self) -> bool:
        """Check if any clients are connected."""
        return len(self._clients) > 0

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        # Owner-only: clients can send kill requests
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        self._running = True
        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server."""
        self._running = False

        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    async def broadcast(self, snapshot: Snapshot) -> None:
        """Push a snapshot to all connected clients, dropping any that fail."""
        if not self._clients:
            return

        message = {"type": "snapshot", "snapshot": snapshot.to_dict()}
        for writer in list(self._clients):
            await self._send(writer, message)

    async def _send(self, writer: asyncio.StreamWriter, message: dict[str, Any]) -> None:
        lock = self._clients.get(writer)
        if lock is None:
            return
        data = json.dumps(message).encode() + b"\n"
        try:
            async with lock:
                writer.write(data)
                await writer.drain()
        except (ConnectionError, OSError):
            self._clients.pop(writer, None)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a client connection until it disconnects."""
        self._clients[writer] = asyncio.Lock()
        log.info("socket_client_connected", count=len(self._clients))

        try:
            latest = self._latest_snapshot() if self._latest_snapshot else None
            await self._send(
                writer,
                {
                    "type": "initial_state",
                    "snapshot": latest.to_dict() if latest else None,
                },
            )

            while self._running and writer in self._clients:
                try:
                    line = await asyncio.wait_for(reader.readline(), timeout=1.0)
                except TimeoutError:
                    continue
                except (ConnectionError, ValueError):
                    break
                if not line:
                    break
                reply = await self._dispatch(line)
                if reply is not None:
                    await self._send(writer, reply)
        finally:
            self._clients.pop(writer, None)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.info("socket_client_disconnected", count=len(self._clients))

    async def _dispatch(self, line: bytes) -> dict[str, Any] | None:
        """Decode one request line and pass it to the handler."""
        try:
            message = json.loads(line.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("invalid_client_message", reason="not json")
            return {"type": "error", "message": "invalid JSON"}

        if not isinstance(message, dict) or "type" not in message:
            log.warning("invalid_client_message", reason="missing type")
            return {"type": "error", "message": "message must be an object with a 'type'"}

        if self._on_request is None:
            return None
        return await self._on_request(message)
