"""Unix socket client for receiving snapshots from the daemon and sending requests."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any


class SocketClient:
    """Unix domain socket client for the daemon's snapshot stream.

    Simple and stateless: connects or throws. Callers handle reconnection.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        """Whether client is connected."""
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Connect to the daemon socket.

        Raises:
            FileNotFoundError: If socket doesn't exist (daemon not running)
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def disconnect(self) -> None:
        """Disconnect from the daemon socket."""
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None

    async def read_message(self, timeout: float = 1.0) -> dict[str, Any]:
        """Read next message from socket with timeout.

        Raises:
            ConnectionError: If connection is lost
            TimeoutError: If no data received within timeout
            json.JSONDecodeError: If message is invalid JSON
        """
        if not self._reader:
            raise ConnectionError("Not connected")

        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Connection closed by server")

        return json.loads(line.decode())

    async def wait_for(self, message_type: str, timeout: float = 5.0) -> dict[str, Any]:
        """Read messages until one of the given type arrives.

        Raises:
            TimeoutError: If no such message arrives within timeout
            ConnectionError: If connection is lost
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(f"No {message_type!r} message within {timeout}s")
            message = await self.read_message(timeout=remaining)
            if message.get("type") == message_type:
                return message

    async def send_message(self, msg: dict[str, Any]) -> None:
        """Send a JSON message with a newline delimiter.

        Raises:
            ConnectionError: If not connected or write fails
        """
        if not self._writer or self._writer.is_closing():
            raise ConnectionError("Not connected")

        try:
            data = json.dumps(msg).encode() + b"\n"
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise ConnectionError(f"Send failed: {e}") from e

    async def refresh(self) -> None:
        """Ask the daemon for an immediate cycle."""
        await self.send_message({"type": "refresh"})

    async def track(self, pid: int) -> None:
        """Pin a pid in the daemon's tracked set."""
        await self.send_message({"type": "track", "pid": pid})

    async def untrack(self, pid: int) -> None:
        """Unpin a pid."""
        await self.send_message({"type": "untrack", "pid": pid})

    async def request_action(self, action: str, pid: int, timeout: float = 10.0) -> dict[str, Any]:
        """Send an action request and wait for its action_result reply."""
        await self.send_message({"type": "action", "action": action, "pid": pid})
        return await self.wait_for("action_result", timeout=timeout)
