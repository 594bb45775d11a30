"""Tests for the socket client."""

import asyncio

import pytest

from taskwarden.socket_client import SocketClient
from taskwarden.socket_server import SocketServer


@pytest.mark.asyncio
async def test_connect_missing_socket(short_tmp_path):
    """Connecting with no daemon raises FileNotFoundError."""
    client = SocketClient(socket_path=short_tmp_path / "missing.sock")
    with pytest.raises(FileNotFoundError):
        await client.connect()
    assert not client.connected


@pytest.mark.asyncio
async def test_send_without_connection():
    """Sending before connect raises ConnectionError."""
    client = SocketClient(socket_path=None)  # type: ignore[arg-type]
    with pytest.raises(ConnectionError):
        await client.send_message({"type": "refresh"})


@pytest.mark.asyncio
async def test_receives_initial_state(short_tmp_path):
    """The first message after connect is initial_state."""
    socket_path = short_tmp_path / "test.sock"
    server = SocketServer(socket_path=socket_path)
    await server.start()
    client = SocketClient(socket_path=socket_path)
    try:
        await client.connect()
        assert client.connected
        message = await client.read_message(timeout=2.0)
        assert message == {"type": "initial_state", "snapshot": None}
    finally:
        await client.disconnect()
        await server.stop()
    assert not client.connected


@pytest.mark.asyncio
async def test_requests_are_sent(short_tmp_path):
    """track, untrack and refresh arrive at the server as typed messages."""
    socket_path = short_tmp_path / "test.sock"
    received: list[dict] = []
    done = asyncio.Event()

    async def on_request(message):
        received.append(message)
        if len(received) == 3:
            done.set()
        return None

    server = SocketServer(socket_path=socket_path, on_request=on_request)
    await server.start()
    client = SocketClient(socket_path=socket_path)
    try:
        await client.connect()
        await client.track(42)
        await client.untrack(42)
        await client.refresh()
        await asyncio.wait_for(done.wait(), timeout=2.0)
    finally:
        await client.disconnect()
        await server.stop()

    assert received == [
        {"type": "track", "pid": 42},
        {"type": "untrack", "pid": 42},
        {"type": "refresh"},
    ]


@pytest.mark.asyncio
async def test_request_action_waits_for_result(short_tmp_path):
    """request_action skips unrelated messages and returns the action_result."""
    socket_path = short_tmp_path / "test.sock"

    async def on_request(message):
        return {"type": "action_result", "success": False, "pid": message["pid"]}

    server = SocketServer(socket_path=socket_path, on_request=on_request)
    await server.start()
    client = SocketClient(socket_path=socket_path)
    try:
        await client.connect()
        result = await client.request_action("terminate", 7, timeout=2.0)
    finally:
        await client.disconnect()
        await server.stop()

    assert result == {"type": "action_result", "success": False, "pid": 7}


@pytest.mark.asyncio
async def test_wait_for_times_out(short_tmp_path):
    """wait_for raises TimeoutError when the message never comes."""
    socket_path = short_tmp_path / "test.sock"
    server = SocketServer(socket_path=socket_path)
    await server.start()
    client = SocketClient(socket_path=socket_path)
    try:
        await client.connect()
        with pytest.raises(TimeoutError):
            await client.wait_for("snapshot", timeout=0.2)
    finally:
        await client.disconnect()
        await server.stop()
