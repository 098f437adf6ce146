"""
Tests for the webhook daemon client against a throwaway unix socket server.
"""

import asyncio
import json
import pytest
from pathlib import Path

from ship_cli.daemon import DaemonClient
from ship_cli.errors import DaemonError, DaemonNotRunningError


async def start_daemon(socket_path: Path, responder):
    received = []

    async def handle(reader, writer):
        line = await reader.readline()
        command = json.loads(line)
        received.append(command)
        writer.write((json.dumps(responder(command)) + "\n").encode())
        await writer.drain()
        writer.close()

    server = await asyncio.start_unix_server(handle, path=str(socket_path))
    return server, received


class TestDaemonClient:

    @pytest.mark.asyncio
    async def test_not_running_without_socket(self, temp_dir: Path):
        """Test client behaviour when no daemon is listening."""
        client = DaemonClient(str(temp_dir / "missing.sock"))

        assert await client.is_running() is False
        with pytest.raises(DaemonNotRunningError):
            await client.subscribe("s", [1])

    @pytest.mark.asyncio
    async def test_status_and_subscribe(self, temp_dir: Path):
        """Test status, subscribe and unsubscribe messages."""
        socket_path = temp_dir / "d.sock"

        def responder(command):
            if command["type"] == "status":
                return {"type": "status_response", "subscriptions": []}
            return {"type": "ok"}

        server, received = await start_daemon(socket_path, responder)
        async with server:
            client = DaemonClient(str(socket_path), timeout=2)
            assert await client.is_running() is True
            await client.subscribe("sess-1", [5, 6])
            await client.unsubscribe("sess-1", [5], server_url="https://x")

        assert received[1] == {"type": "subscribe", "sessionId": "sess-1", "prNumbers": [5, 6]}
        assert received[2]["serverUrl"] == "https://x"

    @pytest.mark.asyncio
    async def test_error_response(self, temp_dir: Path):
        """Test that a daemon error response raises DaemonError."""
        socket_path = temp_dir / "d.sock"
        server, _ = await start_daemon(socket_path, lambda c: {"type": "error", "error": "unknown session"})

        async with server:
            with pytest.raises(DaemonError, match="unknown session"):
                await DaemonClient(str(socket_path), timeout=2).subscribe("s", [1])
