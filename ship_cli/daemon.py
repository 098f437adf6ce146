"""
Webhook Daemon Client

Talks to the local webhook daemon over its unix socket so agent sessions
get notified about activity on their PRs. The daemon speaks one JSON
object per line in each direction.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Constants
from .errors import DaemonError, DaemonNotRunningError


class DaemonClient:
    """Client for the ship webhook daemon."""

    def __init__(self, socket_path: Optional[str] = None, timeout: Optional[float] = None) -> None:
        """Initialize daemon client.

        Args:
            socket_path: Daemon unix socket (default: from Constants)
            timeout: Per-request timeout in seconds (default: from Constants)
        """
        self.socket_path = Path(socket_path or Constants.DAEMON_SOCKET_PATH)
        self.timeout = timeout or Constants.LOCAL_TIMEOUT

    async def _send(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Send one command and read one response.

        Raises:
            DaemonNotRunningError: If nothing is listening on the socket
            DaemonError: If the daemon times out or reports an error
        """
        if not self.socket_path.exists():
            raise DaemonNotRunningError()

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path)), self.timeout
            )
        except (ConnectionRefusedError, FileNotFoundError) as e:
            raise DaemonNotRunningError() from e
        except asyncio.TimeoutError as e:
            raise DaemonError(f"Timed out connecting to daemon at {self.socket_path}") from e

        try:
            writer.write((json.dumps(command) + "\n").encode())
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), self.timeout)
        except asyncio.TimeoutError as e:
            raise DaemonError(f"Daemon did not answer '{command['type']}' within {self.timeout:g}s") from e
        except OSError as e:
            raise DaemonError(f"Daemon connection failed: {e}") from e
        finally:
            writer.close()

        if not line:
            raise DaemonError("Daemon closed the connection without a response")
        try:
            response = json.loads(line)
        except json.JSONDecodeError as e:
            raise DaemonError(f"Invalid daemon response: {line[:80]!r}") from e

        if response.get("type") == "error":
            raise DaemonError(response.get("error") or "Daemon reported an error")
        return response

    async def is_running(self) -> bool:
        try:
            response = await self._send({"type": "status"})
        except DaemonError:
            return False
        return response.get("type") == "status_response"

    async def subscribe(self, session_id: str, pr_numbers: List[int]) -> None:
        """Subscribe an agent session to events for pr_numbers."""
        await self._send({"type": "subscribe", "sessionId": session_id, "prNumbers": list(pr_numbers)})

    async def unsubscribe(self, session_id: str, pr_numbers: List[int], server_url: Optional[str] = None) -> None:
        command: Dict[str, Any] = {"type": "unsubscribe", "sessionId": session_id, "prNumbers": list(pr_numbers)}
        if server_url:
            command["serverUrl"] = server_url
        await self._send(command)
