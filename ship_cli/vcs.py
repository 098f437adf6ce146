"""
jj Integration

Typed access to a jj repository by shelling out to the jj CLI.
No state is cached between calls - every query reads live state from jj.
"""

import json
import subprocess
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from .config import Constants
from .errors import (
    JjConflictError,
    JjFetchError,
    JjPushError,
    NEW_CONFLICTS_PATTERN,
    VcsError,
    VcsTimeoutError,
    looks_like_error,
    map_jj_error,
)
from .models import Change, PushResult, TrunkInfo, WorkspaceInfo
from .process import run_command, with_retry

console = Console(stderr=True)

# One JSON object per line for every commit in the revset.
JJ_LOG_JSON_TEMPLATE = (
    '"{" ++ '
    '"\\"commit_id\\":" ++ json(commit_id) ++ "," ++ '
    '"\\"change_id\\":" ++ json(change_id) ++ "," ++ '
    '"\\"description\\":" ++ json(description) ++ "," ++ '
    '"\\"author\\":" ++ json(author) ++ "," ++ '
    '"\\"bookmarks\\":" ++ json(local_bookmarks) ++ "," ++ '
    '"\\"is_working_copy\\":" ++ json(current_working_copy) ++ "," ++ '
    '"\\"is_empty\\":" ++ json(empty) ++ "," ++ '
    '"\\"has_conflict\\":" ++ json(conflict) ++ '
    '"}" ++ "\\n"'
)

JJ_WORKSPACE_TEMPLATE = (
    'name ++ "\\t" ++ target.change_id().short() ++ "\\t" ++ '
    'target.description().first_line() ++ "\\n"'
)

DEFAULT_REMOTE = "origin"

_NETWORK_ERRORS = (JjPushError, JjFetchError, VcsTimeoutError)


def parse_changes(output: str) -> List[Change]:
    """Parse jj log output produced with JJ_LOG_JSON_TEMPLATE.

    Args:
        output: Raw jj log stdout, one JSON object per line

    Returns:
        List of Change objects in jj's order (newest first)

    Raises:
        VcsError: If a line is not valid commit JSON
    """
    changes = []
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            changes.append(Change.from_jj_json(json.loads(line)))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise VcsError(f"Failed to parse jj commit: {e}", cause=e) from e
    return changes


def parse_workspaces(output: str) -> List[WorkspaceInfo]:
    """Parse `jj workspace list` output produced with JJ_WORKSPACE_TEMPLATE."""
    workspaces = []
    for line in output.splitlines():
        if not line.strip():
            continue
        name, change_id, description = (line.split("\t") + ["", ""])[:3]
        workspaces.append(WorkspaceInfo(
            name=name,
            path="",
            change_id=change_id,
            description=description,
            is_default=name == Constants.DEFAULT_WORKSPACE_NAME,
        ))
    return workspaces


class JjVcs:
    """jj operations used by ship, backed by the jj CLI."""

    def __init__(
        self,
        cwd: Optional[Path] = None,
        jj_command: Optional[str] = None,
        local_timeout: Optional[float] = None,
        network_timeout: Optional[float] = None,
    ) -> None:
        """Initialize jj adapter.

        Args:
            cwd: Repository or workspace directory (default: current directory)
            jj_command: jj executable (default: from Constants)
            local_timeout: Timeout for local operations (default: from Constants)
            network_timeout: Timeout for push/fetch (default: from Constants)
        """
        self.cwd = cwd
        self.jj_command = jj_command or Constants.JJ_COMMAND
        self.local_timeout = local_timeout or Constants.LOCAL_TIMEOUT
        self.network_timeout = network_timeout or Constants.NETWORK_TIMEOUT

    async def _run(self, *args: str, timeout: Optional[float] = None) -> str:
        """Run jj and return its stdout.

        jj reports failures on stderr. A non-zero exit, or a stderr line that
        starts like an error (`Error:`, `fatal:`, ...), is mapped to a typed
        VcsError. Echoed change descriptions never start a line.
        """
        timeout = timeout or self.local_timeout
        command = args[0] if args else "jj"
        try:
            result = await run_command([self.jj_command, *args], timeout, self.cwd)
        except FileNotFoundError as e:
            raise VcsError(f"jj is not installed ('{self.jj_command}' not found)", cause=e) from e
        except subprocess.TimeoutExpired as e:
            raise VcsTimeoutError(f"jj {command} timed out after {timeout:g} seconds", cause=e) from e

        stderr = result.stderr or ""
        if result.returncode != 0:
            raise map_jj_error(stderr or result.stdout, command)
        if looks_like_error(stderr):
            raise map_jj_error(stderr, command)
        return (result.stdout or "") + stderr

    async def _run_network(self, *args: str) -> str:
        return await with_retry(
            lambda: self._run(*args, timeout=self.network_timeout),
            f"jj {' '.join(args)}",
            retry_on=_NETWORK_ERRORS,
        )

    async def _exit_code(self, *args: str) -> int:
        try:
            result = await run_command([self.jj_command, *args], self.local_timeout, self.cwd)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return 1
        return result.returncode

    async def _log(self, revset: str) -> List[Change]:
        output = await self._run("log", "-r", revset, "-T", JJ_LOG_JSON_TEMPLATE, "--no-graph")
        return parse_changes(output)

    async def is_available(self) -> bool:
        return await self._exit_code("version") == 0

    async def is_repo(self) -> bool:
        return await self._exit_code("root") == 0

    async def get_current_change(self) -> Change:
        changes = await self._log("@")
        if not changes:
            raise VcsError("No current change found")
        return changes[0]

    async def get_parent_change(self) -> Optional[Change]:
        changes = await self._log("@-")
        return changes[0] if changes else None

    async def get_stack(self) -> List[Change]:
        """Changes from trunk (exclusive) to the working copy, newest first."""
        return await self._log("trunk()..@")

    async def get_log(self, revset: str = "@") -> List[Change]:
        return await self._log(revset)

    async def get_trunk_info(self) -> TrunkInfo:
        changes = await self._log("trunk()")
        if not changes:
            raise VcsError("Could not resolve trunk()")
        return TrunkInfo(change_id=changes[0].change_id, description=changes[0].description)

    async def push(self, bookmark: str) -> PushResult:
        """Push a bookmark to the remote.

        Safe to retry: pushing an unchanged bookmark again is a no-op.
        """
        await self._run_network("git", "push", "-b", bookmark)
        changes = await self._log(bookmark)
        change_id = changes[0].change_id if changes else ""
        return PushResult(bookmark=bookmark, remote=DEFAULT_REMOTE, change_id=change_id)

    async def fetch(self) -> None:
        await self._run_network("git", "fetch")

    async def rebase(self, source: str, destination: str) -> None:
        """Rebase source and its descendants onto destination.

        Raises:
            JjConflictError: If the rebase left conflicted commits behind
        """
        output = await self._run("rebase", "-s", source, "-d", destination)
        if NEW_CONFLICTS_PATTERN.search(output):
            raise JjConflictError(f"Rebase onto {destination} produced conflicts: {output.strip()}")

    async def abandon(self, change_id: Optional[str] = None) -> Change:
        """Abandon a change (default: the working copy) and return the new working copy."""
        args = ["abandon"]
        if change_id:
            args.append(change_id)
        await self._run(*args)
        return await self.get_current_change()

    async def create_bookmark(self, name: str, ref: Optional[str] = None) -> None:
        args = ["bookmark", "create", name]
        if ref:
            args.extend(["-r", ref])
        await self._run(*args)

    async def create_workspace(self, name: str, path: Path, revision: Optional[str] = None) -> WorkspaceInfo:
        """Create a jj workspace at path.

        Args:
            name: Workspace name
            path: Directory for the new working copy
            revision: Revision to check out (default: jj's default)

        Returns:
            WorkspaceInfo for the new workspace
        """
        args = ["workspace", "add", "--name", name]
        if revision:
            args.extend(["-r", revision])
        args.append(str(path))
        await self._run(*args)

        for workspace in await self.list_workspaces():
            if workspace.name == name:
                return workspace
        return WorkspaceInfo(name=name, path=str(path), change_id="", description="")

    async def list_workspaces(self) -> List[WorkspaceInfo]:
        output = await self._run("workspace", "list", "-T", JJ_WORKSPACE_TEMPLATE)
        workspaces = parse_workspaces(output)
        for workspace in workspaces:
            workspace.path = await self._workspace_root(workspace.name)
        return workspaces

    async def _workspace_root(self, name: str) -> str:
        try:
            output = await self._run("workspace", "root", "--name", name)
        except VcsError as e:
            console.print(f"[yellow]Could not resolve path of workspace {name}: {e}[/yellow]")
            return ""
        lines = output.strip().splitlines()
        return lines[0] if lines else ""

    async def forget_workspace(self, name: str) -> None:
        await self._run("workspace", "forget", name)
