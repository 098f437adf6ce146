"""
Workspace Manager

jj workspace lifecycle for parallel agent sessions: create, list, remove,
and clean up after abandoned bookmarks.

ship records the workspaces it creates in `.ship/workspaces.json`. jj is
authoritative for whether a workspace exists; the metadata file is
authoritative for whether ship manages it. The two are looked up
independently and may disagree. Every read-modify-write of the metadata
file happens under `.ship/workspaces.lock`.
"""

import json
import shutil
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence

from rich.console import Console

from .config import Constants, ShipConfig, resolve_workspace_path
from .errors import LockTimeoutError, VcsError, WorkspaceError
from .locking import async_file_lock, file_lock
from .models import Change, WorkspaceInfo, WorkspaceMetadata
from .vcs import JjVcs

console = Console(stderr=True)


class WorkspaceState(str, Enum):
    """Where a workspace is known to exist."""
    METADATA_ONLY = "metadata_only"
    VCS_ONLY = "vcs_only"
    BOTH = "both"
    NEITHER = "neither"


@dataclass
class WorkspaceResolution:
    name: str
    state: WorkspaceState
    metadata: Optional[WorkspaceMetadata] = None
    vcs: Optional[WorkspaceInfo] = None

    @property
    def in_vcs(self) -> bool:
        return self.state in (WorkspaceState.VCS_ONLY, WorkspaceState.BOTH)

    @property
    def in_metadata(self) -> bool:
        return self.state in (WorkspaceState.METADATA_ONLY, WorkspaceState.BOTH)

    @property
    def path(self) -> Optional[str]:
        if self.vcs is not None and self.vcs.path:
            return self.vcs.path
        if self.metadata is not None:
            return self.metadata.path
        return None


def resolve_state(
    name: str,
    vcs_workspaces: Sequence[WorkspaceInfo],
    entries: Sequence[WorkspaceMetadata],
) -> WorkspaceResolution:
    """Combine the jj listing and the metadata file for one workspace name."""
    vcs = next((w for w in vcs_workspaces if w.name == name), None)
    metadata = next((e for e in entries if e.name == name), None)

    if vcs is not None and metadata is not None:
        state = WorkspaceState.BOTH
    elif vcs is not None:
        state = WorkspaceState.VCS_ONLY
    elif metadata is not None:
        state = WorkspaceState.METADATA_ONLY
    else:
        state = WorkspaceState.NEITHER

    return WorkspaceResolution(name=name, state=state, metadata=metadata, vcs=vcs)


@dataclass
class CleanupResult:
    removed: bool
    name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"removed": self.removed}
        if self.name is not None:
            data["name"] = self.name
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class RemoveWorkspaceResult:
    name: str
    state: WorkspaceState
    path: Optional[str]
    forgotten: bool
    metadata_removed: bool
    files_deleted: Optional[bool] = None
    delete_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "removed": True,
            "name": self.name,
            "state": self.state.value,
            "path": self.path,
            "forgotten": self.forgotten,
            "metadataRemoved": self.metadata_removed,
        }
        if self.files_deleted is not None:
            data["filesDeleted"] = self.files_deleted
        if self.delete_error is not None:
            data["deleteError"] = self.delete_error
        return data


@dataclass
class AbandonResult:
    change_id: str
    new_working_copy: Change
    workspace: CleanupResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "abandoned": True,
            "changeId": self.change_id,
            "newWorkingCopy": self.new_working_copy.change_id,
            "workspaceRemoved": self.workspace.to_dict(),
        }


class WorkspaceStore:
    """Reads and writes `.ship/workspaces.json`."""

    def __init__(self, ship_dir: Optional[Path] = None, lock_timeout: Optional[float] = None) -> None:
        """Initialize metadata store.

        Args:
            ship_dir: ship's private directory (default: `.ship` under the current directory)
            lock_timeout: Seconds to wait for the lock (default: from Constants)
        """
        self.ship_dir = ship_dir or Constants.get_ship_dir()
        self.metadata_path = self.ship_dir / Constants.WORKSPACES_FILE
        self.lock_path = self.ship_dir / Constants.WORKSPACES_LOCK_FILE
        self.lock_timeout = lock_timeout or Constants.LOCK_TIMEOUT

    @contextmanager
    def locked(self) -> Iterator[None]:
        with file_lock(self.lock_path, self.lock_timeout, "workspace metadata lock"):
            yield

    @asynccontextmanager
    async def locked_async(self) -> AsyncIterator[None]:
        async with async_file_lock(self.lock_path, self.lock_timeout, "workspace metadata lock"):
            yield

    def load(self) -> List[WorkspaceMetadata]:
        """Read all entries from disk. A missing file means no entries.

        Raises:
            WorkspaceError: If the file exists but cannot be parsed
        """
        if not self.metadata_path.exists():
            return []
        try:
            data = json.loads(self.metadata_path.read_text())
            return [WorkspaceMetadata.from_dict(entry) for entry in data.get("workspaces", [])]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise WorkspaceError(f"Failed to read {self.metadata_path}: {e}") from e

    def save(self, entries: Sequence[WorkspaceMetadata]) -> None:
        self.ship_dir.mkdir(parents=True, exist_ok=True)
        payload = {"workspaces": [entry.to_dict() for entry in entries]}
        tmp_path = self.metadata_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n")
        tmp_path.replace(self.metadata_path)

    def upsert(self, entry: WorkspaceMetadata) -> None:
        with self.locked():
            entries = [e for e in self.load() if e.name != entry.name]
            entries.append(entry)
            self.save(entries)

    def remove(self, name: str) -> bool:
        """Drop the entry called name. Returns True if there was one."""
        with self.locked():
            entries = self.load()
            remaining = [e for e in entries if e.name != name]
            if len(remaining) == len(entries):
                return False
            self.save(remaining)
            return True


class WorkspaceLifecycleManager:
    """Keeps jj workspaces and ship's workspace metadata in step."""

    def __init__(self, vcs: JjVcs, store: WorkspaceStore, config: Optional[ShipConfig] = None) -> None:
        self.vcs = vcs
        self.store = store
        self.config = config or ShipConfig()

    async def _list_vcs_workspaces(self) -> Optional[List[WorkspaceInfo]]:
        try:
            return await self.vcs.list_workspaces()
        except VcsError as e:
            console.print(f"[yellow]Could not list jj workspaces: {e}[/yellow]")
            return None

    async def cleanup_for_bookmarks(self, bookmarks: Sequence[str]) -> CleanupResult:
        """Forget the workspace created for any of bookmarks, and drop its metadata.

        Best-effort: never raises. Disabled by `workspace.autoCleanup: false`.

        Args:
            bookmarks: Bookmarks of a change that was just abandoned

        Returns:
            CleanupResult with removed=True and the workspace name on success
        """
        if not self.config.workspace.auto_cleanup or not bookmarks:
            return CleanupResult(removed=False)

        try:
            async with self.store.locked_async():
                entries = self.store.load()
                match = next((e for e in entries if e.bookmark in bookmarks), None)
                if match is None:
                    return CleanupResult(removed=False)

                vcs_workspaces = await self._list_vcs_workspaces()
                present = vcs_workspaces is None or any(w.name == match.name for w in vcs_workspaces)
                if present:
                    try:
                        await self.vcs.forget_workspace(match.name)
                    except VcsError as e:
                        console.print(f"[yellow]Could not forget workspace {match.name}: {e}[/yellow]")
                        return CleanupResult(removed=False, name=match.name, error=str(e))

                self.store.save([e for e in entries if e.name != match.name])
        except (WorkspaceError, OSError) as e:
            console.print(f"[yellow]Workspace cleanup skipped: {e}[/yellow]")
            return CleanupResult(removed=False, error=str(e))

        console.print(f"[blue]Removed workspace {match.name}[/blue]")
        return CleanupResult(removed=True, name=match.name)

    async def resolve(self, name: str) -> WorkspaceResolution:
        vcs_workspaces = await self.vcs.list_workspaces()
        return resolve_state(name, vcs_workspaces, self.store.load())

    async def remove_workspace(self, name: str, delete_files: bool = False) -> RemoveWorkspaceResult:
        """Remove a workspace from jj and/or ship's metadata.

        Args:
            name: Workspace name
            delete_files: Also delete the workspace directory

        Returns:
            RemoveWorkspaceResult; files_deleted is reported separately from
            the logical removal

        Raises:
            WorkspaceError: For the default workspace or an unknown name
            VcsError: If jj fails to forget a workspace it lists
        """
        if name == Constants.DEFAULT_WORKSPACE_NAME:
            raise WorkspaceError("Cannot remove the default workspace")

        resolution = await self.resolve(name)
        if resolution.state == WorkspaceState.NEITHER:
            raise WorkspaceError(f"Workspace '{name}' not found")

        if resolution.in_vcs:
            await self.vcs.forget_workspace(name)

        metadata_removed = self.store.remove(name)
        result = RemoveWorkspaceResult(
            name=name,
            state=resolution.state,
            path=resolution.path,
            forgotten=resolution.in_vcs,
            metadata_removed=metadata_removed,
        )

        if delete_files:
            result.files_deleted, result.delete_error = self._delete_directory(resolution.path)

        return result

    def _delete_directory(self, path: Optional[str]) -> tuple:
        if not path:
            return False, "Workspace path is unknown"
        target = Path(path).resolve()
        if target == Path.cwd().resolve():
            return False, "Refusing to delete the current directory"
        if not target.exists():
            return True, None
        try:
            shutil.rmtree(target)
        except OSError as e:
            console.print(f"[yellow]Could not delete {target}: {e}[/yellow]")
            return False, str(e)
        return True, None

    async def abandon(self, change_id: Optional[str] = None) -> AbandonResult:
        """Abandon a change (default: @) and clean up its workspace."""
        targets = await self.vcs.get_log(change_id or "@")
        if not targets:
            raise VcsError(f"Change {change_id or '@'} not found")
        target = targets[0]

        new_working_copy = await self.vcs.abandon(change_id)
        cleanup = await self.cleanup_for_bookmarks(target.bookmarks)
        return AbandonResult(change_id=target.change_id, new_working_copy=new_working_copy, workspace=cleanup)

    async def create_workspace(
        self,
        name: str,
        stack_name: Optional[str] = None,
        bookmark: Optional[str] = None,
        task_id: Optional[str] = None,
        revision: Optional[str] = None,
        repo_root: Optional[Path] = None,
    ) -> WorkspaceMetadata:
        """Create a jj workspace and record it in the metadata file.

        Raises:
            WorkspaceError: For the default workspace name
            VcsError: If jj cannot create the workspace
        """
        if name == Constants.DEFAULT_WORKSPACE_NAME:
            raise WorkspaceError("The default workspace already exists")

        stack_name = stack_name or name
        root = repo_root or Path.cwd()
        template = self.config.workspace.base_path
        path = Path(resolve_workspace_path(template, repo=root.name, stack=stack_name)).expanduser()
        if not path.is_absolute():
            path = root / path

        await self.vcs.create_workspace(name, path, revision)
        entry = WorkspaceMetadata(
            name=name,
            path=str(path),
            stack_name=stack_name,
            created_at=WorkspaceMetadata.now(),
            bookmark=bookmark,
            task_id=task_id,
        )
        self.store.upsert(entry)
        return entry

    async def list_workspaces(self) -> List[Dict[str, Any]]:
        """jj workspaces joined with ship metadata.

        Metadata entries whose jj workspace is gone are pruned, but only when
        the jj listing itself succeeded.
        """
        vcs_workspaces = await self._list_vcs_workspaces()
        if vcs_workspaces is None:
            return []

        names = {w.name for w in vcs_workspaces}
        try:
            async with self.store.locked_async():
                entries = self.store.load()
                valid = [e for e in entries if e.name in names]
                if len(valid) != len(entries):
                    self.store.save(valid)
        except LockTimeoutError as e:
            console.print(f"[yellow]{e}; showing metadata without pruning[/yellow]")
            valid = self.store.load()

        by_name = {e.name: e for e in valid}
        rows = []
        for workspace in vcs_workspaces:
            meta = by_name.get(workspace.name)
            rows.append({
                "name": workspace.name,
                "path": workspace.path,
                "changeId": workspace.change_id,
                "description": workspace.description,
                "isDefault": workspace.is_default,
                "stackName": meta.stack_name if meta else None,
                "bookmark": meta.bookmark if meta else None,
                "taskId": meta.task_id if meta else None,
            })
        return rows
