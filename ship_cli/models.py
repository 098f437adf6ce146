"""
Data Models for ship

Snapshots of VCS, PR host and issue tracker state as seen by the orchestration
code. Collaborator adapters build these; the core only reads them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

PLACEHOLDER_DESCRIPTION = "(no description)"


@dataclass
class Change:
    """A jj change snapshot."""
    id: str
    change_id: str
    description: str = ""
    author: str = ""
    timestamp: str = ""
    bookmarks: List[str] = field(default_factory=list)
    is_working_copy: bool = False
    is_empty: bool = False
    has_conflict: bool = False

    @classmethod
    def from_jj_json(cls, data: Dict[str, Any]) -> 'Change':
        """Build a Change from one line of the jj JSON log template.

        Args:
            data: Decoded JSON object for one commit

        Returns:
            Change object

        Raises:
            KeyError: If required fields are missing
        """
        author = data.get("author") or {}
        return cls(
            id=data["commit_id"],
            change_id=data["change_id"],
            description=(data.get("description") or "").strip(),
            author=author.get("email") or author.get("name", ""),
            timestamp=author.get("timestamp", ""),
            bookmarks=[b["name"] for b in data.get("bookmarks") or []],
            is_working_copy=bool(data.get("is_working_copy", False)),
            is_empty=bool(data.get("is_empty", False)),
            has_conflict=bool(data.get("has_conflict", False)),
        )

    @property
    def bookmark(self) -> Optional[str]:
        """The bookmark ship acts on.

        A change may carry several bookmarks. ship always uses the first one
        in jj's listing order and ignores the rest.
        """
        return self.bookmarks[0] if self.bookmarks else None

    @property
    def title(self) -> str:
        """First line of the description, empty when there is none."""
        return self.description.split("\n", 1)[0].strip()

    @property
    def short_id(self) -> str:
        return self.change_id[:8]

    @property
    def has_meaningful_description(self) -> bool:
        text = self.description.strip()
        return bool(text) and text != PLACEHOLDER_DESCRIPTION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "changeId": self.change_id,
            "description": self.description,
            "author": self.author,
            "timestamp": self.timestamp,
            "bookmarks": list(self.bookmarks),
            "isWorkingCopy": self.is_working_copy,
            "isEmpty": self.is_empty,
            "hasConflict": self.has_conflict,
        }


@dataclass
class PushResult:
    bookmark: str
    remote: str
    change_id: str


@dataclass
class TrunkInfo:
    change_id: str
    description: str


@dataclass
class WorkspaceInfo:
    """A workspace as reported by `jj workspace list`."""
    name: str
    path: str
    change_id: str
    description: str
    is_default: bool = False


@dataclass
class PullRequest:
    """A pull request on the code review host.

    The head branch is the lookup key for idempotency, never the PR id.
    """
    id: str
    number: int
    title: str
    url: str
    state: str  # 'open', 'closed', 'merged'
    head: str
    base: str

    @classmethod
    def from_gh_json(cls, data: Dict[str, Any]) -> 'PullRequest':
        return cls(
            id=str(data.get("id", "")),
            number=int(data["number"]),
            title=data.get("title", ""),
            url=data.get("url", ""),
            state=str(data.get("state", "OPEN")).lower(),
            head=data.get("headRefName", ""),
            base=data.get("baseRefName", ""),
        )


@dataclass
class Review:
    id: int
    author: str
    state: str  # 'APPROVED', 'CHANGES_REQUESTED', 'COMMENTED', ...
    body: str
    submitted_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "state": self.state,
            "body": self.body,
            "submittedAt": self.submitted_at,
        }


@dataclass
class ReviewComment:
    """An inline code comment on a PR diff."""
    id: int
    path: str
    line: Optional[int]
    body: str
    author: str
    created_at: str
    in_reply_to_id: Optional[int] = None
    diff_hunk: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "path": self.path,
            "line": self.line,
            "body": self.body,
            "author": self.author,
            "createdAt": self.created_at,
            "inReplyToId": self.in_reply_to_id,
        }
        if self.diff_hunk is not None:
            data["diffHunk"] = self.diff_hunk
        return data


@dataclass
class ConversationComment:
    id: int
    body: str
    author: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "body": self.body,
            "author": self.author,
            "createdAt": self.created_at,
        }


@dataclass
class Task:
    """An issue tracker task, read-only for ship."""
    id: str
    identifier: str
    title: str
    description: Optional[str] = None
    url: str = ""
    state: str = ""
    blocked_by: List[str] = field(default_factory=list)
    blocks: List[str] = field(default_factory=list)


@dataclass
class WorkspaceMetadata:
    """ship's record of a workspace it created.

    jj is authoritative for whether the workspace exists; this record is
    authoritative for whether ship should clean it up.
    """
    name: str
    path: str
    stack_name: str
    created_at: str
    bookmark: Optional[str] = None
    task_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkspaceMetadata':
        return cls(
            name=data["name"],
            path=data["path"],
            stack_name=data.get("stackName", data["name"]),
            created_at=data.get("createdAt", ""),
            bookmark=data.get("bookmark"),
            task_id=data.get("taskId"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "stackName": self.stack_name,
            "createdAt": self.created_at,
        }
        if self.bookmark is not None:
            data["bookmark"] = self.bookmark
        if self.task_id is not None:
            data["taskId"] = self.task_id
        return data

    @staticmethod
    def now() -> str:
        return datetime.now(timezone.utc).isoformat()


@dataclass
class Outcome:
    """Result of one best-effort step.

    Best-effort steps never fail the command; their outcomes are collected
    so callers can report what happened.
    """
    target: str
    ok: bool
    error: Optional[str] = None
