"""
Errors

Exception hierarchy for ship and the pattern tables that classify raw
jj and gh output into those exceptions.

Collaborator adapters map tool output here at the boundary. The orchestration
code only ever sees these exception types, never raw process output.
"""

import re
from enum import Enum
from typing import List, Optional, Pattern, Tuple


class ShipError(Exception):
    """Base class for all errors reported by ship."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConfigError(ShipError):
    pass


# Precondition errors

class NoBookmarkError(ShipError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "Current change has no bookmark. Create one with 'jj bookmark create <name>' "
               "or use 'ship start <task-id>'."
        )


class EmptyChangeError(ShipError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "Current change is empty (no modifications). Make some changes before submitting."
        )


class ConflictError(ShipError):
    """One or more changes in scope have unresolved conflicts."""

    def __init__(self, message: str, changes: Optional[list] = None) -> None:
        super().__init__(message)
        self.changes = changes or []


# VCS errors

class VcsError(ShipError):
    pass


class VcsTimeoutError(VcsError):
    pass


class NotARepoError(VcsError):
    pass


class JjConflictError(VcsError):
    def __init__(self, message: str, conflicted_paths: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.conflicted_paths = conflicted_paths or []


class JjPushError(VcsError):
    pass


class JjFetchError(VcsError):
    pass


class JjBookmarkError(VcsError):
    def __init__(self, message: str, bookmark: Optional[str] = None) -> None:
        super().__init__(message)
        self.bookmark = bookmark


class JjImmutableError(VcsError):
    def __init__(self, message: str, commit_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.commit_id = commit_id


class JjSquashError(VcsError):
    pass


class JjRevisionError(VcsError):
    def __init__(self, message: str, revision: Optional[str] = None) -> None:
        super().__init__(message)
        self.revision = revision


class JjStaleWorkingCopyError(VcsError):
    pass


class JjWorkspaceError(VcsError):
    def __init__(self, message: str, workspace: Optional[str] = None) -> None:
        super().__init__(message)
        self.workspace = workspace


# PR host errors

class PrError(ShipError):
    pass


class PrTimeoutError(PrError):
    pass


class GhNotInstalledError(PrError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "GitHub CLI (gh) is not installed. Install it from https://cli.github.com")


class GhNotAuthenticatedError(PrError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "GitHub CLI is not authenticated. Run 'gh auth login' first.")


class GhRateLimitedError(PrError):
    pass


class PrNotFoundError(PrError):
    pass


# Issue tracker errors

class IssueTrackerError(ShipError):
    pass


class TaskNotFoundError(IssueTrackerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


# Daemon errors

class DaemonError(ShipError):
    pass


class DaemonNotRunningError(DaemonError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "Webhook daemon is not running. Start it with 'ship webhook start'.")


# Workspace errors

class WorkspaceError(ShipError):
    pass


class LockTimeoutError(WorkspaceError):
    """Raised when the workspace metadata lock cannot be acquired in time."""
    pass


class ErrorKind(str, Enum):
    """Classification of collaborator output."""
    NOT_A_REPO = "not_a_repo"
    CONFLICT = "conflict"
    PUSH = "push"
    FETCH = "fetch"
    BOOKMARK = "bookmark"
    IMMUTABLE = "immutable"
    SQUASH = "squash"
    REVISION = "revision"
    STALE = "stale"
    WORKSPACE = "workspace"
    NOT_INSTALLED = "not_installed"
    NOT_AUTHENTICATED = "not_authenticated"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    UNRECOGNIZED = "unrecognized"


def _p(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE | re.MULTILINE)


# Ordered: the first matching row wins, so specific rows come before catch-alls.
JJ_ERROR_PATTERNS: List[Tuple[Pattern[str], ErrorKind]] = [
    (_p(r"There is no jj repo in"), ErrorKind.NOT_A_REPO),
    (_p(r"The current directory is not part of a repository"), ErrorKind.NOT_A_REPO),
    (_p(r"working copy is stale"), ErrorKind.STALE),
    (_p(r"Conflicting changes in"), ErrorKind.CONFLICT),
    (_p(r"Won't push commit .* since it has no description"), ErrorKind.PUSH),
    (_p(r"Refusing to create new remote bookmark"), ErrorKind.PUSH),
    (_p(r"failed to push"), ErrorKind.PUSH),
    (_p(r"failed to fetch"), ErrorKind.FETCH),
    (_p(r"Could not find remote"), ErrorKind.FETCH),
    (_p(r"Bookmark already exists: (\S+)"), ErrorKind.BOOKMARK),
    (_p(r'Bookmark "([^"]+)" doesn\'t exist'), ErrorKind.BOOKMARK),
    (_p(r"No such bookmark"), ErrorKind.BOOKMARK),
    (_p(r"Commit (\S+) is immutable"), ErrorKind.IMMUTABLE),
    (_p(r"Cannot squash"), ErrorKind.SQUASH),
    (_p(r"Workspace '([^']+)' already exists"), ErrorKind.WORKSPACE),
    (_p(r"No workspace named '([^']+)'"), ErrorKind.WORKSPACE),
    (_p(r"Workspace '([^']+)' doesn't exist"), ErrorKind.WORKSPACE),
    (_p(r'Revset "([^"]+)" didn\'t resolve'), ErrorKind.REVISION),
    (_p(r'Revision "([^"]+)" doesn\'t exist'), ErrorKind.REVISION),
    (_p(r"No such revision"), ErrorKind.REVISION),
    (_p(r"workspace"), ErrorKind.WORKSPACE),
    (_p(r"conflict"), ErrorKind.CONFLICT),
]

GH_ERROR_PATTERNS: List[Tuple[Pattern[str], ErrorKind]] = [
    # gh echoes the branch name in not-found messages, so these rows go first
    (_p(r"no pull requests found"), ErrorKind.NOT_FOUND),
    (_p(r"Could not resolve to a PullRequest"), ErrorKind.NOT_FOUND),
    (_p(r"command not found"), ErrorKind.NOT_INSTALLED),
    (_p(r"gh: not found"), ErrorKind.NOT_INSTALLED),
    (_p(r"ENOENT|No such file or directory"), ErrorKind.NOT_INSTALLED),
    (_p(r"not logged in"), ErrorKind.NOT_AUTHENTICATED),
    (_p(r"authentication"), ErrorKind.NOT_AUTHENTICATED),
    (_p(r"HTTP 401\b"), ErrorKind.NOT_AUTHENTICATED),
    (_p(r"rate limit"), ErrorKind.RATE_LIMITED),
    (_p(r"HTTP 403\b"), ErrorKind.RATE_LIMITED),
]

# Line-anchored only: jj echoes change descriptions on stderr after successful
# commands, and those lines start with a change id or indentation.
_ERROR_INDICATORS: List[Pattern[str]] = [
    re.compile(r"^Error:", re.MULTILINE),
    re.compile(r"^error:", re.MULTILINE),
    re.compile(r"^fatal:", re.MULTILINE),
    re.compile(r"^(Warning: )?failed to", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^(Warning: )?refusing to", re.IGNORECASE | re.MULTILINE),
]

# jj prints this after a rebase or new that left conflicted commits behind
NEW_CONFLICTS_PATTERN: Pattern[str] = re.compile(r"^New conflicts appeared in", re.MULTILINE)


def classify(output: str, table: List[Tuple[Pattern[str], ErrorKind]]) -> Tuple[ErrorKind, Optional[re.Match]]:
    """Find the first row of a pattern table that matches output.

    Args:
        output: Raw tool output
        table: Ordered (pattern, kind) rows

    Returns:
        Tuple of (kind, match); (UNRECOGNIZED, None) when no row matches
    """
    for pattern, kind in table:
        match = pattern.search(output)
        if match:
            return kind, match
    return ErrorKind.UNRECOGNIZED, None


def looks_like_error(output: str) -> bool:
    """Heuristic check for jj output that reports a failure."""
    return any(indicator.search(output) for indicator in _ERROR_INDICATORS)


def _first_group(match: Optional[re.Match]) -> Optional[str]:
    if match is not None and match.groups():
        return match.group(1)
    return None


def map_jj_error(output: str, command: str) -> VcsError:
    """Map jj output into a typed VCS error.

    Args:
        output: Combined stdout/stderr from jj
        command: jj subcommand that produced the output

    Returns:
        VcsError subclass matching the output; plain VcsError if unrecognized
    """
    text = output.strip()
    kind, match = classify(text, JJ_ERROR_PATTERNS)

    if kind == ErrorKind.NOT_A_REPO:
        return NotARepoError("Not a jj repository. Run 'jj git init' to create one.")
    if kind == ErrorKind.CONFLICT:
        paths: List[str] = []
        if "Conflicting changes in" in text:
            tail = text.split("Conflicting changes in", 1)[1]
            paths = re.findall(r"^\s+(\S+)\s*$", tail, re.MULTILINE)
        return JjConflictError(f"jj {command} resulted in conflicts: {text}", conflicted_paths=paths)
    if kind == ErrorKind.PUSH:
        return JjPushError(f"Push failed: {text}")
    if kind == ErrorKind.FETCH:
        return JjFetchError(f"Fetch failed: {text}")
    if kind == ErrorKind.BOOKMARK:
        return JjBookmarkError(f"Bookmark error: {text}", bookmark=_first_group(match))
    if kind == ErrorKind.IMMUTABLE:
        return JjImmutableError(f"Cannot modify immutable commit: {text}", commit_id=_first_group(match))
    if kind == ErrorKind.SQUASH:
        return JjSquashError(f"Squash failed: {text}")
    if kind == ErrorKind.REVISION:
        return JjRevisionError(f"Revision not found: {text}", revision=_first_group(match))
    if kind == ErrorKind.STALE:
        return JjStaleWorkingCopyError(
            "Working copy is stale. Run 'jj workspace update-stale' to update it."
        )
    if kind == ErrorKind.WORKSPACE:
        return JjWorkspaceError(f"Workspace error: {text}", workspace=_first_group(match))

    return VcsError(f"jj {command} failed: {text}")


def map_gh_error(output: str, operation: str) -> PrError:
    """Map gh output into a typed PR host error.

    Args:
        output: stderr (or exception text) from gh
        operation: Human description of what was attempted

    Returns:
        PrError subclass matching the output; plain PrError if unrecognized
    """
    text = output.strip()
    kind, _ = classify(text, GH_ERROR_PATTERNS)

    if kind == ErrorKind.NOT_INSTALLED:
        return GhNotInstalledError()
    if kind == ErrorKind.NOT_AUTHENTICATED:
        return GhNotAuthenticatedError()
    if kind == ErrorKind.RATE_LIMITED:
        return GhRateLimitedError(f"GitHub API rate limit hit while trying to {operation}: {text}")
    if kind == ErrorKind.NOT_FOUND:
        return PrNotFoundError(f"No pull request found: {text}")

    return PrError(f"Failed to {operation}: {text}")
