"""
GitHub Integration

PR host operations backed by the GitHub CLI (gh). Queries live state from
GitHub on demand; the head branch is the lookup key for every PR.
"""

import json
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from rich.console import Console

from .config import Constants
from .errors import (
    GhNotInstalledError,
    GhRateLimitedError,
    PrError,
    PrNotFoundError,
    PrTimeoutError,
    map_gh_error,
)
from .models import ConversationComment, PullRequest, Review, ReviewComment
from .process import run_command, with_retry

console = Console(stderr=True)

PR_VIEW_FIELDS = "id,number,title,url,state,headRefName,baseRefName"

_TRANSIENT_ERRORS = (PrTimeoutError, GhRateLimitedError)


class GitHubPrHost:
    """Pull request operations used by ship."""

    def __init__(
        self,
        cwd: Optional[Path] = None,
        gh_command: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize GitHub adapter.

        Args:
            cwd: Repository directory (default: current directory)
            gh_command: GitHub CLI command (default: from Constants)
            timeout: Per-call timeout in seconds (default: from Constants)
        """
        self.cwd = cwd
        self.gh_command = gh_command or Constants.GITHUB_CLI_COMMAND
        self.timeout = timeout or Constants.GH_TIMEOUT

    async def _run(self, args: List[str], operation: str) -> str:
        try:
            result = await run_command([self.gh_command, *args], self.timeout, self.cwd)
        except FileNotFoundError as e:
            raise GhNotInstalledError() from e
        except subprocess.TimeoutExpired as e:
            raise PrTimeoutError(f"gh timed out after {self.timeout:g}s while trying to {operation}") from e

        if result.returncode != 0:
            raise map_gh_error(result.stderr or result.stdout, operation)
        return result.stdout

    async def _read(self, args: List[str], operation: str) -> str:
        return await with_retry(
            lambda: self._run(args, operation),
            operation,
            retry_on=_TRANSIENT_ERRORS,
        )

    async def _read_json_lines(self, endpoint: str, operation: str) -> List[Dict[str, Any]]:
        """Read a paginated REST list as one JSON object per line."""
        output = await self._read(["api", endpoint, "--paginate", "--jq", ".[]"], operation)
        items = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise PrError(f"Failed to {operation}: unexpected gh output {line[:80]!r}") from e
        return items

    def _parse_pr(self, output: str, operation: str) -> PullRequest:
        try:
            return PullRequest.from_gh_json(json.loads(output))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise PrError(f"Failed to {operation}: could not parse gh output: {e}") from e

    async def is_available(self) -> bool:
        """Check that gh is installed and authenticated."""
        for args in (["--version"], ["auth", "status"]):
            try:
                result = await run_command([self.gh_command, *args], self.timeout, self.cwd)
            except (FileNotFoundError, subprocess.TimeoutExpired):
                return False
            if result.returncode != 0:
                return False
        return True

    async def get_pr_by_branch(self, branch: str) -> Optional[PullRequest]:
        """Find the PR whose head is branch.

        Returns:
            PullRequest, or None if the branch has no PR
        """
        operation = f"look up PR for {branch}"
        try:
            output = await self._read(["pr", "view", branch, "--json", PR_VIEW_FIELDS], operation)
        except PrNotFoundError:
            return None
        return self._parse_pr(output, operation)

    async def get_pr(self, number: int) -> PullRequest:
        operation = f"view PR #{number}"
        output = await self._read(["pr", "view", str(number), "--json", PR_VIEW_FIELDS], operation)
        return self._parse_pr(output, operation)

    async def create_pr(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
    ) -> PullRequest:
        """Create a PR. Never retried; callers look up the branch first.

        Raises:
            PrError: If creation fails or the new PR cannot be read back
        """
        args = ["pr", "create", "--title", title, "--body", body, "--head", head, "--base", base]
        if draft:
            args.append("--draft")
        await self._run(args, f"create PR for {head}")

        pr = await self.get_pr_by_branch(head)
        if pr is None:
            raise PrError(f"PR for {head} was created but could not be read back")
        return pr

    async def update_pr(self, number: int, title: Optional[str] = None, body: Optional[str] = None) -> PullRequest:
        args = ["pr", "edit", str(number)]
        if title is not None:
            args.extend(["--title", title])
        if body is not None:
            args.extend(["--body", body])
        await self._run(args, f"update PR #{number}")
        return await self.get_pr(number)

    async def update_pr_base(self, number: int, base: str) -> PullRequest:
        await self._run(["pr", "edit", str(number), "--base", base], f"retarget PR #{number}")
        return await self.get_pr(number)

    async def get_reviews(self, number: int) -> List[Review]:
        items = await self._read_json_lines(
            f"repos/{{owner}}/{{repo}}/pulls/{number}/reviews", f"fetch reviews for PR #{number}"
        )
        return [
            Review(
                id=item["id"],
                author=(item.get("user") or {}).get("login", "unknown"),
                state=item.get("state", ""),
                body=item.get("body") or "",
                submitted_at=item.get("submitted_at") or "",
            )
            for item in items
        ]

    async def get_review_comments(self, number: int) -> List[ReviewComment]:
        items = await self._read_json_lines(
            f"repos/{{owner}}/{{repo}}/pulls/{number}/comments", f"fetch code comments for PR #{number}"
        )
        return [
            ReviewComment(
                id=item["id"],
                path=item.get("path", ""),
                line=item.get("line") if item.get("line") is not None else item.get("original_line"),
                body=item.get("body") or "",
                author=(item.get("user") or {}).get("login", "unknown"),
                created_at=item.get("created_at", ""),
                in_reply_to_id=item.get("in_reply_to_id"),
                diff_hunk=item.get("diff_hunk"),
            )
            for item in items
        ]

    async def get_pr_comments(self, number: int) -> List[ConversationComment]:
        items = await self._read_json_lines(
            f"repos/{{owner}}/{{repo}}/issues/{number}/comments", f"fetch comments for PR #{number}"
        )
        return [
            ConversationComment(
                id=item["id"],
                body=item.get("body") or "",
                author=(item.get("user") or {}).get("login", "unknown"),
                created_at=item.get("created_at", ""),
            )
            for item in items
        ]

    async def open_in_browser(self, url: str) -> None:
        if click.launch(url) != 0:
            console.print(f"[yellow]Could not open browser, visit {url}[/yellow]")
