"""
Submission Orchestrator

Executes the push / create-or-update-PR / notify pipeline for a single
change (`stack submit`, `pr create`), for a whole stack (`pr stack`), and
the fetch / rebase / push cycle of `stack restack`.

Only conflicts and the push of the submitted bookmark are fatal. Everything
after a successful push degrades to partial success, since re-running the
command picks up where it stopped (PRs are looked up by branch name first).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console

from .config import Constants, ShipConfig
from .daemon import DaemonClient
from .errors import (
    ConflictError,
    EmptyChangeError,
    GhNotAuthenticatedError,
    IssueTrackerError,
    JjConflictError,
    NoBookmarkError,
    NotARepoError,
    PrError,
    ShipError,
    VcsError,
)
from .issue_tracker import LinearIssueTracker
from .models import Change, Outcome, PullRequest, Task
from .pr_body import PrBody, extract_task_id, generate_minimal_pr_body, generate_pr_body
from .pr_host import GitHubPrHost
from .stack_reconciler import (
    ActionKind,
    find_conflicts,
    format_conflict_error,
    is_eligible,
    plan_stack,
)
from .vcs import JjVcs

console = Console(stderr=True)


@dataclass
class EffectiveChange:
    """The change submit operates on, and whether the parent stood in for @."""
    change: Change
    substituted: bool = False


@dataclass
class PrSummary:
    url: str
    number: int
    status: str  # 'created', 'updated', 'exists'

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "number": self.number, "status": self.status}


@dataclass
class SubmitResult:
    """Outcome of `stack submit`.

    `pushed=True` together with `error` is a partial success: the bookmark is
    on the remote but the PR step failed.
    """
    pushed: bool
    bookmark: Optional[str] = None
    base_branch: Optional[str] = None
    pushed_bookmarks: List[str] = field(default_factory=list)
    pr: Optional[PrSummary] = None
    error: Optional[str] = None
    subscribed: Optional[Dict[str, Any]] = None
    abandoned_empty_changes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.pushed and self.error is None

    @property
    def partial(self) -> bool:
        return self.pushed and self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"pushed": self.pushed}
        if self.bookmark is not None:
            data["bookmark"] = self.bookmark
        if self.pushed_bookmarks:
            data["pushedBookmarks"] = list(self.pushed_bookmarks)
        if self.base_branch is not None:
            data["baseBranch"] = self.base_branch
        if self.pr is not None:
            data["pr"] = self.pr.to_dict()
        if self.error is not None:
            data["error"] = self.error
        if self.subscribed is not None:
            data["subscribed"] = self.subscribed
        if self.abandoned_empty_changes:
            data["abandonedEmptyChanges"] = list(self.abandoned_empty_changes)
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class SubmitPreview:
    """What `stack submit --dry-run` would do."""
    bookmark: str
    all_bookmarks: List[str]
    base_branch: str
    would_abandon: List[str]
    pr_action: str  # 'create', 'update', 'none'
    title: str
    draft: bool
    existing_pr_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        pr: Dict[str, Any] = {"action": self.pr_action, "title": self.title, "draft": self.draft}
        if self.existing_pr_number is not None:
            pr["existingPrNumber"] = self.existing_pr_number
        data: Dict[str, Any] = {
            "dryRun": True,
            "wouldPush": {
                "bookmark": self.bookmark,
                "allBookmarks": list(self.all_bookmarks),
                "baseBranch": self.base_branch,
            },
            "pr": pr,
        }
        if self.would_abandon:
            data["wouldAbandonEmptyChanges"] = list(self.would_abandon)
        return data


@dataclass
class CreatePrResult:
    bookmark: str
    base_branch: str
    pr: Optional[PrSummary] = None
    task_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"bookmark": self.bookmark, "baseBranch": self.base_branch}
        if self.pr is not None:
            data["pr"] = self.pr.to_dict()
        if self.task_id is not None:
            data["taskId"] = self.task_id
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class StackEntryResult:
    change_id: str
    bookmark: str
    base_branch: str
    status: str = "pending"  # 'created', 'exists', 'retargeted', 'would-create', 'would-retarget', 'error'
    pr: Optional[PrSummary] = None
    previous_base: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "changeId": self.change_id,
            "bookmark": self.bookmark,
            "baseBranch": self.base_branch,
            "status": self.status,
        }
        if self.pr is not None:
            data["pr"] = self.pr.to_dict()
        if self.previous_base is not None:
            data["previousBase"] = self.previous_base
        if self.task_id is not None:
            data["taskId"] = self.task_id
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class StackSubmitResult:
    entries: List[StackEntryResult] = field(default_factory=list)
    dry_run: bool = False

    def count(self, *statuses: str) -> int:
        return sum(1 for e in self.entries if e.status in statuses)

    @property
    def errors(self) -> int:
        return sum(1 for e in self.entries if e.error is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dryRun": self.dry_run,
            "results": [e.to_dict() for e in self.entries],
            "summary": {
                "total": len(self.entries),
                "created": self.count("created", "would-create"),
                "exists": self.count("exists"),
                "retargeted": self.count("retargeted", "would-retarget"),
                "errors": self.errors,
            },
        }


@dataclass
class RestackResult:
    fetched: bool
    restacked: bool = False
    stack_size: int = 0
    trunk_change_id: Optional[str] = None
    conflicted: bool = False
    pushed_bookmarks: List[Outcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def pushed(self) -> bool:
        return any(o.ok for o in self.pushed_bookmarks)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fetched": self.fetched,
            "restacked": self.restacked,
            "pushed": self.pushed,
            "stackSize": self.stack_size,
            "trunkChangeId": self.trunk_change_id,
            "conflicted": self.conflicted,
            "pushedBookmarks": [
                {"bookmark": o.target, "success": o.ok, **({"error": o.error} if o.error else {})}
                for o in self.pushed_bookmarks
            ],
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def pr_summary(pr: PullRequest, status: str) -> PrSummary:
    return PrSummary(url=pr.url, number=pr.number, status=status)


def auto_abandon_candidates(stack: Sequence[Change], effective: Change) -> List[Change]:
    """Stray empty changes that can be dropped silently before a push.

    A candidate is empty, has no real description and no bookmark. The
    effective change is never a candidate.
    """
    return [
        c for c in stack
        if c.is_empty
        and not c.has_meaningful_description
        and not c.bookmarks
        and c.id != effective.id
    ]


def stack_bookmarks(effective: Change, stack: Sequence[Change]) -> List[str]:
    """Effective bookmark first, then every other eligible bookmark in the stack."""
    bookmarks = [effective.bookmark]
    for change in stack:
        if is_eligible(change) and change.bookmark not in bookmarks:
            bookmarks.append(change.bookmark)
    return bookmarks


class SubmissionOrchestrator:
    """Runs submit, PR and restack flows against the jj, GitHub, Linear and daemon adapters."""

    def __init__(
        self,
        vcs: JjVcs,
        pr_host: GitHubPrHost,
        issue_tracker: Optional[LinearIssueTracker] = None,
        daemon: Optional[DaemonClient] = None,
        config: Optional[ShipConfig] = None,
    ) -> None:
        self.vcs = vcs
        self.pr_host = pr_host
        self.issue_tracker = issue_tracker
        self.daemon = daemon
        self.config = config or ShipConfig()

    @property
    def default_branch(self) -> str:
        return self.config.git.default_branch

    async def check_prerequisites(self, need_pr_host: bool = True) -> None:
        """Fail before any side effect if jj or gh cannot be used.

        Raises:
            VcsError: If jj is missing
            NotARepoError: If the current directory is not a jj repo
            GhNotAuthenticatedError: If gh is missing or not logged in
        """
        if not await self.vcs.is_available():
            raise VcsError("jj is not installed. Install it from https://jj-vcs.github.io/jj/")
        if not await self.vcs.is_repo():
            raise NotARepoError("Not a jj repository. Run 'jj git init' to create one.")
        if need_pr_host and not await self.pr_host.is_available():
            raise GhNotAuthenticatedError(
                "GitHub CLI (gh) is not installed or not authenticated. Run 'gh auth login' first."
            )

    async def resolve_effective_change(self, current: Change) -> EffectiveChange:
        """Use the parent when @ is a fresh empty checkpoint on top of real work."""
        if current.is_empty and not current.bookmarks:
            parent = await self.vcs.get_parent_change()
            if parent is not None and parent.bookmarks and not parent.is_empty:
                return EffectiveChange(parent, substituted=True)
        return EffectiveChange(current)

    async def resolve_base_branch(self, effective: EffectiveChange) -> str:
        """Bookmark of the change below the effective one, else the default branch."""
        revset = "@--" if effective.substituted else "@-"
        below = await self.vcs.get_log(revset)
        if below and below[0].bookmark:
            return below[0].bookmark
        return self.default_branch

    def _check_conflicts(self, changes: Sequence[Change], action: str) -> None:
        conflicts = find_conflicts(changes)
        if conflicts:
            raise ConflictError(format_conflict_error(conflicts, action), conflicts)

    async def _abandon_strays(self, candidates: Sequence[Change]) -> List[Outcome]:
        outcomes = []
        for change in candidates:
            try:
                await self.vcs.abandon(change.change_id)
                outcomes.append(Outcome(change.change_id, True))
            except VcsError as e:
                console.print(f"[yellow]Could not abandon empty change {change.short_id}: {e}[/yellow]")
                outcomes.append(Outcome(change.change_id, False, str(e)))
        return outcomes

    async def _push_many(self, bookmarks: Sequence[str]) -> List[Outcome]:
        semaphore = asyncio.Semaphore(Constants.MAX_CONCURRENT_PUSHES)

        async def push_with_limit(bookmark: str) -> Outcome:
            async with semaphore:
                try:
                    await self.vcs.push(bookmark)
                    return Outcome(bookmark, True)
                except VcsError as e:
                    return Outcome(bookmark, False, str(e))

        return list(await asyncio.gather(*(push_with_limit(b) for b in bookmarks)))

    async def _lookup_pr_numbers(self, bookmarks: Sequence[str]) -> List[int]:
        """PR numbers for bookmarks; missing PRs and failed lookups are skipped."""
        semaphore = asyncio.Semaphore(Constants.MAX_CONCURRENT_PR_LOOKUPS)

        async def lookup(bookmark: str) -> Optional[int]:
            async with semaphore:
                try:
                    pr = await self.pr_host.get_pr_by_branch(bookmark)
                except PrError:
                    return None
                return pr.number if pr else None

        numbers = await asyncio.gather(*(lookup(b) for b in bookmarks))
        return [n for n in numbers if n is not None]

    async def _subscribe(self, session_id: str, pr_number: int, stack: Sequence[Change],
                         bookmark: str) -> Optional[Dict[str, Any]]:
        if self.daemon is None or not await self.daemon.is_running():
            console.print("[dim]Webhook daemon not running, skipping subscription[/dim]")
            return None

        others = [c.bookmark for c in stack if c.bookmark and c.bookmark != bookmark]
        pr_numbers = [pr_number]
        for number in await self._lookup_pr_numbers(list(dict.fromkeys(others))):
            if number not in pr_numbers:
                pr_numbers.append(number)

        try:
            await self.daemon.subscribe(session_id, pr_numbers)
        except ShipError as e:
            console.print(f"[yellow]Failed to subscribe session {session_id}: {e}[/yellow]")
            return None
        return {"sessionId": session_id, "prNumbers": pr_numbers}

    async def _prepare_submit(self) -> tuple:
        current = await self.vcs.get_current_change()
        effective = await self.resolve_effective_change(current)
        change = effective.change

        if not change.bookmarks:
            raise NoBookmarkError()
        if change.is_empty:
            raise EmptyChangeError()

        self._check_conflicts([change], "submit")
        stack = await self.vcs.get_stack()
        self._check_conflicts(stack, "submit")
        return effective, stack

    async def preview_submit(
        self,
        title: Optional[str] = None,
        body: Optional[str] = None,
        draft: bool = False,
    ) -> SubmitPreview:
        """Report what submit would do without writing anything."""
        effective, stack = await self._prepare_submit()
        change = effective.change
        bookmark = change.bookmark
        existing = await self._safe_get_pr(bookmark)

        return SubmitPreview(
            bookmark=bookmark,
            all_bookmarks=stack_bookmarks(change, stack),
            base_branch=await self.resolve_base_branch(effective),
            would_abandon=[c.change_id for c in auto_abandon_candidates(stack, change)],
            pr_action="update" if existing and (title or body is not None) else ("none" if existing else "create"),
            title=title or change.title or bookmark,
            draft=draft,
            existing_pr_number=existing.number if existing else None,
        )

    async def _safe_get_pr(self, bookmark: str) -> Optional[PullRequest]:
        try:
            return await self.pr_host.get_pr_by_branch(bookmark)
        except PrError as e:
            console.print(f"[yellow]Could not look up PR for {bookmark}: {e}[/yellow]")
            return None

    async def submit(
        self,
        title: Optional[str] = None,
        body: Optional[str] = None,
        draft: bool = False,
        subscribe_session_id: Optional[str] = None,
    ) -> SubmitResult:
        """Push the effective change and create or update its PR.

        Args:
            title: PR title override
            body: PR body override
            draft: Create the PR as a draft
            subscribe_session_id: Agent session to subscribe to the stack's PRs

        Returns:
            SubmitResult; `pushed=False` means nothing was pushed

        Raises:
            NoBookmarkError: If the effective change has no bookmark
            EmptyChangeError: If the effective change is empty
            ConflictError: If the effective change or the stack has conflicts
        """
        effective, stack = await self._prepare_submit()
        change = effective.change
        bookmark = change.bookmark

        candidates = auto_abandon_candidates(stack, change)
        abandoned = [o.target for o in await self._abandon_strays(candidates) if o.ok]

        console.print(f"[green]Pushing {bookmark}...[/green]")
        try:
            await self.vcs.push(bookmark)
        except VcsError as e:
            return SubmitResult(
                pushed=False,
                bookmark=bookmark,
                error=f"Failed to push {bookmark}: {e}",
                abandoned_empty_changes=abandoned,
            )

        result = SubmitResult(pushed=True, bookmark=bookmark, pushed_bookmarks=[bookmark],
                              abandoned_empty_changes=abandoned)

        others = [b for b in stack_bookmarks(change, stack) if b != bookmark]
        for outcome in await self._push_many(others):
            if outcome.ok:
                result.pushed_bookmarks.append(outcome.target)
            else:
                console.print(f"[yellow]Failed to push {outcome.target}: {outcome.error}[/yellow]")
                result.warnings.append(f"Failed to push {outcome.target}: {outcome.error}")

        result.base_branch = await self.resolve_base_branch(effective)
        pr_title = title or change.title or bookmark
        pr_body = body if body is not None else change.description

        existing = await self._safe_get_pr(bookmark)
        if existing is not None and title is None and body is None:
            result.pr = pr_summary(existing, "exists")
        elif existing is not None:
            try:
                updated = await self.pr_host.update_pr(existing.number, title=title, body=body)
                result.pr = pr_summary(updated, "updated")
            except PrError as e:
                result.error = f"Pushed but failed to update PR: {e}"
        else:
            try:
                created = await self.pr_host.create_pr(pr_title, pr_body, bookmark, result.base_branch, draft)
                result.pr = pr_summary(created, "created")
            except PrError as e:
                result.error = f"Pushed but failed to create PR: {e}"

        if subscribe_session_id and result.pr is not None:
            result.subscribed = await self._subscribe(subscribe_session_id, result.pr.number, stack, bookmark)

        return result

    async def _fetch_task(self, task_id: Optional[str]) -> Optional[Task]:
        if not task_id or self.issue_tracker is None or not self.issue_tracker.configured:
            return None
        try:
            return await self.issue_tracker.get_task_by_identifier(task_id)
        except IssueTrackerError as e:
            console.print(f"[yellow]Could not fetch task {task_id}: {e}[/yellow]")
            return None

    def _build_body(self, change: Change, task: Optional[Task], stack_changes: Sequence[Change]) -> PrBody:
        if task is not None:
            return generate_pr_body(task, stack_changes=stack_changes)
        return generate_minimal_pr_body(change, stack_changes=stack_changes)

    async def create_pr(self, draft: bool = False, open_browser: bool = False) -> CreatePrResult:
        """Open a PR for the effective change, with a body built from its task.

        Raises:
            NoBookmarkError: If the effective change has no bookmark
            ConflictError: If the effective change has conflicts
        """
        current = await self.vcs.get_current_change()
        effective = await self.resolve_effective_change(current)
        change = effective.change
        if not change.bookmarks:
            raise NoBookmarkError()
        self._check_conflicts([change], "create PR")

        bookmark = change.bookmark
        task_id = extract_task_id(bookmark)

        existing = await self._safe_get_pr(bookmark)
        if existing is not None:
            if open_browser:
                await self.pr_host.open_in_browser(existing.url)
            return CreatePrResult(bookmark=bookmark, base_branch=existing.base,
                                  pr=pr_summary(existing, "exists"), task_id=task_id)

        base_branch = await self.resolve_base_branch(effective)
        task = await self._fetch_task(task_id)
        stack_changes = await self.vcs.get_stack()
        pr_body = self._build_body(change, task, stack_changes)

        try:
            pr = await self.pr_host.create_pr(pr_body.title, pr_body.body, bookmark, base_branch, draft)
        except PrError as e:
            return CreatePrResult(bookmark=bookmark, base_branch=base_branch, task_id=task_id,
                                  error=f"Failed to create PR: {e}")

        if open_browser:
            await self.pr_host.open_in_browser(pr.url)
        return CreatePrResult(bookmark=bookmark, base_branch=base_branch,
                              pr=pr_summary(pr, "created"), task_id=task_id)

    async def submit_stack(self, draft: bool = False, dry_run: bool = False) -> StackSubmitResult:
        """Create or retarget a PR for every bookmarked change, base-first.

        Raises:
            ShipError: If the stack is empty or has no bookmarked changes
            ConflictError: If any change in the stack has conflicts
        """
        stack = await self.vcs.get_stack()
        if not stack:
            raise ShipError("No changes in stack to create PRs for.")

        plan = await plan_stack(None, stack, self.pr_host.get_pr_by_branch, self.default_branch)
        if plan.blocked:
            raise ConflictError(format_conflict_error(plan.conflicts), plan.conflicts)
        if not plan.actions:
            raise ShipError(
                "No changes with bookmarks found in stack. "
                "Create bookmarks with 'jj bookmark create <name>'."
            )

        creates = plan.actions_of(ActionKind.CREATE)
        semaphore = asyncio.Semaphore(Constants.MAX_CONCURRENT_PR_LOOKUPS)

        async def prefetch(bookmark: str) -> Optional[Task]:
            async with semaphore:
                return await self._fetch_task(extract_task_id(bookmark))

        tasks = {}
        if not dry_run:
            fetched = await asyncio.gather(*(prefetch(a.bookmark) for a in creates))
            tasks = {a.bookmark: task for a, task in zip(creates, fetched)}

        result = StackSubmitResult(dry_run=dry_run)
        for action in plan.actions:
            entry = StackEntryResult(
                change_id=action.change.change_id,
                bookmark=action.bookmark,
                base_branch=action.base,
                task_id=extract_task_id(action.bookmark),
            )
            result.entries.append(entry)

            if action.kind == ActionKind.NOOP:
                entry.status = "exists"
                entry.pr = pr_summary(action.existing_pr, "exists")
            elif action.kind == ActionKind.RETARGET:
                entry.previous_base = action.previous_base
                if dry_run:
                    entry.status = "would-retarget"
                    entry.pr = pr_summary(action.existing_pr, "exists")
                    continue
                try:
                    pr = await self.pr_host.update_pr_base(action.existing_pr.number, action.base)
                    entry.status = "retargeted"
                    entry.pr = pr_summary(pr, "updated")
                except PrError as e:
                    entry.status = "exists"
                    entry.pr = pr_summary(action.existing_pr, "exists")
                    entry.error = f"Failed to retarget PR: {e}"
            else:
                if dry_run:
                    entry.status = "would-create"
                    continue
                pr_body = self._build_body(action.change, tasks.get(action.bookmark), [action.change])
                try:
                    pr = await self.pr_host.create_pr(pr_body.title, pr_body.body, action.bookmark,
                                                      action.base, draft)
                    entry.status = "created"
                    entry.pr = pr_summary(pr, "created")
                except PrError as e:
                    entry.status = "error"
                    entry.error = f"Failed to create PR: {e}"

        return result

    async def restack(self) -> RestackResult:
        """Fetch, rebase the stack onto the default branch, push its bookmarks."""
        try:
            await self.vcs.fetch()
        except VcsError as e:
            return RestackResult(fetched=False, error=f"Failed to fetch: {e}")

        stack = await self.vcs.get_stack()
        trunk = await self.vcs.get_trunk_info()
        if not stack:
            return RestackResult(fetched=True, trunk_change_id=trunk.change_id)

        try:
            await self.vcs.rebase(stack[-1].id, self.default_branch)
        except JjConflictError as e:
            console.print(f"[yellow]Rebase produced conflicts: {e}[/yellow]")
            stack = await self.vcs.get_stack()
            return RestackResult(fetched=True, restacked=True, stack_size=len(stack),
                                 trunk_change_id=trunk.change_id, conflicted=True)
        except VcsError as e:
            return RestackResult(fetched=True, trunk_change_id=trunk.change_id,
                                 error=f"Failed to rebase: {e}")

        new_stack = await self.vcs.get_stack()
        trunk = await self.vcs.get_trunk_info()
        result = RestackResult(fetched=True, restacked=True, stack_size=len(new_stack),
                               trunk_change_id=trunk.change_id)
        if find_conflicts(new_stack):
            result.conflicted = True
            return result

        for change in new_stack:
            for bookmark in change.bookmarks:
                try:
                    await self.vcs.push(bookmark)
                    result.pushed_bookmarks.append(Outcome(bookmark, True))
                except VcsError as e:
                    console.print(f"[yellow]Failed to push {bookmark}: {e}[/yellow]")
                    result.pushed_bookmarks.append(Outcome(bookmark, False, str(e)))

        return result
