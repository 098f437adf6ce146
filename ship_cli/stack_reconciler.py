"""
Stack Reconciler

Works out what each change in a jj stack needs on the PR host: a new PR,
a retargeted base branch, or nothing. Planning reads state only; executing
the plan is the submission module's job.

Ordering rules:
- Conflicts anywhere in the stack block planning before anything else runs.
- Bases are resolved base-first: the change closest to trunk targets the
  default branch and every later change targets the previous change's bookmark.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from .config import Constants
from .models import Change, PullRequest

PrLookup = Callable[[str], Awaitable[Optional[PullRequest]]]


class ActionKind(str, Enum):
    CREATE = "create"
    RETARGET = "retarget"
    NOOP = "noop"


@dataclass
class StackAction:
    """What to do for one bookmarked change."""
    kind: ActionKind
    change: Change
    bookmark: str
    base: str
    existing_pr: Optional[PullRequest] = None

    @property
    def previous_base(self) -> Optional[str]:
        return self.existing_pr.base if self.existing_pr else None

    def describe(self) -> str:
        if self.kind == ActionKind.CREATE:
            return f"create({self.bookmark} -> {self.base})"
        if self.kind == ActionKind.RETARGET:
            return f"retarget(#{self.existing_pr.number} {self.bookmark}: {self.previous_base} -> {self.base})"
        return f"noop({self.bookmark})"


@dataclass
class StackPlan:
    """Ordered actions, base-first, or the conflicts that blocked planning."""
    actions: List[StackAction] = field(default_factory=list)
    conflicts: List[Change] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.conflicts)

    def actions_of(self, kind: ActionKind) -> List[StackAction]:
        return [a for a in self.actions if a.kind == kind]


def find_conflicts(changes: Sequence[Change]) -> List[Change]:
    return [c for c in changes if c.has_conflict]


def format_conflict_error(conflicts: Sequence[Change], action: str = "create PRs") -> str:
    """Human-readable list of conflicted changes.

    Example:
        Cannot create PRs: 1 change(s) have conflicts. Resolve conflicts first:
          - kxqpwzlm: Add login form
    """
    lines = [f"Cannot {action}: {len(conflicts)} change(s) have conflicts. Resolve conflicts first:"]
    for change in conflicts:
        lines.append(f"  - {change.short_id}: {change.title or '(no description)'}")
    return "\n".join(lines)


def is_eligible(change: Change) -> bool:
    """A change can get its own PR if it has a bookmark and content."""
    return change.bookmark is not None and not change.is_empty


def eligible_changes(stack: Sequence[Change]) -> List[Change]:
    """Bookmarked, non-empty changes ordered base-first (closest to trunk first)."""
    return [c for c in reversed(stack) if is_eligible(c)]


def resolve_bases(eligible: Sequence[Change], default_branch: str) -> List[str]:
    """Base branch per eligible change, given base-first order."""
    bases = []
    previous: Optional[str] = None
    for change in eligible:
        bases.append(previous or default_branch)
        previous = change.bookmark
    return bases


def classify(change: Change, base: str, existing_pr: Optional[PullRequest]) -> StackAction:
    bookmark = change.bookmark
    if existing_pr is None:
        return StackAction(ActionKind.CREATE, change, bookmark, base)
    if existing_pr.base != base:
        return StackAction(ActionKind.RETARGET, change, bookmark, base, existing_pr)
    return StackAction(ActionKind.NOOP, change, bookmark, base, existing_pr)


async def plan_stack(
    current_change: Optional[Change],
    stack: Sequence[Change],
    pr_lookup: PrLookup,
    default_branch: Optional[str] = None,
    max_concurrent: Optional[int] = None,
) -> StackPlan:
    """Plan PR actions for every eligible change in a stack.

    Args:
        current_change: Working-copy change; added at the tip if the stack omits it
        stack: Changes from trunk (exclusive) to the working copy, newest first
        pr_lookup: Coroutine returning the open PR for a head branch, or None
        default_branch: Trunk branch name (default: from Constants)
        max_concurrent: Maximum concurrent PR lookups (default: from Constants)

    Returns:
        StackPlan with base-first actions, or with conflicts and no actions
    """
    default_branch = default_branch or Constants.DEFAULT_BRANCH
    changes = list(stack)
    if current_change is not None and all(c.id != current_change.id for c in changes):
        changes.insert(0, current_change)

    conflicts = find_conflicts(changes)
    if conflicts:
        return StackPlan(conflicts=conflicts)

    eligible = eligible_changes(changes)
    bases = resolve_bases(eligible, default_branch)

    # Lookups are independent of each other; only base resolution is ordered.
    semaphore = asyncio.Semaphore(max_concurrent or Constants.MAX_CONCURRENT_PR_LOOKUPS)

    async def lookup_with_limit(bookmark: str) -> Optional[PullRequest]:
        async with semaphore:
            return await pr_lookup(bookmark)

    existing = await asyncio.gather(*(lookup_with_limit(c.bookmark) for c in eligible))

    return StackPlan(actions=[
        classify(change, base, pr)
        for change, base, pr in zip(eligible, bases, existing)
    ])
