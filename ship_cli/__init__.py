"""
ship - Stacked Change Workflow Tool

A command-line tool that ties together jj stacked changes, GitHub pull
requests and Linear tasks, so a developer or an AI agent can go from a
task to a reviewed stack of PRs with a handful of commands.
"""

__version__ = "0.1.0"
__author__ = "ship Development Team"

from .submission import SubmissionOrchestrator
from .workspace_manager import WorkspaceLifecycleManager, WorkspaceStore
from .stack_reconciler import plan_stack
from .vcs import JjVcs
from .pr_host import GitHubPrHost
from .issue_tracker import LinearIssueTracker
from .daemon import DaemonClient

__all__ = [
    "SubmissionOrchestrator",
    "WorkspaceLifecycleManager",
    "WorkspaceStore",
    "plan_stack",
    "JjVcs",
    "GitHubPrHost",
    "LinearIssueTracker",
    "DaemonClient",
]
