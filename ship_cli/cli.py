#!/usr/bin/env python3
"""
ship CLI

Main command-line interface for ship using Click.
Provides the stacked-change commands (`stack ...`) and PR commands (`pr ...`).
Every command accepts --json for a stable machine-readable result on stdout.
"""

import sys
import json
import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, NoReturn, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Constants, ShipConfig
from .daemon import DaemonClient
from .errors import ConfigError, ConflictError, PrError, ShipError
from .issue_tracker import LinearIssueTracker
from .pr_host import GitHubPrHost
from .review_monitor import fetch_review_feedback, format_feedback
from .submission import RestackResult, StackSubmitResult, SubmissionOrchestrator, SubmitResult
from .vcs import JjVcs
from .workspace_manager import WorkspaceLifecycleManager, WorkspaceStore

console = Console()
err_console = Console(stderr=True)


class Config:
    """Global configuration object passed between commands."""

    def __init__(self) -> None:
        self.verbose: bool = False
        self.root: Path = Path.cwd()
        self._ship_config: Optional[ShipConfig] = None

    @property
    def ship_config(self) -> ShipConfig:
        """Repository config, loaded on first use."""
        if self._ship_config is None:
            self._ship_config = ShipConfig.load(self.root)
        return self._ship_config

    def vcs(self) -> JjVcs:
        return JjVcs(cwd=self.root)

    def orchestrator(self) -> SubmissionOrchestrator:
        ship_config = self.ship_config
        return SubmissionOrchestrator(
            vcs=self.vcs(),
            pr_host=GitHubPrHost(cwd=self.root),
            issue_tracker=LinearIssueTracker(api_key=ship_config.api_key),
            daemon=DaemonClient(),
            config=ship_config,
        )

    def workspaces(self) -> WorkspaceLifecycleManager:
        return WorkspaceLifecycleManager(
            vcs=self.vcs(),
            store=WorkspaceStore(Constants.get_ship_dir(self.root)),
            config=self.ship_config,
        )


pass_config = click.make_pass_decorator(Config, ensure=True)

json_option = click.option("--json", "as_json", is_flag=True, help="Output as JSON")


def _emit_json(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2))


def _fail(message: str, as_json: bool, extra: Optional[Dict[str, Any]] = None) -> NoReturn:
    """Report a fatal error and exit non-zero."""
    if as_json:
        _emit_json({"error": message, **(extra or {})})
    else:
        err_console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _run(config: Config, as_json: bool, work: Callable[[], Awaitable[Any]]) -> Any:
    """Run an async command body, turning ShipError into a clean failure."""
    try:
        return asyncio.run(work())
    except ConflictError as e:
        _fail(e.message, as_json, {"conflicts": [c.to_dict() for c in e.changes]})
    except ShipError as e:
        if config.verbose:
            raise
        _fail(e.message, as_json)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@pass_config
def main(config: Config, verbose: bool) -> None:
    """ship - stacked changes, PRs and tasks in one workflow."""
    config.verbose = verbose
    try:
        config.ship_config
    except ConfigError as e:
        err_console.print(f"[red]{e.message}[/red]")
        sys.exit(1)


@main.group()
def stack() -> None:
    """Stacked change commands."""
    pass


@stack.command()
@click.option("--draft", is_flag=True, help="Create the PR as a draft")
@click.option("--title", "-t", help="PR title (default: first line of the description)")
@click.option("--body", "-b", help="PR body (default: the full description)")
@click.option("--subscribe", "session_id", help="Agent session to subscribe to the stack's PRs")
@click.option("--dry-run", is_flag=True, help="Show what would happen without pushing")
@json_option
@pass_config
def submit(
    config: Config,
    draft: bool,
    title: Optional[str],
    body: Optional[str],
    session_id: Optional[str],
    dry_run: bool,
    as_json: bool,
) -> None:
    """Push the current change and create or update its PR."""
    orchestrator = config.orchestrator()

    async def run_submit():
        await orchestrator.check_prerequisites()
        if dry_run:
            return await orchestrator.preview_submit(title=title, body=body, draft=draft)
        return await orchestrator.submit(title=title, body=body, draft=draft, subscribe_session_id=session_id)

    result = _run(config, as_json, run_submit)

    if dry_run:
        if as_json:
            _emit_json(result.to_dict())
            return
        console.print("[bold]Dry run[/bold] - nothing will be pushed")
        console.print(f"Would push: [cyan]{', '.join(result.all_bookmarks)}[/cyan]")
        console.print(f"Base branch: {result.base_branch}")
        if result.would_abandon:
            console.print(f"Would abandon empty changes: {', '.join(c[:8] for c in result.would_abandon)}")
        pr_line = f"PR: {result.pr_action} \"{result.title}\""
        if result.existing_pr_number:
            pr_line += f" (#{result.existing_pr_number})"
        console.print(pr_line)
        return

    if as_json:
        _emit_json(result.to_dict())
    else:
        _print_submit_result(result)

    if not result.ok:
        sys.exit(1)


def _print_submit_result(result: SubmitResult) -> None:
    if not result.pushed:
        console.print(f"[red]{result.error}[/red]")
        return

    for change_id in result.abandoned_empty_changes:
        console.print(f"[dim]Abandoned empty change {change_id[:8]}[/dim]")

    console.print(f"[green]Pushed {', '.join(result.pushed_bookmarks)}[/green]")
    console.print(f"[blue]Base branch: {result.base_branch}[/blue]")
    for warning in result.warnings:
        console.print(f"[yellow]{warning}[/yellow]")

    if result.pr is not None:
        verb = {"created": "Created", "updated": "Updated", "exists": "PR already exists:"}[result.pr.status]
        console.print(f"[green]{verb} PR #{result.pr.number}[/green] {result.pr.url}")
    if result.error:
        console.print(f"[red]{result.error}[/red]")
        console.print("[dim]The push succeeded; re-run 'ship stack submit' to retry the PR step.[/dim]")
    if result.subscribed:
        numbers = ", ".join(f"#{n}" for n in result.subscribed["prNumbers"])
        console.print(f"[blue]Subscribed session {result.subscribed['sessionId']} to {numbers}[/blue]")


@stack.command()
@json_option
@pass_config
def restack(config: Config, as_json: bool) -> None:
    """Fetch, rebase the stack onto trunk and push its bookmarks."""
    orchestrator = config.orchestrator()

    async def run_restack() -> RestackResult:
        await orchestrator.check_prerequisites(need_pr_host=False)
        return await orchestrator.restack()

    result = _run(config, as_json, run_restack)
    failed = (not result.fetched or result.error is not None or result.conflicted
              or any(not o.ok for o in result.pushed_bookmarks))

    if as_json:
        _emit_json(result.to_dict())
    elif result.error is not None:
        console.print(f"[red]{result.error}[/red]")
    elif result.stack_size == 0:
        console.print("[yellow]Nothing to restack - no changes between trunk and @[/yellow]")
    elif result.conflicted:
        console.print("[red]Rebase produced conflicts. Resolve them, then run 'ship stack restack' again.[/red]")
    else:
        console.print(f"[green]Restacked {result.stack_size} change(s) onto {orchestrator.default_branch}[/green]")
        for outcome in result.pushed_bookmarks:
            if outcome.ok:
                console.print(f"[blue]Pushed {outcome.target}[/blue]")
            else:
                console.print(f"[yellow]Failed to push {outcome.target}: {outcome.error}[/yellow]")

    if failed:
        sys.exit(1)


@stack.command()
@click.argument("change_id", required=False)
@click.option("--dry-run", is_flag=True, help="Show what would be abandoned")
@json_option
@pass_config
def abandon(config: Config, change_id: Optional[str], dry_run: bool, as_json: bool) -> None:
    """Abandon a change (default: @) and clean up its workspace."""
    manager = config.workspaces()

    async def run_abandon():
        if dry_run:
            changes = await manager.vcs.get_log(change_id or "@")
            if not changes:
                raise ShipError(f"Change {change_id or '@'} not found")
            return changes[0]
        return await manager.abandon(change_id)

    result = _run(config, as_json, run_abandon)

    if dry_run:
        data = {"dryRun": True, "wouldAbandon": result.change_id, "bookmarks": result.bookmarks}
        if as_json:
            _emit_json(data)
        else:
            console.print(f"Would abandon {result.short_id}: {result.title or '(no description)'}")
        return

    if as_json:
        _emit_json(result.to_dict())
        return

    console.print(f"[green]Abandoned {result.change_id[:8]}[/green]")
    console.print(f"[blue]Working copy now at {result.new_working_copy.short_id}[/blue]")
    if result.workspace.removed:
        console.print(f"[blue]Removed workspace {result.workspace.name}[/blue]")


@stack.command(name="remove-workspace")
@click.argument("name")
@click.option("--delete", "-d", "delete_files", is_flag=True, help="Also delete the workspace directory")
@json_option
@pass_config
def remove_workspace(config: Config, name: str, delete_files: bool, as_json: bool) -> None:
    """Remove a workspace from jj and from ship's metadata."""
    manager = config.workspaces()
    result = _run(config, as_json, lambda: manager.remove_workspace(name, delete_files=delete_files))

    if as_json:
        _emit_json(result.to_dict())
    else:
        if result.forgotten:
            console.print(f"[green]Removed workspace: {name}[/green]")
        else:
            console.print(f"[green]Removed workspace metadata: {name}[/green] (jj workspace was already removed)")
        if result.files_deleted:
            console.print(f"[blue]Deleted {result.path}[/blue]")
        elif result.files_deleted is False:
            console.print(f"[yellow]Could not delete {result.path}: {result.delete_error}[/yellow]")
        elif result.path:
            console.print(f"[dim]Files remain at: {result.path}[/dim]")
            console.print("[dim]Use --delete to remove the directory.[/dim]")

    if result.files_deleted is False:
        sys.exit(1)


@stack.command(name="create-workspace")
@click.argument("name")
@click.option("--stack", "stack_name", help="Stack name used in the workspace path (default: NAME)")
@click.option("--bookmark", help="Bookmark whose abandonment should remove this workspace")
@click.option("--task", "task_id", help="Task the workspace was created for")
@click.option("--revision", "-r", help="Revision to check out in the workspace")
@json_option
@pass_config
def create_workspace(
    config: Config,
    name: str,
    stack_name: Optional[str],
    bookmark: Optional[str],
    task_id: Optional[str],
    revision: Optional[str],
    as_json: bool,
) -> None:
    """Create a jj workspace managed by ship."""
    manager = config.workspaces()
    entry = _run(config, as_json, lambda: manager.create_workspace(
        name, stack_name=stack_name, bookmark=bookmark, task_id=task_id,
        revision=revision, repo_root=config.root,
    ))

    if as_json:
        _emit_json(entry.to_dict())
    else:
        console.print(f"[green]Created workspace {entry.name}[/green]")
        console.print(f"[blue]Path: {entry.path}[/blue]")


@stack.command()
@json_option
@pass_config
def workspaces(config: Config, as_json: bool) -> None:
    """List jj workspaces with their ship metadata."""
    manager = config.workspaces()
    rows = _run(config, as_json, manager.list_workspaces)

    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        console.print("[yellow]No workspaces found.[/yellow]")
        return

    table = Table(title=f"Workspaces ({len(rows)})")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Change", style="magenta")
    table.add_column("Task", style="yellow")
    table.add_column("Path", style="blue")
    for row in rows:
        name = row["name"] + (" (default)" if row["isDefault"] else "")
        table.add_row(name, f"{row['changeId']} {row['description']}", row["taskId"] or "", row["path"])
    console.print(table)


@main.group()
def pr() -> None:
    """Pull request commands."""
    pass


@pr.command(name="create")
@click.option("--draft", is_flag=True, help="Create the PR as a draft")
@click.option("--open", "open_browser", is_flag=True, help="Open the PR in a browser")
@json_option
@pass_config
def create_pr(config: Config, draft: bool, open_browser: bool, as_json: bool) -> None:
    """Create a PR for the current change, with a body built from its task."""
    orchestrator = config.orchestrator()
    open_browser = open_browser or config.ship_config.pr.open_browser

    async def run_create():
        await orchestrator.check_prerequisites()
        return await orchestrator.create_pr(draft=draft, open_browser=open_browser and not as_json)

    result = _run(config, as_json, run_create)

    if as_json:
        _emit_json(result.to_dict())
    elif result.error:
        console.print(f"[red]{result.error}[/red]")
    elif result.pr.status == "exists":
        console.print(f"[yellow]PR already exists for {result.bookmark}:[/yellow] {result.pr.url}")
    else:
        console.print(f"[green]Created PR #{result.pr.number}[/green] {result.pr.url}")
        console.print(f"[blue]{result.bookmark} -> {result.base_branch}[/blue]")

    if result.error:
        sys.exit(1)


@pr.command(name="stack")
@click.option("--draft", is_flag=True, help="Create new PRs as drafts")
@click.option("--dry-run", is_flag=True, help="Show the plan without creating or retargeting PRs")
@json_option
@pass_config
def stack_prs(config: Config, draft: bool, dry_run: bool, as_json: bool) -> None:
    """Create or retarget PRs for every bookmarked change in the stack."""
    orchestrator = config.orchestrator()

    async def run_stack() -> StackSubmitResult:
        await orchestrator.check_prerequisites()
        return await orchestrator.submit_stack(draft=draft, dry_run=dry_run)

    result = _run(config, as_json, run_stack)

    if as_json:
        _emit_json(result.to_dict())
    else:
        _print_stack_result(result)

    if result.errors:
        sys.exit(1)


def _print_stack_result(result: StackSubmitResult) -> None:
    table = Table(title="Stack PRs (dry run)" if result.dry_run else "Stack PRs")
    table.add_column("Bookmark", style="cyan", no_wrap=True)
    table.add_column("Base", style="blue")
    table.add_column("Status", style="yellow")
    table.add_column("PR", style="green")

    for entry in result.entries:
        status = entry.status
        if entry.previous_base:
            status += f" (was {entry.previous_base})"
        pr_cell = f"#{entry.pr.number} {entry.pr.url}" if entry.pr else ""
        if entry.error:
            pr_cell = f"[red]{entry.error}[/red]"
        table.add_row(entry.bookmark, entry.base_branch, status, pr_cell)

    console.print(table)
    summary = result.to_dict()["summary"]
    console.print(
        f"[dim]{summary['total']} change(s): {summary['created']} created, "
        f"{summary['retargeted']} retargeted, {summary['exists']} unchanged, {summary['errors']} error(s)[/dim]"
    )


@pr.command()
@click.argument("pr_number", type=int, required=False)
@click.option("--unresolved", is_flag=True, help="Only change requests and top-level code comments")
@json_option
@pass_config
def review(config: Config, pr_number: Optional[int], unresolved: bool, as_json: bool) -> None:
    """Show reviews and comments for a PR (default: the current bookmark's PR)."""
    pr_host = GitHubPrHost(cwd=config.root)
    vcs = config.vcs()

    async def run_review():
        if not await pr_host.is_available():
            raise PrError("GitHub CLI (gh) is not installed or not authenticated. Run 'gh auth login' first.")

        number, title, url = pr_number, None, None
        if number is None:
            try:
                change = await vcs.get_current_change()
            except ShipError as e:
                raise ShipError("Failed to get current change. Provide a PR number explicitly.") from e
            if not change.bookmark:
                raise ShipError("Current change has no bookmark. Provide a PR number explicitly.")
            found = await pr_host.get_pr_by_branch(change.bookmark)
            if found is None:
                raise ShipError(f"No PR found for bookmark '{change.bookmark}'. Provide a PR number explicitly.")
            number, title, url = found.number, found.title, found.url

        feedback = await fetch_review_feedback(pr_host, number)
        feedback.pr_title, feedback.pr_url = title, url
        return feedback.only_unresolved() if unresolved else feedback

    feedback = _run(config, as_json, run_review)

    if as_json:
        _emit_json(feedback.to_dict())
    else:
        click.echo(format_feedback(feedback))


if __name__ == "__main__":
    main()
