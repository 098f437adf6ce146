"""
Tests for the submission orchestrator: submit, pr create, pr stack and restack.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from ship_cli.errors import (
    ConflictError,
    EmptyChangeError,
    GhNotAuthenticatedError,
    JjFetchError,
    JjImmutableError,
    NoBookmarkError,
    NotARepoError,
    ShipError,
)
from ship_cli.models import Task
from ship_cli.submission import SubmissionOrchestrator, auto_abandon_candidates, stack_bookmarks

from tests.fakes import FakePrHost, FakeVcs, make_change, make_pr


def make_orchestrator(vcs, pr_host, issue_tracker=None, daemon=None):
    return SubmissionOrchestrator(vcs, pr_host, issue_tracker=issue_tracker, daemon=daemon)


@pytest.fixture
def checkpoint_vcs():
    """Empty unbookmarked @ on top of a bookmarked change."""
    parent = make_change("pppppppp11", bookmarks=["feat/x"], description="Add feature x")
    current = make_change("wwwwwwww00", is_empty=True, description="", is_working_copy=True)
    return FakeVcs(stack=[current, parent], current=current, parent=parent, log={"@--": []})


class TestHelpers:

    def test_effective_change_never_auto_abandoned(self):
        """Test that the submitted change is never an abandon candidate."""
        effective = make_change("eeee", is_empty=True, description="")
        stray = make_change("ssss", is_empty=True, description="")

        candidates = auto_abandon_candidates([effective, stray], effective)

        assert [c.change_id for c in candidates] == ["ssss"]

    def test_auto_abandon_requires_no_description_and_no_bookmark(self):
        """Test abandon candidate selection."""
        effective = make_change("eeee", bookmarks=["b"])
        stack = [
            make_change("aaaa", is_empty=True, description="(no description)"),
            make_change("bbbb", is_empty=True, description="WIP notes"),
            make_change("cccc", is_empty=True, description="", bookmarks=["keep"]),
            make_change("dddd", is_empty=False, description=""),
        ]

        assert [c.change_id for c in auto_abandon_candidates(stack, effective)] == ["aaaa"]

    def test_stack_bookmarks_puts_effective_first(self, two_change_stack):
        """Test push order of stack bookmarks."""
        effective = two_change_stack[1]

        assert stack_bookmarks(effective, two_change_stack) == ["b1", "b2"]


class TestEffectiveChange:

    @pytest.mark.asyncio
    async def test_parent_substituted_for_empty_checkpoint(self, checkpoint_vcs):
        """Test parent substitution for an empty working copy."""
        orchestrator = make_orchestrator(checkpoint_vcs, FakePrHost())

        effective = await orchestrator.resolve_effective_change(checkpoint_vcs.current)

        assert effective.substituted
        assert effective.change.bookmark == "feat/x"

    @pytest.mark.asyncio
    async def test_no_substitution_when_parent_has_no_bookmark(self):
        """Test no substitution when the parent is unbookmarked."""
        parent = make_change("pppp", description="work")
        current = make_change("wwww", is_empty=True, description="")
        vcs = FakeVcs(stack=[current, parent], current=current, parent=parent)
        orchestrator = make_orchestrator(vcs, FakePrHost())

        effective = await orchestrator.resolve_effective_change(current)

        assert not effective.substituted
        assert effective.change is current

    @pytest.mark.asyncio
    async def test_base_branch_looks_two_back_after_substitution(self, checkpoint_vcs):
        """Test base branch resolution after substitution."""
        checkpoint_vcs.log["@--"] = [make_change("below", bookmarks=["feat/base"])]
        orchestrator = make_orchestrator(checkpoint_vcs, FakePrHost())
        effective = await orchestrator.resolve_effective_change(checkpoint_vcs.current)

        assert await orchestrator.resolve_base_branch(effective) == "feat/base"


class TestSubmit:

    @pytest.mark.asyncio
    async def test_checkpoint_submit_creates_pr_for_parent(self, checkpoint_vcs):
        """Test submit from an empty checkpoint change."""
        pr_host = FakePrHost()
        orchestrator = make_orchestrator(checkpoint_vcs, pr_host)

        result = await orchestrator.submit()

        assert result.pushed
        assert result.bookmark == "feat/x"
        assert result.pr.status == "created"
        assert result.base_branch == "main"
        assert result.to_dict()["pr"]["status"] == "created"
        assert ("push", "feat/x") in checkpoint_vcs.writes
        assert result.abandoned_empty_changes == ["wwwwwwww00"]
        assert ("abandon", "pppppppp11") not in checkpoint_vcs.writes

    @pytest.mark.asyncio
    async def test_no_bookmark_fails_before_writes(self):
        """Test submit refusal without a bookmark."""
        vcs = FakeVcs(stack=[make_change("cccc", description="work")])

        with pytest.raises(NoBookmarkError):
            await make_orchestrator(vcs, FakePrHost()).submit()
        assert vcs.writes == []

    @pytest.mark.asyncio
    async def test_empty_bookmarked_change_rejected(self):
        """Test submit refusal for an empty bookmarked change."""
        vcs = FakeVcs(stack=[make_change("cccc", bookmarks=["b"], is_empty=True)])

        with pytest.raises(EmptyChangeError):
            await make_orchestrator(vcs, FakePrHost()).submit()
        assert vcs.writes == []

    @pytest.mark.asyncio
    async def test_conflict_in_stack_blocks_push(self, two_change_stack):
        """Test that stack conflicts stop submit before pushing."""
        two_change_stack[1].has_conflict = True
        vcs = FakeVcs(stack=two_change_stack)

        with pytest.raises(ConflictError) as exc_info:
            await make_orchestrator(vcs, FakePrHost()).submit()

        assert exc_info.value.changes[0].change_id == "aaaaaaaa11"
        assert "Cannot submit" in str(exc_info.value)
        assert vcs.writes == []

    @pytest.mark.asyncio
    async def test_push_failure_is_total_failure(self, two_change_stack):
        """Test that a failed push stops submit."""
        vcs = FakeVcs(stack=two_change_stack)
        vcs.push_failures.add("b2")
        pr_host = FakePrHost()

        result = await make_orchestrator(vcs, pr_host).submit()

        assert not result.pushed
        assert "Failed to push b2" in result.error
        assert pr_host.writes == []

    @pytest.mark.asyncio
    async def test_create_failure_after_push_is_partial(self, two_change_stack):
        """Test partial success when PR creation fails."""
        vcs = FakeVcs(stack=two_change_stack)
        pr_host = FakePrHost()
        pr_host.create_failures.add("b2")

        result = await make_orchestrator(vcs, pr_host).submit()

        assert result.pushed
        assert result.partial
        assert result.bookmark == "b2"
        assert result.error.startswith("Pushed but failed to create PR:")
        data = result.to_dict()
        assert data["pushed"] is True
        assert data["bookmark"] == "b2"
        assert "error" in data

    @pytest.mark.asyncio
    async def test_existing_pr_without_overrides_reports_exists(self, two_change_stack):
        """Test submit with an existing PR."""
        vcs = FakeVcs(stack=two_change_stack)
        pr_host = FakePrHost([make_pr(12, "b2", base="b1")])

        result = await make_orchestrator(vcs, pr_host).submit()

        assert result.pr.status == "exists"
        assert result.pr.number == 12
        assert pr_host.writes == []

    @pytest.mark.asyncio
    async def test_title_override_updates_existing_pr(self, two_change_stack):
        """Test title override on an existing PR."""
        vcs = FakeVcs(stack=two_change_stack)
        pr_host = FakePrHost([make_pr(12, "b2", base="b1")])

        result = await make_orchestrator(vcs, pr_host).submit(title="New title")

        assert result.pr.status == "updated"
        assert pr_host.writes == [("update", 12, "New title", None)]

    @pytest.mark.asyncio
    async def test_new_pr_targets_bookmark_below(self, two_change_stack):
        """Test base branch of a new PR."""
        vcs = FakeVcs(stack=two_change_stack, parent=two_change_stack[1])
        pr_host = FakePrHost()

        result = await make_orchestrator(vcs, pr_host).submit(draft=True)

        assert result.base_branch == "b1"
        assert pr_host.writes[0][:3] == ("create", "b2", "b1")
        assert pr_host.writes[0][5] is True

    @pytest.mark.asyncio
    async def test_pushes_other_stack_bookmarks(self, two_change_stack):
        """Test pushing the rest of the stack."""
        vcs = FakeVcs(stack=two_change_stack)

        result = await make_orchestrator(vcs, FakePrHost()).submit()

        assert result.pushed_bookmarks == ["b2", "b1"]

    @pytest.mark.asyncio
    async def test_other_bookmark_push_failure_is_warning(self, two_change_stack):
        """Test that other bookmark push failures are warnings."""
        vcs = FakeVcs(stack=two_change_stack)
        vcs.push_failures.add("b1")

        result = await make_orchestrator(vcs, FakePrHost()).submit()

        assert result.ok
        assert result.pushed_bookmarks == ["b2"]
        assert "Failed to push b1" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_stray_empty_changes_abandoned_best_effort(self):
        """Test auto-abandon of stray empty changes."""
        effective = make_change("eeee", bookmarks=["b"], is_working_copy=True)
        stray_ok = make_change("s1s1", is_empty=True, description="")
        stray_bad = make_change("s2s2", is_empty=True, description="")
        vcs = FakeVcs(stack=[effective, stray_ok, stray_bad])
        vcs.abandon_failures.add("s2s2")

        result = await make_orchestrator(vcs, FakePrHost()).submit()

        assert result.pushed
        assert result.abandoned_empty_changes == ["s1s1"]

    @pytest.mark.asyncio
    async def test_subscribes_session_to_stack_prs(self, two_change_stack):
        """Test daemon subscription after submit."""
        vcs = FakeVcs(stack=two_change_stack)
        pr_host = FakePrHost([make_pr(5, "b1")])
        daemon = Mock()
        daemon.is_running = AsyncMock(return_value=True)
        daemon.subscribe = AsyncMock()

        result = await make_orchestrator(vcs, pr_host, daemon=daemon).submit(subscribe_session_id="sess-1")

        assert result.subscribed == {"sessionId": "sess-1", "prNumbers": [100, 5]}
        daemon.subscribe.assert_awaited_once_with("sess-1", [100, 5])

    @pytest.mark.asyncio
    async def test_subscribe_skipped_when_daemon_down(self, two_change_stack):
        """Test subscribe when the daemon is not running."""
        daemon = Mock()
        daemon.is_running = AsyncMock(return_value=False)
        daemon.subscribe = AsyncMock()

        result = await make_orchestrator(FakeVcs(stack=two_change_stack), FakePrHost(), daemon=daemon).submit(
            subscribe_session_id="sess-1"
        )

        assert result.ok
        assert result.subscribed is None
        daemon.subscribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dry_run_preview_writes_nothing(self, two_change_stack):
        """Test submit preview."""
        stray = make_change("s1s1", is_empty=True, description="")
        vcs = FakeVcs(stack=two_change_stack + [stray])
        pr_host = FakePrHost()

        preview = await make_orchestrator(vcs, pr_host).preview_submit()

        data = preview.to_dict()
        assert data["dryRun"] is True
        assert data["wouldPush"]["bookmark"] == "b2"
        assert data["wouldPush"]["allBookmarks"] == ["b2", "b1"]
        assert data["pr"]["action"] == "create"
        assert data["wouldAbandonEmptyChanges"] == ["s1s1"]
        assert vcs.writes == []
        assert pr_host.writes == []


class TestPrerequisites:

    @pytest.mark.asyncio
    async def test_not_a_repo(self):
        """Test prerequisite check outside a jj repo."""
        vcs = FakeVcs()
        vcs.repo = False

        with pytest.raises(NotARepoError):
            await make_orchestrator(vcs, FakePrHost()).check_prerequisites()

    @pytest.mark.asyncio
    async def test_gh_unavailable(self):
        """Test prerequisite check without gh."""
        pr_host = FakePrHost()
        pr_host.available = False

        with pytest.raises(GhNotAuthenticatedError):
            await make_orchestrator(FakeVcs(), pr_host).check_prerequisites()

    @pytest.mark.asyncio
    async def test_gh_not_needed_for_local_commands(self):
        """Test prerequisite check for jj-only commands."""
        pr_host = FakePrHost()
        pr_host.available = False

        await make_orchestrator(FakeVcs(), pr_host).check_prerequisites(need_pr_host=False)


class TestCreatePr:

    @pytest.mark.asyncio
    async def test_body_built_from_task(self):
        """Test pr create body from a Linear task."""
        change = make_change("cccccccc11", bookmarks=["user/BRI-7-login"], description="Add login")
        vcs = FakeVcs(stack=[change])
        pr_host = FakePrHost()
        tracker = Mock()
        tracker.configured = True
        tracker.get_task_by_identifier = AsyncMock(return_value=Task(
            id="t", identifier="BRI-7", title="Login", description="Make login work.", url="https://l/BRI-7",
        ))

        result = await make_orchestrator(vcs, pr_host, issue_tracker=tracker).create_pr(open_browser=True)

        assert result.task_id == "BRI-7"
        assert result.pr.status == "created"
        _, head, base, title, body, _ = pr_host.writes[0]
        assert (head, base, title) == ("user/BRI-7-login", "main", "BRI-7: Login")
        assert "[BRI-7](https://l/BRI-7): Login" in body
        assert "Add login (`cccccccc`)" in body
        assert pr_host.opened == [result.pr.url]

    @pytest.mark.asyncio
    async def test_existing_pr_is_reported_not_recreated(self):
        """Test pr create with an existing PR."""
        vcs = FakeVcs(stack=[make_change("cccc", bookmarks=["b"])])
        pr_host = FakePrHost([make_pr(3, "b", base="main")])

        result = await make_orchestrator(vcs, pr_host).create_pr()

        assert result.pr.status == "exists"
        assert pr_host.writes == []

    @pytest.mark.asyncio
    async def test_tracker_failure_falls_back_to_minimal_body(self):
        """Test pr create when the tracker fails."""
        from ship_cli.errors import IssueTrackerError

        vcs = FakeVcs(stack=[make_change("cccc", bookmarks=["ENG-1"], description="Fix bug")])
        pr_host = FakePrHost()
        tracker = Mock()
        tracker.configured = True
        tracker.get_task_by_identifier = AsyncMock(side_effect=IssueTrackerError("boom"))

        result = await make_orchestrator(vcs, pr_host, issue_tracker=tracker).create_pr()

        assert result.pr.status == "created"
        assert pr_host.writes[0][3] == "Fix bug"

    @pytest.mark.asyncio
    async def test_does_not_push(self):
        """Test that pr create never pushes."""
        vcs = FakeVcs(stack=[make_change("cccc", bookmarks=["b"])])

        await make_orchestrator(vcs, FakePrHost()).create_pr()

        assert not any(w[0] == "push" for w in vcs.writes)


class TestSubmitStack:

    @pytest.mark.asyncio
    async def test_creates_chain_base_first(self, two_change_stack):
        """Test pr stack creation order."""
        pr_host = FakePrHost()

        result = await make_orchestrator(FakeVcs(stack=two_change_stack), pr_host).submit_stack()

        assert [(w[1], w[2]) for w in pr_host.writes] == [("b1", "main"), ("b2", "b1")]
        assert [e.status for e in result.entries] == ["created", "created"]
        assert result.to_dict()["summary"] == {
            "total": 2, "created": 2, "exists": 0, "retargeted": 0, "errors": 0,
        }

    @pytest.mark.asyncio
    async def test_retargets_wrong_base(self, two_change_stack):
        """Test pr stack retarget."""
        pr_host = FakePrHost([make_pr(1, "b1"), make_pr(2, "b2", base="main")])

        result = await make_orchestrator(FakeVcs(stack=two_change_stack), pr_host).submit_stack()

        assert pr_host.writes == [("retarget", 2, "b1")]
        assert [e.status for e in result.entries] == ["exists", "retargeted"]
        assert result.entries[1].previous_base == "main"

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, two_change_stack):
        """Test pr stack dry run."""
        pr_host = FakePrHost([make_pr(2, "b2", base="main")])

        result = await make_orchestrator(FakeVcs(stack=two_change_stack), pr_host).submit_stack(dry_run=True)

        assert pr_host.writes == []
        assert [e.status for e in result.entries] == ["would-create", "would-retarget"]

    @pytest.mark.asyncio
    async def test_create_failure_continues_with_rest(self, two_change_stack):
        """Test pr stack after one create fails."""
        pr_host = FakePrHost()
        pr_host.create_failures.add("b1")

        result = await make_orchestrator(FakeVcs(stack=two_change_stack), pr_host).submit_stack()

        assert [e.status for e in result.entries] == ["error", "created"]
        assert result.errors == 1

    @pytest.mark.asyncio
    async def test_retarget_failure_keeps_exists_status(self, two_change_stack):
        """Test pr stack after a retarget fails."""
        pr_host = FakePrHost([make_pr(2, "b2", base="main")])
        pr_host.update_failures.add(2)

        result = await make_orchestrator(FakeVcs(stack=two_change_stack), pr_host).submit_stack()

        entry = result.entries[1]
        assert entry.status == "exists"
        assert entry.error.startswith("Failed to retarget PR:")

    @pytest.mark.asyncio
    async def test_conflicts_raise_before_writes(self, two_change_stack):
        """Test pr stack with conflicts."""
        two_change_stack[0].has_conflict = True
        pr_host = FakePrHost()

        with pytest.raises(ConflictError):
            await make_orchestrator(FakeVcs(stack=two_change_stack), pr_host).submit_stack()
        assert pr_host.writes == []

    @pytest.mark.asyncio
    async def test_empty_stack(self):
        """Test pr stack on an empty stack."""
        with pytest.raises(ShipError, match="No changes in stack"):
            await make_orchestrator(FakeVcs(), FakePrHost()).submit_stack()

    @pytest.mark.asyncio
    async def test_stack_without_bookmarks(self):
        """Test pr stack when nothing is bookmarked."""
        vcs = FakeVcs(stack=[make_change("cccc")])

        with pytest.raises(ShipError, match="No changes with bookmarks"):
            await make_orchestrator(vcs, FakePrHost()).submit_stack()


class TestRestack:

    @pytest.mark.asyncio
    async def test_rebases_base_onto_trunk_and_pushes(self, two_change_stack):
        """Test restack rebase and push."""
        vcs = FakeVcs(stack=two_change_stack)

        result = await make_orchestrator(vcs, FakePrHost()).restack()

        assert ("rebase", "commit-aaaaaaaa11", "main") in vcs.writes
        assert result.restacked
        assert result.pushed
        assert [o.target for o in result.pushed_bookmarks] == ["b2", "b1"]

    @pytest.mark.asyncio
    async def test_fetch_failure_stops_early(self, two_change_stack):
        """Test restack when fetch fails."""
        vcs = FakeVcs(stack=two_change_stack)
        vcs.fetch_error = JjFetchError("Fetch failed: no remote")

        result = await make_orchestrator(vcs, FakePrHost()).restack()

        assert not result.fetched
        assert "Failed to fetch" in result.error
        assert vcs.writes == [("fetch",)]

    @pytest.mark.asyncio
    async def test_conflicts_skip_push(self, two_change_stack):
        """Test that restack conflicts stop the push."""
        vcs = FakeVcs(stack=two_change_stack)
        vcs.rebase_conflict = True

        result = await make_orchestrator(vcs, FakePrHost()).restack()

        assert result.conflicted
        assert not any(w[0] == "push" for w in vcs.writes)

    @pytest.mark.asyncio
    async def test_rebase_failure_keeps_fetched(self, two_change_stack):
        """Test restack when the rebase fails without conflicts."""
        vcs = FakeVcs(stack=two_change_stack)
        vcs.rebase_error = JjImmutableError("Cannot modify immutable commit: aaaaaaaa11")

        result = await make_orchestrator(vcs, FakePrHost()).restack()

        assert result.fetched
        assert not result.restacked
        assert "Failed to rebase" in result.error
        assert result.to_dict()["fetched"] is True
        assert not any(w[0] == "push" for w in vcs.writes)

    @pytest.mark.asyncio
    async def test_conflict_reports_stack_after_rebase(self, two_change_stack):
        """Test that stack size on conflict is read after the rebase."""
        vcs = FakeVcs(stack=two_change_stack)
        vcs.stack_after_rebase = [two_change_stack[0]]
        vcs.rebase_conflict = True

        result = await make_orchestrator(vcs, FakePrHost()).restack()

        assert result.conflicted
        assert result.stack_size == 1

    @pytest.mark.asyncio
    async def test_empty_stack_is_noop(self):
        """Test restack with nothing to rebase."""
        vcs = FakeVcs()

        result = await make_orchestrator(vcs, FakePrHost()).restack()

        assert result.fetched
        assert not result.restacked
        assert result.trunk_change_id == "trunk000"
