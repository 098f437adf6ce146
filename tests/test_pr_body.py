"""
Tests for PR body generation.
"""

import pytest

from ship_cli.models import Task
from ship_cli.pr_body import (
    extract_acceptance_criteria,
    extract_summary,
    extract_task_id,
    generate_minimal_pr_body,
    generate_pr_body,
    smart_truncate,
)

from tests.fakes import make_change


class TestExtractTaskId:

    @pytest.mark.parametrize("bookmark,expected", [
        ("feature-add-123-items", None),
        ("user/BRI-123-feature", "BRI-123"),
        ("bri-123", "BRI-123"),
        ("abcdef-123", None),
        ("ab-1", "AB-1"),
        ("ENG-42-fix-login", "ENG-42"),
        ("main", None),
    ])
    def test_boundaries(self, bookmark, expected):
        """Test task id extraction boundaries."""
        assert extract_task_id(bookmark) == expected


class TestSmartTruncate:

    def test_short_text_unchanged(self):
        """Test that short text is returned as is."""
        assert smart_truncate("  short text  ", 500) == "short text"

    def test_prefers_sentence_boundary(self):
        """Test truncation at a sentence end."""
        text = "First sentence is here. Second sentence runs on and on past the limit."

        result = smart_truncate(text, 40)

        assert result == "First sentence is here."

    def test_falls_back_to_word_boundary(self):
        """Test truncation at a word boundary."""
        text = "word " * 30

        result = smart_truncate(text, 42)

        assert result.endswith("...")
        assert not result[:-3].endswith(" ")
        assert len(result) <= 45

    def test_hard_cut_without_boundaries(self):
        """Test truncation of text without spaces."""
        text = "x" * 600

        result = smart_truncate(text, 500)

        assert result == "x" * 500 + "..."

    def test_early_sentence_end_is_ignored(self):
        """Test that a sentence end too early in the text is not used."""
        # ". " at index 2 is below 30% of the limit
        text = "Hi. " + "longword " * 20

        result = smart_truncate(text, 50)

        assert result.endswith("...")
        assert result != "Hi."

    @pytest.mark.parametrize("length", [10, 100, 499, 500, 501, 2000])
    def test_never_exceeds_limit_plus_ellipsis(self, length):
        """Test the truncation length bound."""
        text = ("abc def. " * 300)[:length]

        assert len(smart_truncate(text, 500)) <= 503


class TestSummaryAndCriteria:

    def test_summary_is_first_paragraph_before_heading(self):
        """Test summary extraction."""
        description = "Users cannot log in.\n\nMore context here.\n\n## Details\nStuff"

        assert extract_summary(description) == "Users cannot log in."

    def test_summary_when_description_starts_with_heading(self):
        """Test summary extraction when the description opens with a heading."""
        description = "## Details\nOnly a section"

        assert extract_summary(description) == description

    def test_checkbox_items_extracted_in_order(self):
        """Test acceptance criteria extraction."""
        description = "## Acceptance Criteria\n- [ ] Login works\n- [x] Errors shown\n[ ] Logged"

        assert extract_acceptance_criteria(description) == ["Login works", "Errors shown", "Logged"]


class TestGeneratePrBody:

    @pytest.fixture
    def task(self):
        return Task(
            id="uuid-1",
            identifier="BRI-123",
            title="Fix login",
            description="Login fails on Safari.\n\n## Acceptance Criteria\n- [ ] Works on Safari",
            url="https://linear.app/acme/issue/BRI-123",
        )

    def test_title_and_sections(self, task):
        """Test PR title and body sections from a task."""
        body = generate_pr_body(task)

        assert body.title == "BRI-123: Fix login"
        assert body.body.startswith("## Summary\nLogin fails on Safari.")
        assert "## Task\n[BRI-123](https://linear.app/acme/issue/BRI-123): Fix login" in body.body
        assert "## Acceptance Criteria\n- [ ] Works on Safari" in body.body
        assert body.acceptance_criteria == ["Works on Safari"]

    def test_changes_section_skips_empty_and_placeholder(self, task):
        """Test the changes list."""
        changes = [
            make_change("aaaaaaaaaaaa", description="Add form\n\nlong body"),
            make_change("bbbbbbbbbbbb", description="", is_empty=True),
            make_change("cccccccccccc", description="(no description)"),
        ]

        body = generate_pr_body(task, stack_changes=changes)

        assert "## Changes\n- Add form (`aaaaaaaa`)" in body.body
        assert "bbbbbbbb" not in body.body
        assert "cccccccc" not in body.body

    def test_custom_summary_replaces_derived(self, task):
        """Test summary override."""
        body = generate_pr_body(task, custom_summary="Hand written")

        assert "## Summary\nHand written" in body.body

    def test_heading_without_checkboxes_links_task(self):
        """Test criteria fallback to a task link."""
        task = Task(id="1", identifier="ENG-9", title="T", description="Intro\n\n## Acceptance criteria\nSee doc",
                    url="https://x/ENG-9")

        body = generate_pr_body(task)

        assert "See task for details: [ENG-9](https://x/ENG-9)" in body.body

    def test_task_without_description_uses_title(self):
        """Test summary for a task with no description."""
        task = Task(id="1", identifier="ENG-9", title="Tidy up", url="u")

        body = generate_pr_body(task)

        assert "## Summary\nTidy up" in body.body
        assert "Acceptance" not in body.body

    def test_minimal_body_uses_change(self):
        """Test the body generated without a task."""
        change = make_change("abcdefgh12", bookmarks=["feat/x"], description="Add thing\n\nWhy")

        body = generate_minimal_pr_body(change)

        assert body.title == "Add thing"
        assert body.body == "## Summary\nAdd thing\n\nWhy"

    def test_minimal_body_title_falls_back_to_bookmark(self):
        """Test minimal title for a change with no description."""
        change = make_change("abcdefgh12", bookmarks=["feat/x"], description="")

        body = generate_minimal_pr_body(change)

        assert body.title == "feat/x"
        assert "(No description)" in body.body
