"""
PR Body Generator

Builds PR titles and bodies from issue tracker tasks and jj change
descriptions. Pure functions only; nothing here talks to a collaborator.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .config import Constants
from .models import Change, Task

# At most 5 letters: `abcdef-123` yields no id while `ab-1` and `user/BRI-123-x` do.
# A longer letter run is part of a branch word, not a team key.
TASK_ID_PATTERN = re.compile(r"(?:^|/)([a-zA-Z]{1,5}-\d+)", re.IGNORECASE)
CHECKBOX_PATTERN = re.compile(r"^\s*-?\s*\[[ x]\]\s*(.+)$", re.IGNORECASE | re.MULTILINE)
ACCEPTANCE_HEADING_PATTERN = re.compile(r"acceptance\s*criteria", re.IGNORECASE)
SECTION_PATTERN = re.compile(r"^##?\s+", re.MULTILINE)
PARAGRAPH_PATTERN = re.compile(r"\n\n+")


@dataclass
class PrBody:
    title: str
    body: str
    acceptance_criteria: List[str] = field(default_factory=list)


def extract_task_id(bookmark: str) -> Optional[str]:
    """Extract a task identifier from a bookmark name.

    The identifier must start the name or follow a "/", so "user/BRI-123-x"
    yields "BRI-123" while "feature-add-123-items" yields nothing.

    Args:
        bookmark: Bookmark name

    Returns:
        Upper-cased identifier, or None
    """
    match = TASK_ID_PATTERN.search(bookmark)
    return match.group(1).upper() if match else None


def smart_truncate(text: str, max_length: int) -> str:
    """Shorten text to about max_length characters at a natural boundary.

    Prefers the last sentence end, then the last word boundary, as long as
    the cut lands past 30% of max_length; otherwise cuts hard. An ellipsis
    is appended unless the cut is at a sentence end.
    """
    trimmed = text.strip()
    if len(trimmed) <= max_length:
        return trimmed

    truncated = trimmed[:max_length]
    threshold = max_length * 0.3

    last_sentence = truncated.rfind(". ")
    if last_sentence > threshold:
        return truncated[:last_sentence + 1]

    last_space = truncated.rfind(" ")
    if last_space > threshold:
        return truncated[:last_space] + "..."

    return truncated + "..."


def extract_summary(description: str) -> str:
    """First paragraph before any markdown heading, else a truncated description."""
    first_part = SECTION_PATTERN.split(description)[0].strip()
    if first_part:
        return PARAGRAPH_PATTERN.split(first_part)[0].strip()
    return smart_truncate(description, Constants.SUMMARY_MAX_LENGTH)


def extract_acceptance_criteria(description: str) -> List[str]:
    """Checkbox items in description, in order, regardless of checked state."""
    criteria = []
    for match in CHECKBOX_PATTERN.finditer(description):
        criterion = match.group(1).strip()
        if criterion:
            criteria.append(criterion)
    return criteria


def meaningful_changes(changes: Sequence[Change]) -> List[Change]:
    return [c for c in changes if not c.is_empty and c.has_meaningful_description]


def format_changes_section(changes: Sequence[Change]) -> List[str]:
    meaningful = meaningful_changes(changes)
    if not meaningful:
        return []
    lines = ["## Changes"]
    for change in meaningful:
        lines.append(f"- {change.title} (`{change.short_id}`)")
    lines.append("")
    return lines


def generate_pr_body(
    task: Task,
    stack_changes: Optional[Sequence[Change]] = None,
    custom_summary: Optional[str] = None,
) -> PrBody:
    """Build a PR title and body for a change that implements task.

    Args:
        task: Task the change implements
        stack_changes: Changes to list in the Changes section
        custom_summary: Summary text that replaces the derived one

    Returns:
        PrBody with title "{identifier}: {title}" and the extracted criteria
    """
    description = task.description or ""
    summary = custom_summary or (extract_summary(description) if description else task.title)

    sections = [
        "## Summary",
        summary,
        "",
        "## Task",
        f"[{task.identifier}]({task.url}): {task.title}",
        "",
    ]

    if stack_changes:
        sections.extend(format_changes_section(stack_changes))

    criteria = extract_acceptance_criteria(description) if description else []
    if criteria:
        sections.append("## Acceptance Criteria")
        sections.extend(f"- [ ] {criterion}" for criterion in criteria)
        sections.append("")
    elif ACCEPTANCE_HEADING_PATTERN.search(description):
        sections.append("## Acceptance Criteria")
        sections.append(f"See task for details: [{task.identifier}]({task.url})")
        sections.append("")

    return PrBody(
        title=f"{task.identifier}: {task.title}",
        body="\n".join(sections).strip(),
        acceptance_criteria=criteria,
    )


def generate_minimal_pr_body(change: Change, stack_changes: Optional[Sequence[Change]] = None) -> PrBody:
    """Build a PR title and body from the change alone, when there is no task."""
    sections = ["## Summary", change.description or "(No description)", ""]
    if stack_changes:
        sections.extend(format_changes_section(stack_changes))

    return PrBody(
        title=change.title or change.bookmark or change.short_id,
        body="\n".join(sections).strip(),
    )
