"""
Review Feedback

Collects reviews, inline code comments and conversation comments for a PR
so an agent (or a human) can see what still needs addressing.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import PrError
from .models import ConversationComment, Review, ReviewComment
from .pr_host import GitHubPrHost


@dataclass
class ReviewFeedback:
    pr_number: int
    reviews: List[Review] = field(default_factory=list)
    code_comments: List[ReviewComment] = field(default_factory=list)
    conversation_comments: List[ConversationComment] = field(default_factory=list)
    pr_title: Optional[str] = None
    pr_url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.reviews or self.code_comments or self.conversation_comments)

    def comments_by_file(self) -> Dict[str, List[ReviewComment]]:
        """Code comments grouped by path, each group ordered by line (file-level comments first)."""
        grouped: Dict[str, List[ReviewComment]] = {}
        for comment in self.code_comments:
            grouped.setdefault(comment.path, []).append(comment)
        for comments in grouped.values():
            comments.sort(key=lambda c: (c.line is not None, c.line or 0))
        return dict(sorted(grouped.items()))

    def only_unresolved(self) -> 'ReviewFeedback':
        """Keep change requests and top-level code comments; keep all conversation."""
        return ReviewFeedback(
            pr_number=self.pr_number,
            reviews=[r for r in self.reviews if r.state == "CHANGES_REQUESTED"],
            code_comments=[c for c in self.code_comments if c.in_reply_to_id is None],
            conversation_comments=list(self.conversation_comments),
            pr_title=self.pr_title,
            pr_url=self.pr_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"prNumber": self.pr_number}
        if self.pr_title is not None:
            data["prTitle"] = self.pr_title
        if self.pr_url is not None:
            data["prUrl"] = self.pr_url
        data["reviews"] = [r.to_dict() for r in self.reviews]
        data["codeComments"] = [c.to_dict() for c in self.code_comments]
        data["conversationComments"] = [c.to_dict() for c in self.conversation_comments]
        data["commentsByFile"] = {
            path: [c.to_dict() for c in comments]
            for path, comments in self.comments_by_file().items()
        }
        return data


async def fetch_review_feedback(pr_host: GitHubPrHost, pr_number: int) -> ReviewFeedback:
    """Fetch the three kinds of feedback concurrently.

    Raises:
        PrError: If any of the three fetches fails, naming which one
    """
    results = await asyncio.gather(
        pr_host.get_reviews(pr_number),
        pr_host.get_review_comments(pr_number),
        pr_host.get_pr_comments(pr_number),
        return_exceptions=True,
    )

    labels = ("reviews", "code comments", "conversation comments")
    for label, result in zip(labels, results):
        if isinstance(result, PrError):
            raise PrError(f"Failed to fetch {label}: {result}") from result
        if isinstance(result, BaseException):
            raise result

    reviews, code_comments, conversation = results
    return ReviewFeedback(
        pr_number=pr_number,
        reviews=reviews,
        code_comments=code_comments,
        conversation_comments=conversation,
    )


def format_feedback(feedback: ReviewFeedback) -> str:
    """Markdown rendering used by `ship pr review` without --json."""
    title = f": {feedback.pr_title}" if feedback.pr_title else ""
    lines = [f"## PR #{feedback.pr_number}{title}"]
    if feedback.pr_url:
        lines.append(f"URL: {feedback.pr_url}")
    lines.append("")

    if feedback.reviews:
        lines.append("### Reviews")
        for review in sorted(feedback.reviews, key=lambda r: r.submitted_at, reverse=True):
            lines.append(f"- @{review.author}: [{review.state}]")
            lines.extend(f"  {line}" for line in review.body.split("\n") if review.body)
        lines.append("")

    grouped = feedback.comments_by_file()
    if grouped:
        lines.append(f"### Code Comments ({len(feedback.code_comments)} total)")
        lines.append("")
        for path, comments in grouped.items():
            lines.append(f"#### {path}")
            for comment in comments:
                line_info = f":{comment.line}" if comment.line is not None else ""
                lines.append(f"**{path}{line_info}** - @{comment.author}:")
                if comment.diff_hunk:
                    lines.extend(["```diff", comment.diff_hunk, "```"])
                lines.extend(f"> {line}" for line in comment.body.split("\n"))
                lines.append("")

    if feedback.conversation_comments:
        lines.append("### Conversation")
        for comment in feedback.conversation_comments:
            lines.append(f"- @{comment.author}:")
            lines.extend(f"  {line}" for line in comment.body.split("\n"))
            lines.append("")

    if feedback.is_empty:
        lines.append("No reviews or comments found.")

    return "\n".join(lines).strip()
