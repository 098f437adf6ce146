"""
Linear Integration

Read-only task lookups against the Linear GraphQL API. ship only needs a
task's identifier, title, description and link to build PR bodies.
"""

from typing import Any, Dict, Optional

import httpx

from .config import Constants
from .errors import IssueTrackerError, TaskNotFoundError
from .models import Task
from .process import with_retry

ISSUE_QUERY = """
query Issue($id: String!) {
  issue(id: $id) {
    id
    identifier
    title
    description
    url
    state { name }
    relations { nodes { type relatedIssue { identifier } } }
    inverseRelations { nodes { type issue { identifier } } }
  }
}
"""


class _TransientError(IssueTrackerError):
    pass


def task_from_issue(issue: Dict[str, Any]) -> Task:
    """Map a Linear issue node to a Task.

    `relations` of type "blocks" point at issues this one blocks;
    `inverseRelations` of type "blocks" point at issues blocking this one.
    """
    blocks = [
        node["relatedIssue"]["identifier"]
        for node in (issue.get("relations") or {}).get("nodes", [])
        if node.get("type") == "blocks" and node.get("relatedIssue")
    ]
    blocked_by = [
        node["issue"]["identifier"]
        for node in (issue.get("inverseRelations") or {}).get("nodes", [])
        if node.get("type") == "blocks" and node.get("issue")
    ]
    return Task(
        id=issue["id"],
        identifier=issue["identifier"],
        title=issue.get("title", ""),
        description=issue.get("description"),
        url=issue.get("url", ""),
        state=(issue.get("state") or {}).get("name", ""),
        blocked_by=blocked_by,
        blocks=blocks,
    )


class LinearIssueTracker:
    """Task lookups against Linear."""

    def __init__(
        self,
        api_key: Optional[str],
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize Linear client.

        Args:
            api_key: Linear personal API key
            api_url: GraphQL endpoint (default: from Constants)
            timeout: Request timeout in seconds (default: from Constants)
            transport: Optional httpx transport, used by tests
        """
        self.api_key = api_key
        self.api_url = api_url or Constants.LINEAR_API_URL
        self.timeout = timeout or Constants.GH_TIMEOUT
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise IssueTrackerError("Linear API key is not configured. Run 'ship init' or set LINEAR_API_KEY.")

        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(
                    self.api_url, json={"query": query, "variables": variables}, headers=headers
                )
            except httpx.TimeoutException as e:
                raise _TransientError(f"Linear request timed out: {e}") from e
            except httpx.HTTPError as e:
                raise _TransientError(f"Linear request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientError(f"Linear API returned {response.status_code}")
        if response.status_code in (401, 403):
            raise IssueTrackerError("Linear API key was rejected. Run 'ship login' again.")

        try:
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise IssueTrackerError(f"Linear API error: {e}") from e

        return payload

    async def _fetch_issue(self, id_or_identifier: str) -> Task:
        payload = await with_retry(
            lambda: self._query(ISSUE_QUERY, {"id": id_or_identifier}),
            f"fetch task {id_or_identifier}",
            retry_on=(_TransientError,),
        )
        errors = payload.get("errors") or []
        issue = (payload.get("data") or {}).get("issue")
        if issue is None:
            if errors and not any("not found" in str(err.get("message", "")).lower() for err in errors):
                raise IssueTrackerError(f"Linear API error: {errors[0].get('message')}")
            raise TaskNotFoundError(id_or_identifier)
        return task_from_issue(issue)

    async def get_task_by_identifier(self, identifier: str) -> Task:
        """Fetch a task by its human identifier, e.g. "BRI-123"."""
        return await self._fetch_issue(identifier.upper())

    async def get_task(self, task_id: str) -> Task:
        return await self._fetch_issue(task_id)
