"""Linear GraphQL client: duplicate search and issue creation."""

import logging

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from bugtriage.models import CandidateIssue
from bugtriage.webapi import DEFAULT_TIMEOUT, request_json

logger = logging.getLogger(__name__)

LINEAR_API = "https://api.linear.app/graphql"

# Linear priority for new issues when none is given (3 = medium).
DEFAULT_PRIORITY = 3

SEARCH_ISSUES_QUERY = """
query SearchIssues($term: String!, $first: Int) {
  searchIssues(term: $term, first: $first) {
    nodes {
      id
      identifier
      title
      url
      state { name }
      team { name }
    }
  }
}
"""

CREATE_ISSUE_MUTATION = """
mutation CreateIssue($input: IssueCreateInput!) {
  issueCreate(input: $input) {
    success
    issue {
      id
      identifier
      title
      url
      state { name }
      team { name }
    }
  }
}
"""


class LinearError(RuntimeError):
    """A Linear API call failed or returned GraphQL errors."""


class CreatedIssue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    identifier: str
    title: str
    url: str
    state: str = "unknown"
    team: str = "unknown"


def _flatten(node: dict) -> dict:
    """Lift nested ``state.name`` / ``team.name`` to plain strings."""
    flat = dict(node)
    flat["state"] = (node.get("state") or {}).get("name") or "unknown"
    flat["team"] = (node.get("team") or {}).get("name") or "unknown"
    return flat


class LinearClient:
    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": api_key,
            "Content-Type": "application/json",
        })

    def _graphql(self, query: str, variables: dict) -> dict:
        try:
            body = request_json(
                "POST", LINEAR_API, session=self.session, timeout=self.timeout,
                json={"query": query, "variables": variables},
            )
        except requests.RequestException as e:
            raise LinearError(f"Linear request failed: {e}") from e
        if body.get("errors"):
            messages = "; ".join(err.get("message", "?") for err in body["errors"])
            raise LinearError(f"Linear GraphQL error: {messages}")
        return body.get("data") or {}

    def search_issues(self, query: str, limit: int = 10) -> list[CandidateIssue]:
        """Full-text search; returns at most ``limit`` candidate duplicates."""
        if not query.strip():
            return []
        data = self._graphql(SEARCH_ISSUES_QUERY, {"term": query, "first": limit})
        nodes = (data.get("searchIssues") or {}).get("nodes") or []
        try:
            return [CandidateIssue.model_validate(_flatten(n)) for n in nodes[:limit]]
        except ValidationError as e:
            raise LinearError(f"Unexpected searchIssues payload: {e}") from e

    def create_issue(
        self,
        team_id: str,
        title: str,
        description: str,
        priority: int = DEFAULT_PRIORITY,
        label_ids: list[str] | None = None,
    ) -> CreatedIssue:
        issue_input = {
            "teamId": team_id,
            "title": title,
            "description": description,
            "priority": priority,
        }
        if label_ids:
            issue_input["labelIds"] = label_ids

        data = self._graphql(CREATE_ISSUE_MUTATION, {"input": issue_input})
        result = data.get("issueCreate") or {}
        if not result.get("success") or not result.get("issue"):
            raise LinearError("Failed to create issue")
        try:
            issue = CreatedIssue.model_validate(_flatten(result["issue"]))
        except ValidationError as e:
            raise LinearError(f"Unexpected issueCreate payload: {e}") from e
        logger.info("Created Linear issue %s: %s", issue.identifier, issue.url)
        return issue
