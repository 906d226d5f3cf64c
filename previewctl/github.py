"""
GitHub REST and GraphQL access.

Only the handful of endpoints previewctl needs: pull requests, issue
comments, comment minimizing and deployment statuses.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import GitHubError

logger = logging.getLogger(__name__)

KEEP_PREVIEW_LABEL = "keep-preview"

MINIMIZE_COMMENT_MUTATION = """
mutation($nodeId: ID!) {
  minimizeComment(input: {subjectId: $nodeId, classifier: OUTDATED}) {
    minimizedComment {
      isMinimized
    }
  }
}
"""


class GitHubClient:
    """Token-authenticated client for one repository."""

    def __init__(
        self,
        token: str,
        repository: str,
        api_url: str = "https://api.github.com",
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        if "/" not in repository:
            raise ValueError(f"Repository must be in owner/repo form: {repository!r}")
        self.owner, self.repo = repository.split("/", 1)
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _repo_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/{path}"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise GitHubError(f"{method} {url} failed: {e}") from e
        if not response.ok:
            raise GitHubError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _decode(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise GitHubError(
                f"Invalid JSON in response from {response.url}: {e}", status_code=response.status_code
            ) from e

    def get_pull_request(self, number: int) -> Dict[str, Any]:
        return self._decode(self._request("GET", self._repo_url(f"pulls/{number}")))

    def list_issue_comments(self, number: int) -> List[Dict[str, Any]]:
        """All comments on an issue or pull request, following pagination links."""
        comments: List[Dict[str, Any]] = []
        url: Optional[str] = self._repo_url(f"issues/{number}/comments")
        params: Optional[Dict[str, Any]] = {"per_page": 100}
        while url:
            response = self._request("GET", url, params=params)
            comments.extend(self._decode(response))
            url = response.links.get("next", {}).get("url")
            params = None  # the next link already carries the query
        return comments

    def create_comment(self, number: int, body: str) -> Dict[str, Any]:
        response = self._request("POST", self._repo_url(f"issues/{number}/comments"), json={"body": body})
        return self._decode(response)

    def update_comment(self, comment_id: int, body: str) -> Dict[str, Any]:
        response = self._request("PATCH", self._repo_url(f"issues/comments/{comment_id}"), json={"body": body})
        return self._decode(response)

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._request(
            "POST", f"{self.api_url}/graphql", json={"query": query, "variables": variables or {}}
        )
        payload = self._decode(response)
        if payload.get("errors"):
            messages = "; ".join(e.get("message", str(e)) for e in payload["errors"])
            raise GitHubError(f"GraphQL error: {messages}")
        return payload.get("data") or {}

    def minimize_comment(self, node_id: str) -> None:
        self.graphql(MINIMIZE_COMMENT_MUTATION, {"nodeId": node_id})

    def list_deployments(self, environment: str, per_page: int = 1) -> List[Dict[str, Any]]:
        return self._decode(self._request(
            "GET",
            self._repo_url("deployments"),
            params={"environment": environment, "per_page": per_page},
        ))

    def create_deployment_status(self, deployment_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._decode(self._request(
            "POST", self._repo_url(f"deployments/{deployment_id}/statuses"), json=payload
        ))


class ProtectionLookup:
    """
    Answers whether a pull request carries the ``keep-preview`` label.

    Lookup failures never block a teardown: they count as "not protected".
    """

    def __init__(self, client: Optional[GitHubClient], label: str = KEEP_PREVIEW_LABEL):
        self.client = client
        self.label = label

    def is_protected(self, subject_id: Optional[int]) -> bool:
        if self.client is None:
            logger.debug("No GitHub token provided, skipping keep-preview label check")
            return False
        if subject_id is None:
            return False

        try:
            pull = self.client.get_pull_request(subject_id)
        except GitHubError as e:
            if e.status_code == 404:
                logger.debug(f"PR #{subject_id} not found, treating as unprotected")
            else:
                logger.warning(f"Failed to check labels for PR #{subject_id}: {e}")
            return False

        labels = [label.get("name") for label in pull.get("labels") or []]
        return self.label in labels
