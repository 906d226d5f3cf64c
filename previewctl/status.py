"""
Status reporting to GitHub.

``StatusArtifactManager`` keeps exactly one visible status comment per pull
request and workflow. Comments are tagged with a hidden HTML identifier
carrying the commit they describe; comments for older commits are minimized
as outdated and the comment for the current commit is updated in place.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import GitHubError

logger = logging.getLogger(__name__)

IDENTIFIER_TAG = "previewctl"
DEPLOYMENT_STATES = ("error", "failure", "inactive", "in_progress", "queued", "pending", "success")


@dataclass
class StatusArtifact:
    """A published status comment."""
    subject_id: int
    workflow_name: str
    revision: str
    body: str
    comment_id: Optional[int] = None
    node_id: Optional[str] = None
    is_minimized: bool = False


def identifier_prefix(subject_id: int, workflow_name: str) -> str:
    """Prefix shared by every status comment of a pull request and workflow."""
    return f"<!-- {IDENTIFIER_TAG}: pr={subject_id}, workflow={workflow_name}, commit="


def identifier(subject_id: int, workflow_name: str, revision: str) -> str:
    return f"{identifier_prefix(subject_id, workflow_name)}{revision} -->"


class StatusArtifactManager:
    """Publishes and supersedes pull request status comments."""

    def __init__(self, client=None):
        self.client = client

    def _minimize(self, subject_id: int, workflow_name: str, comments: List[Dict[str, Any]]) -> List[StatusArtifact]:
        prefix = identifier_prefix(subject_id, workflow_name)
        artifacts = []
        for comment in comments:
            node_id = comment.get("node_id")
            body = comment.get("body") or ""
            artifact = StatusArtifact(
                subject_id=subject_id,
                workflow_name=workflow_name,
                revision=body[len(prefix):].split(" -->", 1)[0],
                body=body,
                comment_id=comment.get("id"),
                node_id=node_id,
            )
            try:
                self.client.minimize_comment(node_id)
                artifact.is_minimized = True
                logger.info(f"Minimized comment {node_id}")
            except GitHubError as e:
                logger.warning(f"Failed to minimize comment {node_id}: {e}")
            artifacts.append(artifact)
        return artifacts

    def publish(
        self,
        subject_id: Optional[int],
        workflow_name: str,
        revision: str,
        body: str,
    ) -> Optional[StatusArtifact]:
        """
        Publish the status comment for a revision.

        Args:
            subject_id: Pull request number
            workflow_name: Workflow the status belongs to
            revision: Commit SHA the status describes
            body: Rendered comment body, without identifier

        Returns:
            The published artifact, or None when publishing is disabled

        Raises:
            GitHubError: If listing, creating or updating the comment fails
        """
        if self.client is None or not subject_id:
            logger.debug("Skipping PR comment - no token or no PR context")
            return None

        prefix = identifier_prefix(subject_id, workflow_name)
        current = identifier(subject_id, workflow_name, revision)
        full_body = f"{current}\n\n{body}"

        comments = self.client.list_issue_comments(subject_id)
        relevant = [c for c in comments if (c.get("body") or "").startswith(prefix)]
        outdated = [c for c in relevant if not c["body"].startswith(current)]
        existing = next((c for c in relevant if c["body"].startswith(current)), None)

        if outdated:
            logger.info(f"Minimizing {len(outdated)} previous comment(s) for PR #{subject_id}")
            visible = [a for a in self._minimize(subject_id, workflow_name, outdated) if not a.is_minimized]
            if visible:
                logger.warning(
                    f"{len(visible)} outdated comment(s) for PR #{subject_id} are still visible: "
                    + ", ".join(a.revision[:7] for a in visible)
                )

        if existing is not None:
            comment = self.client.update_comment(existing["id"], full_body)
            logger.info(f"Updated status comment for PR #{subject_id}, commit {revision[:7]}")
        else:
            comment = self.client.create_comment(subject_id, full_body)
            logger.info(f"Created status comment for PR #{subject_id}, commit {revision[:7]}")

        return StatusArtifact(
            subject_id=subject_id,
            workflow_name=workflow_name,
            revision=revision,
            body=full_body,
            comment_id=comment.get("id"),
            node_id=comment.get("node_id"),
        )


class DeploymentStatusReporter:
    """Posts GitHub deployment statuses for the newest deployment of an environment."""

    def __init__(self, client=None, environment: str = "", log_url: Optional[str] = None):
        self.client = client
        self.environment = environment
        self.log_url = log_url

    def update(
        self,
        state: str,
        environment_url: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[int]:
        """
        Best-effort deployment status update.

        Returns:
            Id of the updated deployment, or None if nothing was updated
        """
        if self.client is None or not self.environment:
            logger.debug("Skipping deployment status update - no token or environment")
            return None
        if state not in DEPLOYMENT_STATES:
            raise ValueError(f"Unknown deployment state: {state}")

        try:
            deployments = self.client.list_deployments(self.environment)
            if not deployments:
                logger.warning(f"No deployment found for environment '{self.environment}'")
                return None

            deployment_id = deployments[0]["id"]
            payload: Dict[str, Any] = {
                "state": state,
                "description": description or "",
                "auto_inactive": False,
            }
            if environment_url:
                payload["environment_url"] = environment_url
            if self.log_url:
                payload["log_url"] = self.log_url
            self.client.create_deployment_status(deployment_id, payload)
        except GitHubError as e:
            logger.warning(f"Failed to update deployment status: {e}")
            return None

        url_note = f" with URL: {environment_url}" if environment_url else ""
        logger.info(f"Updated deployment {deployment_id} status to '{state}'{url_note}")
        return deployment_id
