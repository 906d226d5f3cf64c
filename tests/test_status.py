"""
Tests for status comments and deployment statuses.
"""

from unittest.mock import Mock

import pytest

from previewctl.errors import GitHubError
from previewctl.status import DeploymentStatusReporter, StatusArtifactManager, identifier


class TestStatusArtifactManager:
    """Test one visible status comment per pull request and workflow."""

    def test_create_comment_with_identifier(self, github):
        artifact = StatusArtifactManager(github).publish(42, "deploy", "abc123", "Deployed")

        body = github.comments[42][0]["body"]
        assert body.startswith("<!-- previewctl: pr=42, workflow=deploy, commit=abc123 -->")
        assert body.endswith("Deployed")
        assert artifact.comment_id == 1

    def test_same_revision_updates_in_place(self, github):
        """Publishing twice for one commit leaves a single comment."""
        manager = StatusArtifactManager(github)
        manager.publish(42, "deploy", "abc123", "Deploying")
        manager.publish(42, "deploy", "abc123", "Deployed")

        assert len(github.comments[42]) == 1
        assert github.comments[42][0]["body"].endswith("Deployed")
        assert github.minimized == []

    def test_new_revision_minimizes_previous(self, github, caplog):
        manager = StatusArtifactManager(github)
        manager.publish(42, "deploy", "abc123", "old")
        manager.publish(42, "deploy", "def456", "new")

        assert len(github.comments[42]) == 2
        assert github.minimized == ["IC_1"]
        assert "still visible" not in caplog.text

    def test_other_workflows_untouched(self, github):
        """Comments of another workflow are neither updated nor minimized."""
        github.create_comment(42, identifier(42, "verify", "abc123") + "\n\nverified")
        github.create_comment(42, "an unrelated human comment")

        StatusArtifactManager(github).publish(42, "deploy", "def456", "deployed")

        assert github.minimized == []
        assert len(github.comments[42]) == 3

    def test_minimize_failure_still_publishes(self, github, caplog):
        manager = StatusArtifactManager(github)
        manager.publish(42, "deploy", "abc123", "old")
        github.minimize_error = GitHubError("forbidden", status_code=403)

        artifact = manager.publish(42, "deploy", "def456", "new")

        assert artifact is not None
        assert len(github.comments[42]) == 2
        assert "Failed to minimize comment IC_1" in caplog.text
        assert "1 outdated comment(s) for PR #42 are still visible: abc123" in caplog.text

    def test_disabled_without_client_or_subject(self, github):
        assert StatusArtifactManager(None).publish(42, "deploy", "abc", "x") is None
        assert StatusArtifactManager(github).publish(None, "deploy", "abc", "x") is None
        assert github.comments == {}


class TestDeploymentStatusReporter:
    """Test best-effort deployment status updates."""

    def test_updates_newest_deployment(self, github):
        github.deployments = [{"id": 9, "environment": "preview"}, {"id": 3, "environment": "preview"}]
        reporter = DeploymentStatusReporter(github, "preview", log_url="https://ci/run/1")

        assert reporter.update("success", environment_url="https://pr-42.example.com") == 9

        deployment_id, payload = github.statuses[0]
        assert deployment_id == 9
        assert payload["state"] == "success"
        assert payload["environment_url"] == "https://pr-42.example.com"
        assert payload["log_url"] == "https://ci/run/1"
        assert payload["auto_inactive"] is False

    def test_no_deployment(self, github, caplog):
        assert DeploymentStatusReporter(github, "preview").update("success") is None
        assert "No deployment found for environment 'preview'" in caplog.text

    def test_api_failure_is_logged(self, github, caplog):
        github.deployments = [{"id": 9, "environment": "preview"}]
        github.create_deployment_status = Mock(side_effect=GitHubError("boom"))

        assert DeploymentStatusReporter(github, "preview").update("failure") is None
        assert "Failed to update deployment status" in caplog.text

    def test_unknown_state(self, github):
        with pytest.raises(ValueError):
            DeploymentStatusReporter(github, "preview").update("done")

    def test_skipped_without_environment(self, github):
        assert DeploymentStatusReporter(github, "").update("success") is None
        assert github.statuses == []
