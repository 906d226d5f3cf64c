"""
Tests for the deploy, verify and teardown workflows.
"""

import logging
from datetime import timedelta
from unittest.mock import Mock

import pytest

from previewctl.config import Settings
from previewctl.errors import PreviewError, ReadinessTimeoutError
from previewctl.labels import Labels, preview_labels
from previewctl.lifecycle import LifecycleManager
from previewctl.readiness import ReadinessResult
from previewctl.resources import HELM_RELEASE, KUSTOMIZATION, OCI_REPOSITORY
from previewctl.workflows import PreviewContext, deploy, render_body, resolve_revision, teardown, verify

from conftest import make_resource

SETTINGS = Settings(
    namespace="infra-fluxcd",
    repository="acme/shop",
    workflow="preview",
    run_id="99",
    sha="fallbacksha",
)


@pytest.fixture
def watcher():
    watcher = Mock()
    watcher.wait_until_ready.return_value = ReadinessResult(
        name="ci-42-shop-tenant", type="Kustomization", ready="True", message="Applied"
    )
    return watcher


@pytest.fixture
def ctx(cluster, github, watcher):
    github.pulls[42] = {"head": {"sha": "abcdef1234"}, "labels": []}
    github.deployments = [{"id": 5, "environment": "preview"}]
    lifecycle = LifecycleManager(cluster, SETTINGS.namespace, sleep=Mock())
    return PreviewContext(settings=SETTINGS, cluster=cluster, github=github, watcher=watcher, lifecycle=lifecycle)


class TestHelpers:
    """Test revision lookup and body rendering."""

    def test_revision_from_pull_request(self, ctx):
        assert resolve_revision(ctx, 42) == "abcdef1234"

    def test_revision_fallback(self, ctx):
        """Unknown pull requests fall back to the workflow commit."""
        assert resolve_revision(ctx, 7) == "fallbacksha"
        assert resolve_revision(ctx, None) == "fallbacksha"

    def test_render_body_skips_empty_details(self):
        body = render_body("Deployed", {"Namespace": "ci-42-shop", "URL": None}, "footer")
        assert body == "**Deployed**\n\n- Namespace: `ci-42-shop`\n\nfooter\n"


class TestDeploy:
    """Test preview deployment creation."""

    def test_applies_source_then_unit(self, ctx, cluster):
        deploy(ctx, "42", "shop", "preview", "oci://registry/shop")

        kinds = [a["resource"]["kind"] for a in cluster.applied]
        assert kinds == ["OCIRepository", "Kustomization"]
        labels = cluster.applied[1]["resource"]["metadata"]["labels"]
        assert labels[Labels.CI_REFERENCE] == "42"
        assert labels[Labels.REPOSITORY] == "acme_shop"

    def test_waits_and_reports_success(self, ctx, cluster, github, watcher):
        cluster.url = "https://pr-42.example.com"

        result = deploy(ctx, "42", "shop", "preview", "oci://registry/shop", substitute={"A": "1"}, timeout=60)

        watcher.wait_until_ready.assert_called_once_with("infra-fluxcd", KUSTOMIZATION, "ci-42-shop-tenant", 60)
        assert result.url == "https://pr-42.example.com"
        assert result.namespace == "ci-42-shop"
        assert github.statuses[0][1]["state"] == "success"
        comment = github.comments[42][0]["body"]
        assert "commit=abcdef1234" in comment
        assert "https://pr-42.example.com" in comment

    def test_no_wait(self, ctx, watcher):
        result = deploy(ctx, "42", "shop", "preview", "oci://registry/shop", wait=False)

        watcher.wait_until_ready.assert_not_called()
        assert result.resources == []

    def test_failure_is_reported_and_raised(self, ctx, github, watcher):
        watcher.wait_until_ready.side_effect = ReadinessTimeoutError("not ready within timeout")

        with pytest.raises(ReadinessTimeoutError):
            deploy(ctx, "42", "shop", "preview", "oci://registry/shop")

        assert github.statuses[0][1]["state"] == "failure"
        assert "not ready within timeout" in github.comments[42][0]["body"]

    def test_success_comment_names_branch(self, ctx, github):
        ctx.settings = SETTINGS.override(head_ref="feature/x")

        deploy(ctx, "42", "shop", "preview", "oci://registry/shop")

        assert "- Branch: `feature/x`" in github.comments[42][0]["body"]


class TestVerify:
    """Test readiness verification."""

    def test_single_resource(self, ctx, watcher, caplog):
        caplog.set_level(logging.INFO)
        verify(ctx, "ci-42-shop", "preview", flux_resource="hr/web", chart_version="1.2.0", subject_id=42)

        watcher.wait_until_ready.assert_called_once_with("ci-42-shop", HELM_RELEASE, "web", 300.0, "1.2.0")
        assert "Verifying HelmRelease 'web' in namespace 'ci-42-shop'" in caplog.text

    def test_whole_namespace(self, ctx, watcher, github):
        watcher.wait_all_ready.return_value = [
            ReadinessResult(name="web", type="HelmRelease", ready="True", message="Ready"),
        ]

        result = verify(ctx, "ci-42-shop", "preview", subject_id=42)

        assert [r.name for r in result.resources] == ["web"]
        assert "HelmRelease web" in github.comments[42][0]["body"]

    def test_timeout_propagates(self, ctx, watcher, github):
        watcher.wait_all_ready.side_effect = ReadinessTimeoutError("1 resource(s) not ready")

        with pytest.raises(ReadinessTimeoutError):
            verify(ctx, "ci-42-shop", "preview")
        assert github.statuses[0][1]["state"] == "failure"


class TestTeardown:
    """Test teardown and its status comments."""

    def _deploy(self, cluster, reference, age):
        labels = preview_labels(reference, "acme/shop", "preview")
        cluster.add(KUSTOMIZATION, make_resource("Kustomization", f"ci-{reference}-shop-tenant", labels=labels, age=age))
        cluster.add(OCI_REPOSITORY, make_resource("OCIRepository", f"ci-{reference}-shop-oci", labels=labels, age=age))

    def test_targeted_posts_comment(self, ctx, cluster, github):
        self._deploy(cluster, "42", timedelta(hours=1))

        outcome = teardown(ctx, reference="42")

        assert outcome.deleted_count == 1
        assert "Environment preview torn down" in github.comments[42][0]["body"]

    def test_bulk_sweep_mentions_timeout(self, ctx, cluster, github):
        self._deploy(cluster, "42", timedelta(days=8))

        teardown(ctx, max_age_seconds=7 * 86400)

        assert "keep-preview" in github.comments[42][0]["body"]

    def test_dry_run_posts_nothing(self, ctx, cluster, github):
        self._deploy(cluster, "42", timedelta(days=8))

        outcome = teardown(ctx, reference="42", dry_run=True)

        assert outcome.deleted_count == 1
        assert github.comments == {}
        assert cluster.deleted == []

    def test_bulk_requires_repository(self, cluster):
        ctx = PreviewContext(settings=Settings(), cluster=cluster, watcher=Mock(), lifecycle=Mock())
        with pytest.raises(PreviewError, match="GITHUB_REPOSITORY"):
            teardown(ctx)
