"""
Deploy, verify and teardown workflows.

Each workflow composes the lifecycle manager, the readiness watcher and the
status reporters. Reporting to GitHub never changes the outcome of a
workflow: failures there are logged and the cluster result stands.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel

from .config import Settings
from .errors import GitHubError, PreviewError
from .github import GitHubClient, ProtectionLookup
from .labels import CorrelationKey, preview_labels
from .lifecycle import LifecycleManager, LifecycleOutcome
from .manifests import DEFAULT_CI_PREFIX_LENGTH, PreviewNames, kustomization, oci_repository
from .readiness import ReadinessResult
from .resources import KUSTOMIZATION, parse_reference
from .status import DeploymentStatusReporter, StatusArtifactManager
from .timeutil import DEFAULT_TIMEOUT_SECONDS
from .watcher import ReadinessWatcher

logger = logging.getLogger(__name__)


class DeployResult(BaseModel):
    ci_prefix: str
    namespace: str
    oci_repository: str
    kustomization: str
    url: Optional[str] = None
    resources: List[ReadinessResult] = []


class VerifyResult(BaseModel):
    namespace: str
    url: Optional[str] = None
    resources: List[ReadinessResult] = []


@dataclass
class PreviewContext:
    """Collaborators shared by all workflows."""
    settings: Settings
    cluster: object
    github: Optional[GitHubClient] = None
    watcher: Optional[ReadinessWatcher] = None
    lifecycle: Optional[LifecycleManager] = None
    comments: StatusArtifactManager = field(init=False)

    def __post_init__(self):
        if self.watcher is None:
            self.watcher = ReadinessWatcher(self.cluster)
        if self.lifecycle is None:
            self.lifecycle = LifecycleManager(
                self.cluster,
                self.settings.namespace,
                protection=ProtectionLookup(self.github),
            )
        self.comments = StatusArtifactManager(self.github)

    @classmethod
    def from_settings(cls, settings: Settings, cluster) -> "PreviewContext":
        github = None
        if settings.github_token and settings.repository:
            github = GitHubClient(settings.github_token, settings.repository, api_url=settings.api_url)
        return cls(settings=settings, cluster=cluster, github=github)

    def deployment_status(self, environment: str) -> DeploymentStatusReporter:
        return DeploymentStatusReporter(self.github, environment, log_url=self.settings.workflow_run_url)


def resolve_revision(ctx: PreviewContext, subject_id: Optional[int]) -> str:
    """Head commit of the pull request, falling back to the workflow's commit."""
    if ctx.github is not None and subject_id:
        try:
            sha = ctx.github.get_pull_request(subject_id)["head"]["sha"]
            logger.info(f"Resolved PR HEAD SHA: {sha[:7]}")
            return sha
        except (GitHubError, KeyError) as e:
            logger.warning(f"Failed to resolve PR #{subject_id} head commit: {e}")
    return ctx.settings.sha


def render_body(title: str, details: Dict[str, Optional[str]], footer: Optional[str] = None) -> str:
    """Plain status body: a title line and one line per known detail."""
    lines = [f"**{title}**", ""]
    lines.extend(f"- {key}: `{value}`" for key, value in details.items() if value)
    if footer:
        lines.extend(["", footer])
    return "\n".join(lines) + "\n"


def report(ctx: PreviewContext, subject_id: Optional[int], revision: str, body: str) -> None:
    """Publish a status comment, downgrading GitHub failures to warnings."""
    try:
        ctx.comments.publish(subject_id, ctx.settings.workflow, revision, body)
    except GitHubError as e:
        logger.warning(f"Failed to post status comment: {e}")


def _run_footer(ctx: PreviewContext) -> Optional[str]:
    if ctx.settings.repository and ctx.settings.run_id:
        return f"See workflow run: {ctx.settings.workflow_run_url}"
    return None


def deploy(
    ctx: PreviewContext,
    reference: str,
    tenant: str,
    environment: str,
    source_url: str,
    source_tag: str = "latest",
    source_secret: Optional[str] = None,
    prefix_length: int = DEFAULT_CI_PREFIX_LENGTH,
    substitute: Optional[Dict[str, str]] = None,
    flux_timeout: str = "5m",
    wait: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ingress_selector: Optional[str] = None,
) -> DeployResult:
    """
    Create the preview deployment for a CI reference and wait for it.

    Args:
        ctx: Workflow collaborators
        reference: CI reference, usually the pull request number
        tenant: Tenant name
        environment: Environment name
        source_url: OCI artifact URL of the tenant definition
        source_tag: Artifact tag
        source_secret: Pull secret for the registry
        prefix_length: Reference characters kept in the name prefix
        substitute: Post-build substitutions, passed through unchanged
        flux_timeout: Timeout Flux applies to the Kustomization
        wait: Wait for the Kustomization to become ready
        timeout: Readiness timeout in seconds
        ingress_selector: Label selector choosing the ingress for the URL

    Returns:
        DeployResult
    """
    settings = ctx.settings
    names = PreviewNames.for_tenant(reference, tenant, prefix_length)
    labels = preview_labels(reference, settings.repository, environment)
    subject_id = CorrelationKey.from_reference(reference).subject_id()
    revision = resolve_revision(ctx, subject_id)
    deployment_status = ctx.deployment_status(environment)

    result = DeployResult(
        ci_prefix=names.ci_prefix,
        namespace=names.namespace,
        oci_repository=names.oci_repository,
        kustomization=names.kustomization,
    )

    try:
        # The source must exist before the Kustomization references it
        ctx.lifecycle.apply(
            oci_repository(names.oci_repository, settings.namespace, labels, source_url, source_tag, source_secret),
            settings.field_manager,
        )
        ctx.lifecycle.apply(
            kustomization(
                names.kustomization,
                settings.namespace,
                labels,
                names.oci_repository,
                substitute or {},
                timeout=flux_timeout,
            ),
            settings.field_manager,
        )

        if wait:
            ready = ctx.watcher.wait_until_ready(settings.namespace, KUSTOMIZATION, names.kustomization, timeout)
            result.resources = [ready]
            result.url = ctx.cluster.discover_ingress_url(names.namespace, ingress_selector)
    except PreviewError as e:
        deployment_status.update("failure", description=str(e)[:140])
        report(ctx, subject_id, revision, render_body(
            f"Deployment to {environment} failed",
            {"Namespace": names.namespace, "Tenant": tenant, "Commit": revision[:7], "Error": str(e)},
            _run_footer(ctx),
        ))
        raise

    deployment_status.update("success", environment_url=result.url)
    report(ctx, subject_id, revision, render_body(
        f"Deployed to {environment}",
        {
            "Namespace": names.namespace,
            "Tenant": tenant,
            "Branch": settings.git_branch,
            "Commit": revision[:7],
            "URL": result.url,
        },
        _run_footer(ctx),
    ))
    logger.info("Preview deployment resources created successfully")
    return result


def verify(
    ctx: PreviewContext,
    namespace: str,
    environment: str,
    flux_resource: Optional[str] = None,
    chart_version: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ingress_selector: Optional[str] = None,
    subject_id: Optional[int] = None,
) -> VerifyResult:
    """
    Wait until a deployment reports ready and discover its URL.

    With ``flux_resource`` (``<type>/<name>``) only that resource is checked;
    otherwise every HelmRelease and Kustomization in the namespace.
    """
    revision = resolve_revision(ctx, subject_id)
    deployment_status = ctx.deployment_status(environment)
    result = VerifyResult(namespace=namespace)

    try:
        if flux_resource:
            ref = parse_reference(flux_resource)
            logger.info(f"Verifying {ref} in namespace '{namespace}'")
            result.resources = [
                ctx.watcher.wait_until_ready(namespace, ref.descriptor, ref.name, timeout, chart_version)
            ]
        else:
            result.resources = ctx.watcher.wait_all_ready(namespace, timeout, chart_version)
        result.url = ctx.cluster.discover_ingress_url(namespace, ingress_selector)
    except PreviewError as e:
        deployment_status.update("failure", description=str(e)[:140])
        report(ctx, subject_id, revision, render_body(
            f"Verification of {environment} failed",
            {"Namespace": namespace, "Commit": revision[:7], "Error": str(e)},
            _run_footer(ctx),
        ))
        raise

    deployment_status.update("success", environment_url=result.url)
    details: Dict[str, Optional[str]] = {"Namespace": namespace, "Commit": revision[:7], "URL": result.url}
    for resource in result.resources:
        details[f"{resource.type} {resource.name}"] = f"{resource.ready} ({resource.message})"
    report(ctx, subject_id, revision, render_body(f"Verified {environment}", details, _run_footer(ctx)))
    return result


def teardown(
    ctx: PreviewContext,
    reference: Optional[str] = None,
    max_age_seconds: int = 0,
    wait: bool = False,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    dry_run: bool = False,
) -> LifecycleOutcome:
    """
    Tear down one preview deployment, or sweep a repository's deployments.

    Args:
        ctx: Workflow collaborators
        reference: CI reference of one deployment; sweeps all when omitted
        max_age_seconds: Sweep only deployments at least this old
        wait: Poll until deleted resources are gone
        timeout: Deletion poll limit in seconds
        dry_run: Report without deleting

    Returns:
        LifecycleOutcome
    """
    if reference:
        outcome = ctx.lifecycle.teardown_targeted(reference, wait=wait, timeout=timeout, dry_run=dry_run)
        triggered_by_age = False
    else:
        if not ctx.settings.repository:
            raise PreviewError("GITHUB_REPOSITORY must be set for a repository-wide teardown")
        outcome = ctx.lifecycle.teardown_bulk(
            ctx.settings.repository,
            max_age_seconds=max_age_seconds,
            wait=wait,
            timeout=timeout,
            dry_run=dry_run,
        )
        triggered_by_age = True

    if dry_run:
        return outcome

    for deleted in outcome.deleted_resources:
        subject_id = CorrelationKey(deleted.reference).subject_id() if deleted.reference else None
        if subject_id is None:
            continue
        environment = deleted.environment or "preview"
        if triggered_by_age:
            footer = "The configured timeout has passed. Add the `keep-preview` label to keep an environment."
        else:
            footer = None
        report(ctx, subject_id, resolve_revision(ctx, subject_id), render_body(
            f"Environment {environment} torn down",
            {"Resource": deleted.name, "Age": deleted.age},
            footer,
        ))

    logger.info(f"Deleted {outcome.deleted_count} resource(s), skipped {outcome.skipped_count}")
    return outcome
