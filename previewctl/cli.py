"""
Click CLI for previewctl.
"""

import json
import logging
import sys
from typing import Optional, Tuple

import click

from .config import Settings
from .errors import InputError, PreviewError
from .kube import ClusterClient, load_kube_config
from .manifests import DEFAULT_CI_PREFIX_LENGTH
from .resources import parse_reference
from .timeutil import parse_age_to_seconds, parse_timeout
from .workflows import PreviewContext, deploy, teardown, verify


def _parse_substitutions(values: Tuple[str, ...]) -> dict:
    substitutions = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise InputError(f"Invalid substitution '{value}'. Expected format: KEY=VALUE")
        substitutions[key] = val
    return substitutions


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _preview_context(obj: dict) -> PreviewContext:
    settings: Settings = obj["settings"]
    cluster = ClusterClient(load_kube_config(obj.get("context")))
    cluster.verify_access(settings.namespace)
    return PreviewContext.from_settings(settings, cluster)


@click.group()
@click.option("--context", "kube_context", help="Kubeconfig context to use")
@click.option("--namespace", help="Namespace holding the Flux resources (default: infra-fluxcd)")
@click.option("--field-manager", help="Field manager for server-side apply")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, kube_context: Optional[str], namespace: Optional[str], field_manager: Optional[str], verbose: bool):
    """
    previewctl - manage Flux preview environments for pull requests.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = Settings.from_env().override(namespace=namespace, field_manager=field_manager)
    ctx.obj["context"] = kube_context


@main.command("deploy")
@click.option("--reference", required=True, help="CI reference, usually the pull request number")
@click.option("--tenant", required=True, help="Tenant name")
@click.option("--environment", required=True, help="Environment name")
@click.option("--source-url", required=True, help="OCI artifact URL of the tenant definition")
@click.option("--source-tag", default="latest", show_default=True, help="OCI artifact tag")
@click.option("--source-secret", help="Registry pull secret name")
@click.option("--ci-prefix-length", type=int, default=DEFAULT_CI_PREFIX_LENGTH, show_default=True,
              help="Reference characters kept in the name prefix")
@click.option("--substitute", "-s", "substitutions", multiple=True, help="Post-build substitution KEY=VALUE (repeatable)")
@click.option("--flux-timeout", default="5m", show_default=True, help="Timeout Flux applies to the Kustomization")
@click.option("--timeout", default="5m", show_default=True, help="Readiness timeout, e.g. 5m or 300s")
@click.option("--no-wait", is_flag=True, help="Do not wait for the Kustomization to become ready")
@click.option("--ingress-selector", help="Label selector choosing the ingress used for the URL")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def deploy_cmd(obj, reference, tenant, environment, source_url, source_tag, source_secret, ci_prefix_length,
               substitutions, flux_timeout, timeout, no_wait, ingress_selector, as_json):
    """
    Create or update a preview deployment.
    """
    try:
        substitute = _parse_substitutions(substitutions)
        timeout_seconds = parse_timeout(timeout, strict=True)
        result = deploy(
            _preview_context(obj),
            reference=reference,
            tenant=tenant,
            environment=environment,
            source_url=source_url,
            source_tag=source_tag,
            source_secret=source_secret,
            prefix_length=ci_prefix_length,
            substitute=substitute,
            flux_timeout=flux_timeout,
            wait=not no_wait,
            timeout=timeout_seconds,
            ingress_selector=ingress_selector,
        )
    except PreviewError as e:
        _fail(str(e))

    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return
    click.echo(f"Namespace: {result.namespace}")
    click.echo(f"OCIRepository: {result.oci_repository}")
    click.echo(f"Kustomization: {result.kustomization}")
    if result.url:
        click.echo(f"URL: {result.url}")


@main.command("verify")
@click.option("--target-namespace", required=True, help="Namespace the deployment runs in")
@click.option("--environment", default="", help="Environment name for deployment statuses")
@click.option("--flux-resource", help="Single resource to check, e.g. hr/my-release or ks/my-tenant")
@click.option("--chart-version", help="Chart version a HelmRelease must report")
@click.option("--timeout", default="5m", show_default=True, help="Readiness timeout, e.g. 5m or 300s")
@click.option("--ingress-selector", help="Label selector choosing the ingress used for the URL")
@click.option("--pr", "pr_number", type=int, help="Pull request to post the status comment on")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def verify_cmd(obj, target_namespace, environment, flux_resource, chart_version, timeout, ingress_selector,
               pr_number, as_json):
    """
    Wait until a deployment's Flux resources are ready.
    """
    try:
        if flux_resource:
            parse_reference(flux_resource)
        timeout_seconds = parse_timeout(timeout, strict=True)
        result = verify(
            _preview_context(obj),
            namespace=target_namespace,
            environment=environment,
            flux_resource=flux_resource,
            chart_version=chart_version,
            timeout=timeout_seconds,
            ingress_selector=ingress_selector,
            subject_id=pr_number,
        )
    except PreviewError as e:
        _fail(str(e))

    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return
    for resource in result.resources:
        click.echo(f"{resource.type}/{resource.name}: {resource.ready} ({resource.message})")
    if result.url:
        click.echo(f"URL: {result.url}")


@main.command("teardown")
@click.option("--reference", help="CI reference of the deployment to remove; sweeps the repository when omitted")
@click.option("--max-age", help="Only sweep deployments older than this, e.g. 7d, 48h, 30m")
@click.option("--wait-for-deletion", is_flag=True, help="Poll until the resources are gone")
@click.option("--timeout", default="5m", show_default=True, help="Deletion poll timeout")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def teardown_cmd(obj, reference, max_age, wait_for_deletion, timeout, dry_run, as_json):
    """
    Remove preview deployments.
    """
    try:
        max_age_seconds = parse_age_to_seconds(max_age) if max_age else 0
        outcome = teardown(
            _preview_context(obj),
            reference=reference,
            max_age_seconds=max_age_seconds,
            wait=wait_for_deletion,
            timeout=parse_timeout(timeout),
            dry_run=dry_run,
        )
    except PreviewError as e:
        _fail(str(e))

    if as_json:
        click.echo(outcome.model_dump_json(indent=2))
        return
    prefix = "Would delete" if dry_run else "Deleted"
    for deleted in outcome.deleted_resources:
        age = f" (age: {deleted.age})" if deleted.age else ""
        click.echo(f"{prefix}: {deleted.type}/{deleted.name}{age}")
    for skipped in outcome.skipped_resources:
        click.echo(f"Skipped: {skipped.name} ({skipped.reason})")
    click.echo(f"{outcome.deleted_count} deleted, {outcome.skipped_count} skipped")


@main.command("resolve")
@click.argument("reference")
def resolve_cmd(reference: str):
    """
    Resolve a <type>/<name> reference to its API coordinates.
    """
    try:
        ref = parse_reference(reference)
    except PreviewError as e:
        _fail(str(e))

    descriptor = ref.descriptor
    click.echo(json.dumps({
        "group": descriptor.group,
        "version": descriptor.version,
        "plural": descriptor.plural,
        "kind": descriptor.kind,
        "name": ref.name,
    }, indent=2))


if __name__ == "__main__":
    main()
