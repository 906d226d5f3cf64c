"""
Readiness evaluation for Flux resources.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel

from .resources import HELM_RELEASE, ResourceDescriptor


class ReadinessResult(BaseModel):
    """Readiness of one resource as reported to callers."""
    name: str
    type: str
    ready: str  # "True" | "False"
    message: str


def _ready_condition(resource: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    conditions = (resource.get("status") or {}).get("conditions") or []
    for condition in conditions:
        if condition.get("type") == "Ready":
            return condition
    return None


def is_resource_ready(resource: Dict[str, Any]) -> bool:
    """True when the resource's Ready condition has status "True"."""
    condition = _ready_condition(resource)
    return condition is not None and condition.get("status") == "True"


def get_ready_message(resource: Dict[str, Any]) -> str:
    condition = _ready_condition(resource) or {}
    if condition.get("message"):
        return condition["message"]
    return "Ready" if condition.get("status") == "True" else "Not Ready"


def get_deployed_version(resource: Dict[str, Any]) -> Optional[str]:
    """
    Chart version a HelmRelease last deployed.

    Reads the newest entry of ``status.history`` and falls back to
    ``status.lastAppliedRevision`` for older controllers.
    """
    if resource.get("kind") != HELM_RELEASE.kind:
        return None
    status = resource.get("status") or {}
    history = status.get("history") or []
    if history and history[0].get("chartVersion"):
        return history[0]["chartVersion"]
    return status.get("lastAppliedRevision")


def version_gated(descriptor: ResourceDescriptor, target_version: Optional[str]) -> bool:
    """Version gating only applies to HelmReleases."""
    return bool(target_version) and descriptor.kind == HELM_RELEASE.kind


def is_fully_ready(
    resource: Dict[str, Any],
    descriptor: ResourceDescriptor,
    target_version: Optional[str] = None,
) -> bool:
    """
    Readiness predicate used by the watcher.

    Args:
        resource: Resource object as returned by the API
        descriptor: Resource type
        target_version: Required chart version, compared by string equality

    Returns:
        True if Ready=True and, when gated, the deployed version matches
    """
    if not is_resource_ready(resource):
        return False
    if version_gated(descriptor, target_version):
        return get_deployed_version(resource) == target_version
    return True


def to_result(resource: Dict[str, Any]) -> ReadinessResult:
    return ReadinessResult(
        name=resource["metadata"]["name"],
        type=resource.get("kind", ""),
        ready="True" if is_resource_ready(resource) else "False",
        message=get_ready_message(resource),
    )
