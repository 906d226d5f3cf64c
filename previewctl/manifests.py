"""
Manifests and names for the two resources of a preview deployment.

An OCIRepository points Flux at the tenant definition artifact and a
Kustomization reconciles it into the preview namespace. Both carry the same
labels so they can be found again at teardown.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import InputError
from .labels import sanitize_name, truncate_name
from .resources import KUSTOMIZATION, OCI_REPOSITORY

logger = logging.getLogger(__name__)

DEFAULT_CI_PREFIX_LENGTH = 16
MAX_CI_PREFIX_LENGTH = 24
DEFAULT_SERVICE_ACCOUNT = "flux-deployment-controller"


def ci_prefix(reference: str, length: int = DEFAULT_CI_PREFIX_LENGTH) -> str:
    """
    Name prefix shared by every resource of one preview deployment.

    Args:
        reference: CI reference (pull request number or branch name)
        length: Number of reference characters kept

    Returns:
        Prefix such as ``ci-42-``

    Raises:
        InputError: If ``length`` exceeds the allowed maximum
    """
    if length > MAX_CI_PREFIX_LENGTH:
        raise InputError(
            f"The ci-prefix-length cannot be greater than {MAX_CI_PREFIX_LENGTH}, but got: {length}"
        )
    if length < 1:
        raise InputError(f"The ci-prefix-length must be positive, but got: {length}")
    return sanitize_name(f"ci-{reference[:length]}-")


@dataclass(frozen=True)
class PreviewNames:
    """Derived names for one tenant deployment."""
    ci_prefix: str
    oci_repository: str
    kustomization: str
    namespace: str

    @classmethod
    def for_tenant(cls, reference: str, tenant: str, prefix_length: int = DEFAULT_CI_PREFIX_LENGTH) -> "PreviewNames":
        prefix = ci_prefix(reference, prefix_length)
        names = cls(
            ci_prefix=prefix,
            oci_repository=truncate_name(f"{prefix}{tenant}-oci"),
            kustomization=truncate_name(f"{prefix}{tenant}-tenant"),
            namespace=truncate_name(f"{prefix}{tenant}"),
        )
        logger.info(f"Generated CI prefix: {prefix}")
        logger.info(f"OCIRepository name: {names.oci_repository}")
        logger.info(f"Kustomization name: {names.kustomization}")
        logger.info(f"Namespace: {names.namespace}")
        return names


def _metadata(name: str, namespace: str, labels: Dict[str, str]) -> Dict[str, Any]:
    return {"name": name, "namespace": namespace, "labels": dict(labels)}


def oci_repository(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    url: str,
    tag: str = "latest",
    secret_name: Optional[str] = None,
    interval: str = "5m",
) -> Dict[str, Any]:
    """Build the OCIRepository pointing at the tenant artifact."""
    spec: Dict[str, Any] = {
        "interval": interval,
        "url": url,
        "ref": {"tag": tag},
    }
    if secret_name:
        spec["secretRef"] = {"name": secret_name}
    return {
        "apiVersion": OCI_REPOSITORY.api_version,
        "kind": OCI_REPOSITORY.kind,
        "metadata": _metadata(name, namespace, labels),
        "spec": spec,
    }


def kustomization(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    source_name: str,
    substitute: Dict[str, str],
    timeout: str = "5m",
    service_account: str = DEFAULT_SERVICE_ACCOUNT,
    interval: str = "10m",
) -> Dict[str, Any]:
    """
    Build the Kustomization reconciling the tenant artifact.

    ``substitute`` is handed to Flux post-build substitution unchanged.
    """
    return {
        "apiVersion": KUSTOMIZATION.api_version,
        "kind": KUSTOMIZATION.kind,
        "metadata": _metadata(name, namespace, labels),
        "spec": {
            "serviceAccountName": service_account,
            "interval": interval,
            "sourceRef": {"kind": OCI_REPOSITORY.kind, "name": source_name},
            "path": "./",
            "prune": True,
            "wait": True,
            "timeout": timeout,
            "postBuild": {"substitute": dict(substitute)},
        },
    }
