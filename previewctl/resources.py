"""
FluxCD resource coordinates and short-reference resolution.
"""

from dataclasses import dataclass
from typing import Dict

from .errors import InputError


@dataclass(frozen=True)
class ResourceDescriptor:
    """API coordinates of a namespaced custom resource type."""
    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


@dataclass(frozen=True)
class ResourceRef:
    """A descriptor paired with the name of one resource."""
    descriptor: ResourceDescriptor
    name: str

    def __str__(self) -> str:
        return f"{self.descriptor.kind} '{self.name}'"


HELM_RELEASE = ResourceDescriptor(
    group="helm.toolkit.fluxcd.io",
    version="v2",
    plural="helmreleases",
    kind="HelmRelease",
)

KUSTOMIZATION = ResourceDescriptor(
    group="kustomize.toolkit.fluxcd.io",
    version="v1",
    plural="kustomizations",
    kind="Kustomization",
)

OCI_REPOSITORY = ResourceDescriptor(
    group="source.toolkit.fluxcd.io",
    version="v1",
    plural="ocirepositories",
    kind="OCIRepository",
)

# Type tokens accepted in "<type>/<name>" references
_ALIASES: Dict[str, ResourceDescriptor] = {
    "helmrelease": HELM_RELEASE,
    "helmreleases": HELM_RELEASE,
    "hr": HELM_RELEASE,
    "kustomization": KUSTOMIZATION,
    "kustomizations": KUSTOMIZATION,
    "ks": KUSTOMIZATION,
}

_BY_KIND: Dict[str, ResourceDescriptor] = {
    d.kind: d for d in (HELM_RELEASE, KUSTOMIZATION, OCI_REPOSITORY)
}


def parse_reference(reference: str) -> ResourceRef:
    """
    Parse a ``<type>/<name>`` reference such as ``ks/my-tenant``.

    Args:
        reference: Short resource reference

    Returns:
        Resolved descriptor and resource name

    Raises:
        InputError: If the reference is malformed or the type is unsupported
    """
    parts = reference.split("/")
    if len(parts) != 2:
        raise InputError(
            f"Invalid flux-resource format: {reference}. Expected format: <type>/<name> "
            f"(e.g., helmreleases/my-release or ks/my-kustomization)"
        )

    resource_type, name = parts
    descriptor = _ALIASES.get(resource_type.lower())
    if descriptor is None:
        raise InputError(
            f"Unsupported flux resource type: {resource_type}. Supported types: "
            f"helmrelease/helmreleases (hr), kustomization/kustomizations (ks)"
        )
    return ResourceRef(descriptor=descriptor, name=name)


def resolve(reference: str) -> ResourceDescriptor:
    """Resolve a ``<type>/<name>`` reference to its resource descriptor."""
    return parse_reference(reference).descriptor


def descriptor_for_kind(kind: str) -> ResourceDescriptor:
    """Look up the descriptor for a manifest ``kind``."""
    try:
        return _BY_KIND[kind]
    except KeyError:
        raise InputError(f"Unsupported resource kind: {kind}") from None
