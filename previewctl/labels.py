"""
Labelling utilities for preview deployment resources.

Labels are the only link between a Kustomization and the OCIRepository it
consumes, so every bulk operation goes through the selectors built here.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

LABEL_PREFIX = "previewctl.io"


class Labels:
    MANAGED_BY = "app.kubernetes.io/managed-by"
    CREATED_BY = "app.kubernetes.io/created-by"
    PREVIEW_DEPLOYMENT = f"{LABEL_PREFIX}/preview-deployment"
    CI_REFERENCE = f"{LABEL_PREFIX}/ci-reference"
    REPOSITORY = f"{LABEL_PREFIX}/repository"
    ENVIRONMENT = f"{LABEL_PREFIX}/environment"


MAX_LABEL_LENGTH = 63


def sanitize_name(name: str) -> str:
    """Lowercase a name and drop everything but alphanumerics and hyphens."""
    return re.sub(r"[^a-z0-9-]", "", name.lower())


def sanitize_label_value(value: str) -> str:
    """
    Make a string safe to use as a Kubernetes label value.

    Label values are at most 63 characters, contain only alphanumerics,
    ``-``, ``_`` and ``.``, and start and end with an alphanumeric.

    Args:
        value: Raw value (branch name, PR number, ``owner_repo``...)

    Returns:
        Sanitized label value
    """
    cleaned = re.sub(r"[^a-z0-9\-_.]", "_", value.lower())
    cleaned = re.sub(r"^[^a-z0-9]+", "", cleaned)
    cleaned = cleaned[:MAX_LABEL_LENGTH]
    return re.sub(r"[^a-z0-9]+$", "", cleaned)


def truncate_name(name: str, max_length: int = MAX_LABEL_LENGTH) -> str:
    """Truncate a resource name, warning when characters are dropped."""
    if len(name) > max_length:
        logger.warning(f"Name truncated to {max_length} characters: {name}")
        return name[:max_length]
    return name


def repository_label(repository: str) -> str:
    """Label value for an ``owner/repo`` slug."""
    return sanitize_label_value(repository.replace("/", "_"))


def format_selector(labels: Dict[str, str]) -> str:
    """Render a mapping as an equality-based label selector."""
    return ",".join(f"{key}={value}" for key, value in labels.items())


@dataclass(frozen=True)
class CorrelationKey:
    """
    Shared ci-reference label value grouping one preview deployment.

    A Kustomization and its OCIRepository carry no structural reference to
    each other; both are found through this key.
    """
    value: str

    @classmethod
    def from_reference(cls, reference: str) -> "CorrelationKey":
        return cls(sanitize_label_value(reference))

    def selector(self) -> str:
        return format_selector({
            Labels.PREVIEW_DEPLOYMENT: "true",
            Labels.CI_REFERENCE: self.value,
        })

    def subject_id(self) -> Optional[int]:
        """Pull request number encoded in the key, if the key is numeric."""
        return int(self.value) if self.value.isdigit() else None


def repository_selector(repository: str) -> str:
    """Selector matching every preview deployment created for a repository."""
    return format_selector({
        Labels.PREVIEW_DEPLOYMENT: "true",
        Labels.REPOSITORY: repository_label(repository),
    })


def preview_labels(
    reference: str,
    repository: str,
    environment: str,
    created_by: str = "deploy-preview",
) -> Dict[str, str]:
    """
    Generate the labels applied to both managed resources of a deployment.

    Args:
        reference: CI reference (usually the pull request number)
        repository: ``owner/repo`` slug
        environment: Environment name
        created_by: Workflow that created the resources

    Returns:
        Label mapping
    """
    return {
        Labels.MANAGED_BY: "previewctl",
        Labels.CREATED_BY: created_by,
        Labels.PREVIEW_DEPLOYMENT: "true",
        Labels.CI_REFERENCE: sanitize_label_value(reference),
        Labels.REPOSITORY: repository_label(repository),
        Labels.ENVIRONMENT: sanitize_label_value(environment),
    }
