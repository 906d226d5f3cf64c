"""
Lifecycle management for preview deployment resources.

Everything here is driven by labels: resources are found by selector,
paired through their shared ci-reference label and removed in dependency
order (Kustomization before OCIRepository).
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from .errors import ApiError, ResourceNotFoundError
from .labels import CorrelationKey, Labels, repository_label, repository_selector
from .resources import KUSTOMIZATION, OCI_REPOSITORY, ResourceDescriptor, descriptor_for_kind
from .timeutil import DEFAULT_TIMEOUT_SECONDS, compute_age, format_age

logger = logging.getLogger(__name__)

DELETION_POLL_INTERVAL = 2.0
DEFAULT_SETTLE_SECONDS = 30.0

SKIP_NOT_FOUND = "not found or already deleted"
SKIP_PROTECTED = "protected by keep-preview label"


class DeletedResource(BaseModel):
    type: str
    name: str
    age: Optional[str] = None
    reference: Optional[str] = None
    environment: Optional[str] = None


class SkippedResource(BaseModel):
    name: str
    reason: str
    age: Optional[str] = None


class LifecycleOutcome(BaseModel):
    """Result of a teardown pass."""
    deleted_count: int = 0
    deleted_resources: List[DeletedResource] = []
    skipped_count: int = 0
    skipped_resources: List[SkippedResource] = []

    def record_deleted(self, resource: DeletedResource) -> None:
        self.deleted_resources.append(resource)
        self.deleted_count += 1

    def record_skipped(self, resource: SkippedResource) -> None:
        self.skipped_resources.append(resource)
        self.skipped_count += 1


@dataclass
class DiscoveredResources:
    """Kustomizations (units) and OCIRepositories (sources) matching a selector."""
    units: List[Dict[str, Any]] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.units and not self.sources


def _name(resource: Dict[str, Any]) -> str:
    return resource["metadata"]["name"]


def _label(resource: Dict[str, Any], key: str, default: str = "") -> str:
    return (resource["metadata"].get("labels") or {}).get(key, default)


class LifecycleManager:
    """Applies, discovers and tears down preview deployment resources."""

    def __init__(
        self,
        cluster,
        namespace: str,
        protection=None,
        poll_interval: float = DELETION_POLL_INTERVAL,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.namespace = namespace
        self.protection = protection
        self.poll_interval = poll_interval
        self.settle_seconds = settle_seconds
        self._clock = clock
        self._sleep = sleep

    def apply(self, resource: Dict[str, Any], field_manager: str) -> Dict[str, Any]:
        """
        Create or update a resource with server-side apply.

        Args:
            resource: Full manifest, including ``metadata.namespace``
            field_manager: Field manager taking ownership of the applied fields

        Returns:
            The resource as stored by the API server
        """
        descriptor = descriptor_for_kind(resource["kind"])
        name = _name(resource)
        logger.info(f"Applying {descriptor.kind}: {name}")
        applied = self.cluster.apply(resource, descriptor, field_manager)
        logger.info(f"{descriptor.kind} {name} applied")
        return applied

    def find_by_label(self, selector: str) -> DiscoveredResources:
        """List Kustomizations and OCIRepositories matching ``selector`` in parallel."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            units = executor.submit(self.cluster.list, KUSTOMIZATION, self.namespace, selector)
            sources = executor.submit(self.cluster.list, OCI_REPOSITORY, self.namespace, selector)
            return DiscoveredResources(units=units.result(), sources=sources.result())

    def delete(self, descriptor: ResourceDescriptor, name: str) -> bool:
        """
        Delete one resource with background propagation.

        A missing resource counts as deleted. Failures deleting an
        OCIRepository are only logged, since the Kustomization is the
        resource of record.

        Returns:
            True if a delete request was accepted, False otherwise
        """
        try:
            self.cluster.delete(descriptor, self.namespace, name, propagation_policy="Background")
        except ResourceNotFoundError:
            logger.info(f"{descriptor.kind} {name} already deleted")
            return False
        except ApiError as e:
            if descriptor == OCI_REPOSITORY:
                logger.warning(f"Failed to delete {descriptor.kind} {name}: {e}")
                return False
            raise
        logger.info(f"Deleted {descriptor.kind}: {name}")
        return True

    def delete_matching_sources(self, key: CorrelationKey, dry_run: bool = False) -> List[str]:
        """
        Delete every OCIRepository carrying the given ci-reference label.

        Returns:
            Names of the matched OCIRepositories
        """
        try:
            sources = self.cluster.list(OCI_REPOSITORY, self.namespace, key.selector())
        except ApiError as e:
            logger.warning(f"Failed to find matching OCIRepository for ci-reference {key.value}: {e}")
            return []

        names = [_name(source) for source in sources]
        if not dry_run:
            for name in names:
                self.delete(OCI_REPOSITORY, name)
        return names

    def wait_for_deletion(self, descriptor: ResourceDescriptor, names: List[str], timeout: float) -> bool:
        """
        Poll until each named resource is gone.

        Args:
            descriptor: Resource type
            names: Resources to wait for
            timeout: Overall limit in seconds

        Returns:
            True if all resources disappeared before the timeout
        """
        deadline = self._clock() + timeout
        for name in names:
            while True:
                try:
                    self.cluster.get(descriptor, self.namespace, name)
                except ResourceNotFoundError:
                    break
                if self._clock() >= deadline:
                    logger.warning(f"Timeout reached while waiting for {descriptor.kind} {name} deletion")
                    return False
                self._sleep(self.poll_interval)
        return True

    def is_protected(self, subject_id: Optional[int]) -> bool:
        if self.protection is None:
            logger.debug("No protection lookup configured, skipping keep-preview check")
            return False
        return self.protection.is_protected(subject_id)

    def teardown_targeted(
        self,
        reference: str,
        wait: bool = False,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        dry_run: bool = False,
    ) -> LifecycleOutcome:
        """
        Remove the preview deployment created for one CI reference.

        Args:
            reference: CI reference the deployment was labelled with
            wait: Poll until the resources are gone, then let Flux settle
            timeout: Limit for the deletion poll in seconds
            dry_run: Report what would be deleted without deleting

        Returns:
            LifecycleOutcome
        """
        outcome = LifecycleOutcome()
        key = CorrelationKey.from_reference(reference)
        logger.info(f"Searching for resources with ci-reference label: {key.value}")

        found = self.find_by_label(key.selector())
        if found.empty:
            logger.info(f"No preview deployment found with reference: {reference} (ci-reference: {key.value})")
            outcome.record_skipped(SkippedResource(name=reference, reason=SKIP_NOT_FOUND))
            return outcome

        logger.info(
            f"Found preview deployment: {len(found.units)} Kustomization(s), "
            f"{len(found.sources)} OCIRepository(ies)"
        )

        if dry_run:
            logger.info("DRY RUN: Would delete the following resources:")
            for unit in found.units:
                logger.info(f"  - Kustomization: {_name(unit)}")
            for source in found.sources:
                logger.info(f"  - OCIRepository: {_name(source)}")
        else:
            for unit in found.units:
                self.delete(KUSTOMIZATION, _name(unit))
            for source in found.sources:
                self.delete(OCI_REPOSITORY, _name(source))

        for unit in found.units:
            outcome.record_deleted(DeletedResource(
                type=KUSTOMIZATION.kind,
                name=_name(unit),
                reference=key.value,
                environment=_label(unit, Labels.ENVIRONMENT) or None,
            ))

        if wait and not dry_run:
            logger.info("Waiting for resources to be fully deleted...")
            started = self._clock()
            done = self.wait_for_deletion(KUSTOMIZATION, [_name(u) for u in found.units], timeout)
            if done:
                remaining = max(timeout - (self._clock() - started), 0.0)
                done = self.wait_for_deletion(OCI_REPOSITORY, [_name(s) for s in found.sources], remaining)
            if done:
                logger.info("Resources deleted successfully")
            if self.settle_seconds > 0:
                logger.info(
                    f"Waiting an additional {self.settle_seconds:g} seconds for FluxCD to process "
                    f"finalizers and prune managed resources..."
                )
                self._sleep(self.settle_seconds)

        return outcome

    def teardown_bulk(
        self,
        repository: str,
        max_age_seconds: int = 0,
        wait: bool = False,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> LifecycleOutcome:
        """
        Remove every expired, unprotected preview deployment of a repository.

        Args:
            repository: ``owner/repo`` slug
            max_age_seconds: Only delete deployments at least this old (0 deletes all)
            wait: Poll until each Kustomization is gone
            timeout: Limit for each deletion poll in seconds
            dry_run: Report what would be deleted without deleting
            now: Reference time for age computation

        Returns:
            LifecycleOutcome
        """
        outcome = LifecycleOutcome()
        logger.info(f"Filtering by repository: {repository_label(repository)}")

        units = self.cluster.list(KUSTOMIZATION, self.namespace, repository_selector(repository))
        logger.info(f"Found {len(units)} preview deployment(s)")
        if not units:
            logger.info("No preview deployments to clean up")
            return outcome

        if max_age_seconds > 0:
            logger.info(f"Filtering by age: older than {format_age(max_age_seconds)}")

        for unit in units:
            name = _name(unit)
            reference = _label(unit, Labels.CI_REFERENCE)
            age_seconds = compute_age(unit["metadata"]["creationTimestamp"], now)
            age = format_age(age_seconds)

            if max_age_seconds > 0 and age_seconds < max_age_seconds:
                logger.info(f"  Skipping {name} (age: {age}, below threshold)")
                outcome.record_skipped(SkippedResource(name=name, reason=f"too young ({age})", age=age))
                continue

            key = CorrelationKey(reference) if reference else None
            if key is not None and self.is_protected(key.subject_id()):
                logger.info(f"  Skipping {name} ({SKIP_PROTECTED})")
                outcome.record_skipped(SkippedResource(name=name, reason=SKIP_PROTECTED, age=age))
                continue

            if dry_run:
                logger.info(f"  Would delete: {name} (age: {age})")
            else:
                logger.info(f"  Deleting: {name} (age: {age})")
                self.delete(KUSTOMIZATION, name)
                if key is not None:
                    self.delete_matching_sources(key)
                if wait:
                    self.wait_for_deletion(KUSTOMIZATION, [name], timeout)

            outcome.record_deleted(DeletedResource(
                type=KUSTOMIZATION.kind,
                name=name,
                age=age,
                reference=reference or None,
                environment=_label(unit, Labels.ENVIRONMENT) or None,
            ))

        return outcome
