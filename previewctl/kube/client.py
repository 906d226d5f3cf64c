"""
Cluster API adapter for FluxCD custom resources.

Wraps the ``kubernetes`` client so the rest of the package only sees plain
dictionaries and previewctl errors. ``ApiException`` is translated here and
nowhere else.
"""

from __future__ import annotations

import logging
import queue
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from ..errors import AccessDeniedError, ApiError, PreviewError, ResourceNotFoundError
from ..resources import KUSTOMIZATION, OCI_REPOSITORY, ResourceDescriptor
from .watch import StreamSubscription, Subscription, WatchMessage

logger = logging.getLogger(__name__)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"
DEFAULT_WATCH_TIMEOUT_SECONDS = 300


def _translate(exc: ApiException, what: str) -> ApiError:
    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None) or str(exc)
    if status == 404:
        return ResourceNotFoundError(f"{what} not found")
    return ApiError(f"{what} failed ({status}): {reason}", status_code=status)


def load_kube_config(context: Optional[str] = None) -> client.ApiClient:
    """
    Build an API client for a kubeconfig context.

    Falls back to in-cluster configuration when no kubeconfig is present and
    no context was requested.

    Args:
        context: Kubeconfig context name

    Returns:
        Configured ``ApiClient``

    Raises:
        PreviewError: If the context does not exist
    """
    try:
        contexts, _ = config.list_kube_config_contexts()
    except ConfigException:
        if context:
            raise PreviewError(f"No kubeconfig found to select context '{context}'")
        config.load_incluster_config()
        return client.ApiClient()

    names = [c["name"] for c in contexts]
    if context and context not in names:
        logger.error(f"Cannot find context '{context}' in kubeconfig. Available contexts:")
        for name in names:
            logger.info(f"  - {name}")
        raise PreviewError(f"Context '{context}' does not exist")

    logger.info(f"Using context: {context or 'current'}")
    return config.new_client_from_config(context=context)


class ClusterClient:
    """Thin wrapper over ``CustomObjectsApi`` for namespaced custom resources."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client
        self._custom_api: Optional[client.CustomObjectsApi] = None
        self._networking_api: Optional[client.NetworkingV1Api] = None

    @property
    def custom_api(self) -> client.CustomObjectsApi:
        if self._custom_api is None:
            self._custom_api = client.CustomObjectsApi(self.api_client)
        return self._custom_api

    @property
    def networking_api(self) -> client.NetworkingV1Api:
        if self._networking_api is None:
            self._networking_api = client.NetworkingV1Api(self.api_client)
        return self._networking_api

    def get(self, descriptor: ResourceDescriptor, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                descriptor.group, descriptor.version, namespace, descriptor.plural, name
            )
        except ApiException as e:
            raise _translate(e, f"{descriptor.kind} '{name}' in namespace '{namespace}'") from e

    def list(
        self,
        descriptor: ResourceDescriptor,
        namespace: str,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if field_selector:
            kwargs["field_selector"] = field_selector
        if limit:
            kwargs["limit"] = limit
        try:
            result = self.custom_api.list_namespaced_custom_object(
                descriptor.group, descriptor.version, namespace, descriptor.plural, **kwargs
            )
        except ApiException as e:
            raise _translate(e, f"Listing {descriptor.plural} in namespace '{namespace}'") from e
        return result.get("items", [])

    def apply(self, resource: Dict[str, Any], descriptor: ResourceDescriptor, field_manager: str) -> Dict[str, Any]:
        """Server-side apply, forcing ownership of conflicting fields."""
        metadata = resource["metadata"]
        try:
            return self.custom_api.patch_namespaced_custom_object(
                descriptor.group,
                descriptor.version,
                metadata["namespace"],
                descriptor.plural,
                metadata["name"],
                resource,
                field_manager=field_manager,
                force=True,
                _content_type=APPLY_PATCH_CONTENT_TYPE,
            )
        except ApiException as e:
            raise _translate(e, f"Applying {descriptor.kind} '{metadata['name']}'") from e

    def delete(
        self,
        descriptor: ResourceDescriptor,
        namespace: str,
        name: str,
        propagation_policy: str = "Background",
    ) -> None:
        try:
            self.custom_api.delete_namespaced_custom_object(
                descriptor.group,
                descriptor.version,
                namespace,
                descriptor.plural,
                name,
                propagation_policy=propagation_policy,
                body=client.V1DeleteOptions(propagation_policy=propagation_policy),
            )
        except ApiException as e:
            raise _translate(e, f"Deleting {descriptor.kind} '{name}'") from e

    def watch(
        self,
        descriptor: ResourceDescriptor,
        namespace: str,
        sink: "queue.Queue[WatchMessage]",
        field_selector: Optional[str] = None,
        timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
    ) -> Subscription:
        """
        Open a watch on a resource type and stream messages into ``sink``.

        Args:
            descriptor: Resource type to watch
            namespace: Namespace to watch
            sink: Queue receiving ``WatchMessage`` values
            field_selector: Optional field selector, e.g. ``metadata.name=foo``
            timeout_seconds: Server-side watch timeout

        Returns:
            Started subscription
        """
        kwargs: Dict[str, Any] = {"allow_watch_bookmarks": True, "timeout_seconds": timeout_seconds}
        if field_selector:
            kwargs["field_selector"] = field_selector
        return StreamSubscription(
            descriptor,
            sink,
            self.custom_api.list_namespaced_custom_object,
            group=descriptor.group,
            version=descriptor.version,
            namespace=namespace,
            plural=descriptor.plural,
            **kwargs,
        ).start()

    def verify_access(self, namespace: str) -> None:
        """
        Check that both managed resource types can be listed.

        Raises:
            AccessDeniedError: On HTTP 403, naming the missing capability
        """
        for descriptor in (OCI_REPOSITORY, KUSTOMIZATION):
            try:
                self.list(descriptor, namespace, limit=1)
            except ApiError as e:
                if e.status_code == 403:
                    capability = f"list {descriptor.plural}.{descriptor.group}"
                    raise AccessDeniedError(
                        f"Insufficient permissions to list {descriptor.kind} resources in namespace {namespace}",
                        capability=capability,
                    ) from e
                raise
            logger.info(f"Can list {descriptor.kind} resources in {namespace}")
        logger.info("Successfully connected to cluster with required permissions")

    def discover_ingress_url(self, namespace: str, label_selector: Optional[str] = None) -> Optional[str]:
        """
        Derive the application URL from the first Ingress in a namespace.

        Returns:
            ``https://host`` when TLS is configured, ``http://host`` otherwise,
            or None when nothing usable is found
        """
        try:
            ingresses = self.networking_api.list_namespaced_ingress(
                namespace, label_selector=label_selector or ""
            ).items
        except ApiException as e:
            logger.warning(f"Failed to discover application URL: {e.reason}")
            return None

        if not ingresses:
            suffix = f" with selector: {label_selector}" if label_selector else ""
            logger.info(f"No ingress resources found in namespace {namespace}{suffix}")
            return None

        if len(ingresses) > 1 and not label_selector:
            logger.warning(
                f"Found {len(ingresses)} ingress resources in namespace {namespace}. "
                f"Consider using a label selector to choose a specific ingress."
            )

        ingress = ingresses[0]
        rules = ingress.spec.rules or []
        host = rules[0].host if rules else None
        if not host:
            logger.warning(f"Ingress '{ingress.metadata.name}' found but no host configured")
            return None

        url = f"https://{host}" if ingress.spec.tls else f"http://{host}"
        logger.info(f"Application URL discovered: {url}")
        return url
