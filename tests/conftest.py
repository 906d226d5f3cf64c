"""
Shared fakes for the cluster and GitHub collaborators.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from previewctl.errors import GitHubError, ResourceNotFoundError
from previewctl.kube.watch import Subscription


def make_resource(
    kind: str,
    name: str,
    ready: Optional[bool] = False,
    message: Optional[str] = None,
    version: Optional[str] = None,
    labels: Optional[Dict[str, str]] = None,
    age: Optional[timedelta] = None,
    namespace: str = "default",
) -> Dict[str, Any]:
    """Build a resource dict shaped like the API server's response."""
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace, "labels": dict(labels or {})}
    if age is not None:
        created = datetime.now(timezone.utc) - age
        metadata["creationTimestamp"] = created.strftime("%Y-%m-%dT%H:%M:%SZ")
    status: Dict[str, Any] = {}
    if ready is not None:
        condition = {"type": "Ready", "status": "True" if ready else "False"}
        if message is not None:
            condition["message"] = message
        status["conditions"] = [condition]
    if version is not None:
        status["history"] = [{"chartVersion": version}]
    return {"kind": kind, "metadata": metadata, "status": status}


class FakeSubscription(Subscription):
    """Subscription that counts cancels and reports them like a real stream."""

    def __init__(self, descriptor, sink):
        super().__init__(descriptor, sink)
        self.cancel_calls = 0

    def cancel(self) -> None:
        self.cancel_calls += 1
        super().cancel()

    def _on_cancel(self) -> None:
        self.emit_closed()


class FakeCluster:
    """In-memory stand-in for ClusterClient."""

    def __init__(self):
        self.objects: Dict[tuple, Dict[str, Any]] = {}
        self.list_results: Dict[str, List[List[Dict[str, Any]]]] = {}
        self.get_results: Dict[str, List[Any]] = {}
        self.delete_errors: Dict[str, Exception] = {}
        self.watch_errors: List[Exception] = []
        self.on_watch: Optional[Callable[[FakeSubscription, int], None]] = None
        self.subscriptions: List[FakeSubscription] = []
        self.applied: List[Dict[str, Any]] = []
        self.deleted: List[tuple] = []
        self.list_calls: List[tuple] = []
        self.get_calls: List[tuple] = []
        self.url: Optional[str] = None

    def add(self, descriptor, resource: Dict[str, Any]) -> None:
        self.objects[(descriptor.plural, resource["metadata"]["name"])] = resource

    def get(self, descriptor, namespace, name):
        self.get_calls.append((descriptor.plural, name))
        scripted = self.get_results.get(name)
        if scripted:
            result = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            if isinstance(result, Exception):
                raise result
            return result
        try:
            return self.objects[(descriptor.plural, name)]
        except KeyError:
            raise ResourceNotFoundError(f"{descriptor.kind} '{name}' not found") from None

    def list(self, descriptor, namespace, label_selector=None, field_selector=None, limit=None):
        self.list_calls.append((descriptor.plural, label_selector))
        scripted = self.list_results.get(descriptor.plural)
        if scripted:
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        wanted = dict(p.split("=", 1) for p in label_selector.split(",")) if label_selector else {}
        return [
            obj for (plural, _), obj in self.objects.items()
            if plural == descriptor.plural
            and all(obj["metadata"].get("labels", {}).get(k) == v for k, v in wanted.items())
        ]

    def apply(self, resource, descriptor, field_manager):
        self.applied.append({"resource": resource, "descriptor": descriptor, "field_manager": field_manager})
        self.add(descriptor, resource)
        return resource

    def delete(self, descriptor, namespace, name, propagation_policy="Background"):
        self.deleted.append((descriptor.kind, name, propagation_policy))
        if name in self.delete_errors:
            raise self.delete_errors[name]
        if self.objects.pop((descriptor.plural, name), None) is None:
            raise ResourceNotFoundError(f"{descriptor.kind} '{name}' not found")

    def watch(self, descriptor, namespace, sink, field_selector=None, timeout_seconds=300):
        if self.watch_errors:
            raise self.watch_errors.pop(0)
        subscription = FakeSubscription(descriptor, sink)
        attempt = len(self.subscriptions)
        self.subscriptions.append(subscription)
        if self.on_watch is not None:
            self.on_watch(subscription, attempt)
        return subscription

    def discover_ingress_url(self, namespace, label_selector=None):
        return self.url


class FakeGitHub:
    """In-memory issue comments, pull requests and deployments."""

    def __init__(self):
        self.comments: Dict[int, List[Dict[str, Any]]] = {}
        self.pulls: Dict[int, Dict[str, Any]] = {}
        self.deployments: List[Dict[str, Any]] = []
        self.statuses: List[tuple] = []
        self.minimized: List[str] = []
        self.minimize_error: Optional[Exception] = None
        self._next_id = 1

    def get_pull_request(self, number):
        if number not in self.pulls:
            raise GitHubError("Not Found", status_code=404)
        return self.pulls[number]

    def list_issue_comments(self, number):
        return list(self.comments.get(number, []))

    def create_comment(self, number, body):
        comment = {"id": self._next_id, "node_id": f"IC_{self._next_id}", "body": body}
        self._next_id += 1
        self.comments.setdefault(number, []).append(comment)
        return comment

    def update_comment(self, comment_id, body):
        for comments in self.comments.values():
            for comment in comments:
                if comment["id"] == comment_id:
                    comment["body"] = body
                    return comment
        raise GitHubError("Not Found", status_code=404)

    def minimize_comment(self, node_id):
        if self.minimize_error is not None:
            raise self.minimize_error
        self.minimized.append(node_id)

    def list_deployments(self, environment, per_page=1):
        return [d for d in self.deployments if d["environment"] == environment][:per_page]

    def create_deployment_status(self, deployment_id, payload):
        self.statuses.append((deployment_id, payload))
        return {"id": len(self.statuses)}


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def github():
    return FakeGitHub()
