"""
Readiness watching for Flux resources.

``ReadinessWatcher`` answers "is it ready now?" with a single read and only
falls back to a watch when the answer is no. Watches are restarted with capped
exponential backoff when the connection drops, and a hard deadline bounds the
whole wait no matter what the connection does.
"""

import logging
import queue
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from .errors import PreviewError, ReadinessTimeoutError
from .kube.watch import MessageKind, Subscription, WatchMessage
from .readiness import ReadinessResult, is_fully_ready, get_deployed_version, to_result, version_gated
from .resources import HELM_RELEASE, KUSTOMIZATION, ResourceDescriptor

logger = logging.getLogger(__name__)

WATCHED_KINDS = (HELM_RELEASE, KUSTOMIZATION)
READINESS_EVENTS = ("ADDED", "MODIFIED")

OpenWatch = Callable[[ResourceDescriptor], Subscription]


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff for re-opening a dropped watch."""
    base_delay: float = 1.0
    max_delay: float = 10.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def should_retry(self, attempt: int, elapsed: float, timeout: float) -> bool:
        """Retry while attempts remain and the overall timeout has not passed."""
        return attempt < self.max_attempts and elapsed < timeout


@dataclass
class WatchState:
    """
    Bookkeeping for one wait invocation.

    Holds the retry counter, the deadline, the open subscriptions and the
    scheduled re-opens. Transitions are plain method calls so the retry and
    timeout behaviour can be exercised without threads or queues.
    """
    policy: RetryPolicy
    started_at: float
    deadline: float
    attempt: int = 0
    subscriptions: List[Subscription] = field(default_factory=list)
    scheduled: List[Tuple[float, ResourceDescriptor]] = field(default_factory=list)
    last_error: Optional[BaseException] = None
    exhausted: bool = False

    @property
    def timeout(self) -> float:
        return self.deadline - self.started_at

    def start(self, subscription: Subscription) -> None:
        self.subscriptions.append(subscription)

    def owns(self, subscription: Subscription) -> bool:
        return any(s is subscription for s in self.subscriptions)

    def on_event(self, message: WatchMessage) -> bool:
        """True when the message is a change event from a live subscription."""
        return message.kind is MessageKind.EVENT and self.owns(message.subscription)

    def on_disconnect(
        self,
        descriptor: ResourceDescriptor,
        error: Optional[BaseException],
        now: float,
        subscription: Optional[Subscription] = None,
    ) -> Optional[float]:
        """
        Record a dropped or failed watch and schedule its replacement.

        Args:
            descriptor: Resource type of the lost watch
            error: Transport error that ended it
            now: Current clock reading
            subscription: The dead subscription, if one was opened

        Returns:
            Delay before the re-open, or None when no retry is left
        """
        if subscription is not None:
            self.subscriptions = [s for s in self.subscriptions if s is not subscription]
        self.last_error = error
        if not self.policy.should_retry(self.attempt, now - self.started_at, self.timeout):
            self.exhausted = True
            return None
        self.attempt += 1
        delay = self.policy.delay(self.attempt)
        self.scheduled.append((now + delay, descriptor))
        return delay

    def on_stream_end(self, descriptor: ResourceDescriptor, now: float, subscription: Subscription) -> Optional[float]:
        """
        Schedule a re-open for a stream the server ended cleanly.

        The server closes watches at their own timeout, so this does not use up
        a retry attempt. Returns None once the deadline has passed.
        """
        self.subscriptions = [s for s in self.subscriptions if s is not subscription]
        if now >= self.deadline:
            return None
        delay = self.policy.base_delay
        self.scheduled.append((now + delay, descriptor))
        return delay

    def due(self, now: float) -> List[ResourceDescriptor]:
        """Pop the re-opens whose backoff has elapsed."""
        ready = [d for at, d in self.scheduled if at <= now]
        self.scheduled = [(at, d) for at, d in self.scheduled if at > now]
        return ready

    def next_wakeup(self, now: float) -> float:
        """Seconds until the deadline or the next scheduled re-open."""
        wake = min([self.deadline] + [at for at, _ in self.scheduled])
        return max(wake - now, 0.0)

    def on_timeout(self) -> None:
        """Deadline reached: tear everything down."""
        self.close()

    def close(self) -> None:
        """Cancel every open subscription and drop pending re-opens."""
        subscriptions, self.subscriptions = self.subscriptions, []
        self.scheduled = []
        for subscription in subscriptions:
            subscription.cancel()


def _resource_key(descriptor: ResourceDescriptor, resource: Dict) -> str:
    return f"{descriptor.kind}/{resource['metadata']['name']}"


class ReadinessWatcher:
    """Blocks until Flux resources report Ready, a deadline passes, or a fatal error occurs."""

    def __init__(
        self,
        cluster,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    def _new_state(self, started_at: float, timeout: float) -> WatchState:
        return WatchState(policy=self.retry_policy, started_at=started_at, deadline=started_at + timeout)

    def _open(self, state: WatchState, descriptor: ResourceDescriptor, open_watch: OpenWatch) -> None:
        try:
            state.start(open_watch(descriptor))
        except PreviewError as e:
            delay = state.on_disconnect(descriptor, e, self._clock())
            if delay is not None:
                logger.info(
                    f"Failed to start watch ({e}), retrying in {delay:g}s "
                    f"(attempt {state.attempt}/{self.retry_policy.max_attempts})..."
                )

    def _events(
        self,
        state: WatchState,
        sink: "queue.Queue[WatchMessage]",
        open_watch: OpenWatch,
    ) -> Iterator[WatchMessage]:
        """
        Yield change events until the deadline passes or retries run out.

        Cancellations and messages from replaced subscriptions are dropped
        here; disconnects are turned into scheduled re-opens. Only transport
        errors count against the retry budget.
        """
        while True:
            for descriptor in state.due(self._clock()):
                self._open(state, descriptor, open_watch)
            if state.exhausted:
                logger.warning(f"Giving up on watch after {state.attempt} retries: {state.last_error}")
                return

            now = self._clock()
            if now >= state.deadline:
                state.on_timeout()
                return
            try:
                message = sink.get(timeout=state.next_wakeup(now))
            except queue.Empty:
                continue

            if not state.owns(message.subscription) or message.kind is MessageKind.CANCELLED:
                continue
            if message.kind is MessageKind.DISCONNECTED and message.error is None:
                delay = state.on_stream_end(message.subscription.descriptor, self._clock(), message.subscription)
                if delay is not None:
                    logger.debug(f"Watch stream ended by server, reopening in {delay:g}s")
                continue
            if message.kind is MessageKind.DISCONNECTED:
                delay = state.on_disconnect(
                    message.subscription.descriptor, message.error, self._clock(), message.subscription
                )
                if delay is not None:
                    logger.info(
                        f"Watch connection closed ({message.error}), retrying in {delay:g}s "
                        f"(attempt {state.attempt}/{self.retry_policy.max_attempts})..."
                    )
                continue
            if state.on_event(message):
                yield message

    def wait_until_ready(
        self,
        namespace: str,
        descriptor: ResourceDescriptor,
        name: str,
        timeout: float,
        target_version: Optional[str] = None,
    ) -> ReadinessResult:
        """
        Wait for one resource to become ready.

        Args:
            namespace: Namespace of the resource
            descriptor: Resource type
            name: Resource name
            timeout: Overall deadline in seconds
            target_version: Chart version a HelmRelease must report

        Returns:
            ReadinessResult of the ready resource

        Raises:
            ResourceNotFoundError: If the resource does not exist
            ReadinessTimeoutError: If it is not ready before the deadline
        """
        started = self._clock()
        gated = version_gated(descriptor, target_version)
        suffix = f" with chart version {target_version}" if gated else ""

        resource = self.cluster.get(descriptor, namespace, name)
        if is_fully_ready(resource, descriptor, target_version):
            logger.info(f"{descriptor.kind} '{name}' is already ready{suffix}")
            return to_result(resource)

        if gated:
            current = get_deployed_version(resource) or "unknown"
            logger.info(
                f"{descriptor.kind} '{name}' is not ready yet "
                f"(current version: {current}, expected: {target_version}), waiting..."
            )
        else:
            logger.info(f"{descriptor.kind} '{name}' is not ready yet, waiting for Ready condition...")

        state = self._new_state(started, timeout)
        sink: "queue.Queue[WatchMessage]" = queue.Queue()

        def open_watch(d: ResourceDescriptor) -> Subscription:
            return self.cluster.watch(d, namespace, sink, field_selector=f"metadata.name={name}")

        try:
            self._open(state, descriptor, open_watch)
            for message in self._events(state, sink, open_watch):
                if message.event_type not in READINESS_EVENTS:
                    continue
                obj = message.obj or {}
                if obj.get("metadata", {}).get("name") != name:
                    continue
                # Re-check on every event, an early Ready may still carry the old version
                if is_fully_ready(obj, descriptor, target_version):
                    logger.info(f"{descriptor.kind} '{name}' in namespace '{namespace}' is ready{suffix}")
                    return to_result(obj)
        finally:
            state.close()

        if gated:
            error_message = (
                f"{descriptor.kind} '{name}' did not become ready with chart version "
                f"{target_version} in namespace '{namespace}' within timeout"
            )
        else:
            error_message = f"{descriptor.kind} '{name}' is not ready in namespace '{namespace}' within timeout"
        raise ReadinessTimeoutError(error_message) from state.last_error

    def _list_all(self, namespace: str) -> Dict[ResourceDescriptor, List[Dict]]:
        return {d: self.cluster.list(d, namespace) for d in WATCHED_KINDS}

    @staticmethod
    def _results(resources: Dict[ResourceDescriptor, List[Dict]]) -> List[ReadinessResult]:
        return [to_result(r) for items in resources.values() for r in items]

    def _pending_snapshot(self, namespace: str, target_version: Optional[str]) -> List[ReadinessResult]:
        try:
            resources = self._list_all(namespace)
        except PreviewError as e:
            logger.warning(f"Failed to fetch resource status after timeout: {e}")
            return []
        return [
            to_result(r)
            for d, items in resources.items()
            for r in items
            if not is_fully_ready(r, d, target_version)
        ]

    def wait_all_ready(
        self,
        namespace: str,
        timeout: float,
        target_version: Optional[str] = None,
    ) -> List[ReadinessResult]:
        """
        Wait for every HelmRelease and Kustomization in a namespace.

        Args:
            namespace: Namespace to verify
            timeout: Overall deadline in seconds
            target_version: Chart version HelmReleases must report

        Returns:
            Fresh readiness results for all resources, HelmReleases first

        Raises:
            ReadinessTimeoutError: With ``pending`` set to the resources still
                not ready when the deadline passed
        """
        started = self._clock()
        resources = self._list_all(namespace)
        counts = {d.kind: len(items) for d, items in resources.items()}
        if not sum(counts.values()):
            logger.warning(f"No HelmReleases or Kustomizations found in namespace '{namespace}'")
            return []

        logger.info(
            f"Found {counts[HELM_RELEASE.kind]} HelmRelease(s) and "
            f"{counts[KUSTOMIZATION.kind]} Kustomization(s) in namespace '{namespace}'"
        )

        known: Set[str] = set()
        ready: Set[str] = set()
        for descriptor, items in resources.items():
            for item in items:
                key = _resource_key(descriptor, item)
                known.add(key)
                if is_fully_ready(item, descriptor, target_version):
                    ready.add(key)

        if ready >= known:
            logger.info("All resources are already ready")
            return self._results(resources)

        logger.info(f"{len(known - ready)} resource(s) not ready yet, watching for changes...")

        state = self._new_state(started, timeout)
        sink: "queue.Queue[WatchMessage]" = queue.Queue()

        def open_watch(d: ResourceDescriptor) -> Subscription:
            return self.cluster.watch(d, namespace, sink)

        try:
            for descriptor, items in resources.items():
                if items:
                    self._open(state, descriptor, open_watch)

            for message in self._events(state, sink, open_watch):
                descriptor = message.subscription.descriptor
                obj = message.obj or {}
                if "name" not in obj.get("metadata", {}):
                    continue
                key = _resource_key(descriptor, obj)
                if message.event_type == "DELETED":
                    known.discard(key)
                    ready.discard(key)
                elif message.event_type in READINESS_EVENTS:
                    known.add(key)
                    if is_fully_ready(obj, descriptor, target_version):
                        ready.add(key)
                    else:
                        ready.discard(key)
                else:
                    continue

                if ready >= known:
                    state.close()
                    logger.info("All resources are ready")
                    return self._results(self._list_all(namespace))
        finally:
            state.close()

        pending = self._pending_snapshot(namespace, target_version)
        lines = [f"{r.type}/{r.name}: {r.message}" for r in pending]
        if lines:
            logger.error("Resources not ready:")
            for line in lines:
                logger.error(f"  {line}")
        summary = f"{len(pending)} resource(s) not ready in namespace '{namespace}' within timeout"
        raise ReadinessTimeoutError(
            "\n".join([summary] + [f"  - {line}" for line in lines]),
            pending=pending,
        ) from state.last_error
