"""
Cancellable watch subscriptions.

A subscription streams change events for one resource type and pushes tagged
``WatchMessage`` values into a queue owned by the consumer. Cancellation is a
message kind of its own, so the consumer never has to inspect transport errors
to tell its own teardown apart from a dropped connection.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from kubernetes import watch

from ..errors import WatchDisconnected
from ..resources import ResourceDescriptor

logger = logging.getLogger(__name__)


class MessageKind(Enum):
    """Kinds of messages a subscription can deliver."""
    EVENT = "event"
    DISCONNECTED = "disconnected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WatchMessage:
    """One message from a subscription."""
    kind: MessageKind
    subscription: "Subscription"
    event_type: Optional[str] = None  # ADDED | MODIFIED | DELETED | BOOKMARK
    obj: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None


class Subscription:
    """Base subscription: owns the cancel flag and message emission."""

    def __init__(self, descriptor: ResourceDescriptor, sink: "queue.Queue[WatchMessage]"):
        self.descriptor = descriptor
        self._sink = sink
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Tear the subscription down. Safe to call more than once."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._on_cancel()

    def _on_cancel(self) -> None:
        pass

    def emit_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        self._sink.put(WatchMessage(MessageKind.EVENT, self, event_type=event_type, obj=obj))

    def emit_closed(self, error: Optional[BaseException] = None) -> None:
        """
        Report the end of the stream, as a cancellation or a disconnect.

        A disconnect without ``error`` means the server ended the stream
        cleanly, usually at the watch's own server-side timeout.
        """
        if self.cancelled:
            self._sink.put(WatchMessage(MessageKind.CANCELLED, self))
        else:
            self._sink.put(WatchMessage(MessageKind.DISCONNECTED, self, error=error))


class StreamSubscription(Subscription):
    """Runs a ``kubernetes.watch.Watch`` stream on a daemon thread."""

    def __init__(
        self,
        descriptor: ResourceDescriptor,
        sink: "queue.Queue[WatchMessage]",
        list_fn: Callable[..., Any],
        **stream_kwargs: Any,
    ):
        super().__init__(descriptor, sink)
        self._list_fn = list_fn
        self._stream_kwargs = stream_kwargs
        self._watch = watch.Watch()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "StreamSubscription":
        self._thread = threading.Thread(
            target=self._worker,
            name=f"watch-{self.descriptor.plural}",
            daemon=True,
        )
        self._thread.start()
        return self

    def _on_cancel(self) -> None:
        self._watch.stop()

    def _worker(self) -> None:
        try:
            for event in self._watch.stream(self._list_fn, **self._stream_kwargs):
                if self.cancelled:
                    break
                event_type = str(event.get("type", ""))
                if event_type == "ERROR":
                    status = event.get("raw_object") or event.get("object") or {}
                    self.emit_closed(WatchDisconnected(f"watch error event: {status}"))
                    return
                self.emit_event(event_type, event.get("object"))
        except Exception as e:
            if not self.cancelled:
                logger.debug(f"Watch on {self.descriptor.plural} failed: {e}")
            self.emit_closed(e)
            return
        self.emit_closed()
