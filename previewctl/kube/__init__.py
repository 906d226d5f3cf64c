"""
Kubernetes access for previewctl.
"""

from .client import ClusterClient, load_kube_config
from .watch import MessageKind, StreamSubscription, Subscription, WatchMessage

__all__ = [
    "ClusterClient",
    "load_kube_config",
    "MessageKind",
    "StreamSubscription",
    "Subscription",
    "WatchMessage",
]
