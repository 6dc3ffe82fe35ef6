"""Live state synchronization: reconciler, subscription lifecycle, polling."""

from taskboard_sync.sync.buffer import StreamingTokenBuffer
from taskboard_sync.sync.poller import PollScheduler
from taskboard_sync.sync.reconciler import StateReconciler
from taskboard_sync.sync.session import DashboardSession
from taskboard_sync.sync.subscriptions import SubscriptionController

__all__ = [
    "DashboardSession",
    "PollScheduler",
    "StateReconciler",
    "StreamingTokenBuffer",
    "SubscriptionController",
]
