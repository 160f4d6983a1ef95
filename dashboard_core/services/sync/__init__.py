"""
Live sync package.

Push channel transport plus the coordinator that merges push events and the
fallback poll into coalesced refresh signals.
"""

from .coordinator import SubscriptionHandle, SyncCoordinator, SyncState
from .push_channel import PushChannel, SocketIOPushChannel

__all__ = [
    "SyncCoordinator",
    "SyncState",
    "SubscriptionHandle",
    "PushChannel",
    "SocketIOPushChannel",
]
