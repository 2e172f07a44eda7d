"""
Broadcast subsystem.

This package fans frames out to connected subscribers: the dispatcher owns
the live set, each subscriber owns a latest-frame mailbox and a writer thread.
"""

from relay.broadcast.dispatcher import BroadcastDispatcher
from relay.broadcast.mailbox import LatestFrameMailbox, MailboxStats
from relay.broadcast.subscriber import (
    Subscriber,
    SubscriberState,
    SubscriberTransport,
    SubscriberWriteFailed,
)

__all__ = [
    "BroadcastDispatcher",
    "LatestFrameMailbox",
    "MailboxStats",
    "Subscriber",
    "SubscriberState",
    "SubscriberTransport",
    "SubscriberWriteFailed",
]
