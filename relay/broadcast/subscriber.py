"""
Broadcast subscribers.

A Subscriber is one live outbound connection: a latest-frame mailbox filled
by the dispatcher and a dedicated writer thread that drains it onto the
connection's transport. A failed write ends the subscriber for good;
reconnecting clients come back as new subscribers.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from relay.broadcast.mailbox import LatestFrameMailbox

logger = logging.getLogger(__name__)


class SubscriberWriteFailed(Exception):
    """A frame could not be written to a subscriber's transport."""
    pass


class SubscriberTransport(ABC):
    """
    Message-oriented outbound connection used by a subscriber writer.

    write() sends one frame as a single message and may block.
    """

    remote_address: str = "unknown"

    @abstractmethod
    def write(self, frame: bytes) -> None:
        """
        Send one frame as one message.

        Raises:
            SubscriberWriteFailed: If the frame could not be sent
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection. Must be safe to call more than once."""
        pass


class SubscriberState(Enum):
    """Subscriber lifecycle. DEAD is terminal."""

    CONNECTED = "connected"
    REGISTERED = "registered"
    LIVE = "live"
    DEAD = "dead"


_ORDER = {
    SubscriberState.CONNECTED: 0,
    SubscriberState.REGISTERED: 1,
    SubscriberState.LIVE: 2,
    SubscriberState.DEAD: 3,
}


class Subscriber:
    """
    One connected recipient of broadcast frames.

    The dispatcher calls send() from its own thread; the writer thread started
    by start() is the only reader of the mailbox and the only caller of
    transport.write(). close() may be called from any thread; the transport
    is closed exactly once.

    Attributes:
        id: Unique identity (uuid4), used as the live-set key
        transport: Outbound connection
        mailbox: Latest-frame mailbox
    """

    def __init__(
        self,
        transport: SubscriberTransport,
        mailbox_capacity: int = 1,
        subscriber_id: Optional[str] = None,
    ) -> None:
        """
        Initialize subscriber in the CONNECTED state.

        Args:
            transport: Connection frames are written to
            mailbox_capacity: Frames held for a slow writer (must be >= 1)
            subscriber_id: Explicit id (random uuid4 if omitted)
        """
        self.id = subscriber_id or str(uuid.uuid4())
        self.transport = transport
        self.mailbox = LatestFrameMailbox(capacity=mailbox_capacity)

        self._lock = threading.Lock()
        self._state = SubscriberState.CONNECTED
        self._transport_closed = False
        self._close_reason: Optional[str] = None
        self._writer: Optional[threading.Thread] = None

        self._frames_sent = 0
        self._bytes_sent = 0

    def __repr__(self) -> str:
        return f"<Subscriber {self.id[:8]} {self.remote_address} {self.state.value}>"

    @property
    def remote_address(self) -> str:
        return str(getattr(self.transport, "remote_address", "unknown"))

    @property
    def state(self) -> SubscriberState:
        with self._lock:
            return self._state

    @property
    def is_dead(self) -> bool:
        return self.state is SubscriberState.DEAD

    @property
    def close_reason(self) -> Optional[str]:
        with self._lock:
            return self._close_reason

    def _advance(self, new_state: SubscriberState) -> bool:
        """Move forward in the lifecycle. Returns False if already at or past new_state."""
        with self._lock:
            if _ORDER[new_state] <= _ORDER[self._state]:
                return False
            self._state = new_state
            return True

    def mark_registered(self) -> bool:
        return self._advance(SubscriberState.REGISTERED)

    def mark_live(self) -> bool:
        return self._advance(SubscriberState.LIVE)

    def send(self, frame: bytes) -> bool:
        """
        Offer a frame without blocking (dispatcher side).

        Replaces any frame still waiting in the mailbox.

        Returns:
            True if deposited, False if the subscriber is dead
        """
        if self.is_dead:
            return False
        return self.mailbox.send(frame)

    def start(self) -> None:
        """Start the writer thread."""
        if self._writer is not None:
            return
        self._writer = threading.Thread(
            target=self._write_loop,
            name=f"SubscriberWriter-{self.id[:8]}",
            daemon=True,
        )
        self._writer.start()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the writer thread to finish."""
        if self._writer is not None:
            self._writer.join(timeout=timeout)

    def _write_loop(self) -> None:
        """Writer: drain the mailbox onto the transport until closed or a write fails."""
        while True:
            frame = self.mailbox.receive()
            if frame is None:
                # Closed
                break

            try:
                self.transport.write(frame)
            except (SubscriberWriteFailed, OSError) as e:
                logger.info(f"[ws][client] write failed {self.remote_address}: {e}")
                self.close(f"write failed: {e}")
                break
            except Exception as e:
                logger.error(f"[ws][client] writer error {self.remote_address}: {e}", exc_info=True)
                self.close(f"writer error: {e}")
                break

            with self._lock:
                self._frames_sent += 1
                self._bytes_sent += len(frame)

        logger.debug(f"Writer for subscriber {self.id} stopped")

    def close(self, reason: str = "closed") -> None:
        """
        Mark the subscriber dead, close its mailbox and its transport.

        Idempotent: only the first call closes the transport.

        Args:
            reason: Why the subscriber ended (for logging/stats)
        """
        with self._lock:
            self._state = SubscriberState.DEAD
            if self._close_reason is None:
                self._close_reason = reason
            close_transport = not self._transport_closed
            self._transport_closed = True

        self.mailbox.close()

        if close_transport:
            try:
                self.transport.close()
            except OSError as e:
                logger.debug(f"Error closing transport for {self.id}: {e}")

    def get_stats(self) -> dict:
        """
        Get subscriber statistics.

        Returns:
            dict: id, remote_address, state, frames_sent, bytes_sent, frames_dropped
        """
        with self._lock:
            stats = {
                "id": self.id,
                "remote_address": self.remote_address,
                "state": self._state.value,
                "frames_sent": self._frames_sent,
                "bytes_sent": self._bytes_sent,
            }
        stats["frames_dropped"] = self.mailbox.dropped_count
        return stats
