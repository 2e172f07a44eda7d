"""
Latest-frame mailbox between the dispatcher and one subscriber writer.

This module provides LatestFrameMailbox, a bounded overwrite queue. The
dispatcher deposits frames without ever waiting on the subscriber; when the
mailbox is full the oldest unsent frame is discarded, so a slow subscriber
only ever sees the most recent frames and never builds a backlog.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional


@dataclass
class MailboxStats:
    """
    Statistics for LatestFrameMailbox.

    Attributes:
        capacity: Maximum number of frames held
        count: Frames currently waiting
        delivered: Frames handed to the writer
        dropped: Frames discarded unsent because a newer one arrived
        closed: True once the mailbox is closed
    """
    capacity: int
    count: int
    delivered: int
    dropped: int
    closed: bool


class LatestFrameMailbox:
    """
    Bounded overwrite hand-off, one producer (dispatcher) and one consumer (writer).

    send() never blocks on the consumer: with capacity 1 it replaces whatever
    frame is still sitting unsent. Frames leave in the order they were
    deposited, so a writer never sees a frame older than one it already got.

    Once closed, send() reports the dead state instead of depositing and
    receive() returns None.
    """

    def __init__(self, capacity: int = 1) -> None:
        """
        Initialize mailbox.

        Args:
            capacity: Maximum frames held (must be >= 1)

        Raises:
            ValueError: If capacity < 1
        """
        if capacity < 1:
            raise ValueError(f"Mailbox capacity must be >= 1, got {capacity}")

        self._capacity = capacity
        self._slots: deque[bytes] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._closed = False
        self._delivered = 0
        self._dropped = 0

    def send(self, frame: bytes) -> bool:
        """
        Deposit a frame, discarding the oldest unsent one if full.

        Args:
            frame: Frame bytes (shared, never mutated)

        Returns:
            True if deposited, False if the mailbox is closed
        """
        with self._condition:
            if self._closed:
                return False
            if len(self._slots) >= self._capacity:
                # deque(maxlen) drops the oldest on append
                self._dropped += 1
            self._slots.append(frame)
            self._condition.notify()
            return True

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Take the oldest waiting frame, blocking until one arrives.

        Args:
            timeout: Seconds to wait; None waits until a frame arrives or the
                     mailbox is closed

        Returns:
            Frame bytes, or None if closed (or timeout expired)
        """
        with self._condition:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._slots and not self._closed:
                if deadline is None:
                    self._condition.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._condition.wait(timeout=remaining)

            if self._closed:
                return None

            self._delivered += 1
            return self._slots.popleft()

    def close(self) -> None:
        """Close the mailbox, drop pending frames and wake the writer. Idempotent."""
        with self._condition:
            self._closed = True
            self._slots.clear()
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped_count(self) -> int:
        """Frames discarded unsent."""
        with self._lock:
            return self._dropped

    @property
    def delivered_count(self) -> int:
        """Frames handed to the writer."""
        with self._lock:
            return self._delivered

    def stats(self) -> MailboxStats:
        with self._lock:
            return MailboxStats(
                capacity=self._capacity,
                count=len(self._slots),
                delivered=self._delivered,
                dropped=self._dropped,
                closed=self._closed,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
