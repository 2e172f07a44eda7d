"""
Broadcast dispatcher.

This module provides BroadcastDispatcher, the single thread that owns the
live subscriber set. It takes frames from the ingest loop one at a time,
offers each frame to every live subscriber, drops subscribers that report
dead, and admits newly registered subscribers between frames.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Dict, Optional, Tuple

from relay.broadcast.subscriber import Subscriber

logger = logging.getLogger(__name__)

# Pending subscribers waiting for admission
DEFAULT_REGISTRATION_QUEUE_SIZE = 16

# How often an idle dispatcher re-checks for shutdown
INTAKE_POLL_SEC = 0.25


class BroadcastDispatcher(threading.Thread):
    """
    Fan-out of frames to subscribers, latest frame wins.

    Each cycle:
    1. Wait for a frame on the intake queue (capacity 1)
    2. Offer it to every live subscriber (non-blocking mailbox hand-off),
       then remove the ones that reported dead
    3. Drain the registration queue and admit every pending subscriber

    A subscriber admitted in step 3 receives frames from the next cycle on.

    The live set is only ever touched by the thread running process_frame();
    other threads see it through the snapshot published at the end of each
    cycle (live_subscriber_ids(), get_stats()). Other threads reach the
    dispatcher only through the intake and registration queues.

    Attributes:
        intake: Single-slot frame queue fed by the ingest loop
        registrations: Queue of subscribers awaiting admission
        shutdown_event: Event to signal thread shutdown
    """

    def __init__(
        self,
        registration_queue_size: int = DEFAULT_REGISTRATION_QUEUE_SIZE,
        shutdown_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize dispatcher.

        Args:
            registration_queue_size: Capacity of the registration queue (must be >= 1)
            shutdown_event: Event to signal shutdown (created if omitted)

        Raises:
            ValueError: If registration_queue_size < 1
        """
        super().__init__(name="BroadcastDispatcher", daemon=True)
        if registration_queue_size < 1:
            raise ValueError(f"registration_queue_size must be >= 1, got {registration_queue_size}")

        self.intake: "queue.Queue[bytes]" = queue.Queue(maxsize=1)
        self.registrations: "queue.Queue[Subscriber]" = queue.Queue(maxsize=registration_queue_size)
        self.shutdown_event = shutdown_event or threading.Event()

        # Owned by the dispatching thread only
        self._live: Dict[str, Subscriber] = {}

        # Published after each cycle (reference swap, read from any thread)
        self._snapshot: Tuple[str, ...] = ()
        self._frames_dispatched = 0
        self._subscribers_admitted = 0
        self._subscribers_removed = 0

    def submit(self, frame: bytes, timeout: Optional[float] = None) -> None:
        """
        Hand a frame to the dispatcher (ingest side), blocking while the slot is full.

        Raises:
            queue.Full: If timeout expires first
        """
        self.intake.put(frame, timeout=timeout)

    def register(self, subscriber: Subscriber, timeout: Optional[float] = None) -> None:
        """
        Queue a subscriber for admission into the live set.

        Safe to call from any thread. Blocks while the registration queue is full.

        Args:
            subscriber: Newly connected subscriber
            timeout: Seconds to wait for room (None waits indefinitely)

        Raises:
            queue.Full: If timeout expires first
        """
        subscriber.mark_registered()
        self.registrations.put(subscriber, timeout=timeout)
        logger.debug(f"Subscriber {subscriber.id} queued for admission")

    def run(self) -> None:
        """Main dispatch loop."""
        logger.info("Broadcast dispatcher started")
        try:
            while not self.shutdown_event.is_set():
                try:
                    frame = self.intake.get(timeout=INTAKE_POLL_SEC)
                except queue.Empty:
                    continue
                self.process_frame(frame)
        finally:
            self._close_all()
            logger.info("Broadcast dispatcher stopped")

    def process_frame(self, frame: bytes) -> None:
        """
        Run one dispatch cycle for a frame.

        Must only be called from the thread that owns the live set (run(), or a
        test driving the dispatcher without starting it).

        Args:
            frame: Immutable frame bytes shared by all subscribers
        """
        dead = [sub for sub in self._live.values() if not sub.send(frame)]
        for sub in dead:
            self._remove(sub)

        self._admit_pending()

        self._frames_dispatched += 1
        self._snapshot = tuple(self._live)

    def _remove(self, subscriber: Subscriber) -> None:
        if self._live.pop(subscriber.id, None) is not None:
            self._subscribers_removed += 1
            logger.info(
                f"[ws][client] removed {subscriber.remote_address} "
                f"({subscriber.close_reason}), {len(self._live)} live"
            )

    def _admit_pending(self) -> None:
        """Move every queued subscriber into the live set without blocking."""
        while True:
            try:
                subscriber = self.registrations.get_nowait()
            except queue.Empty:
                return

            if subscriber.is_dead:
                logger.debug(f"Subscriber {subscriber.id} closed before admission")
                continue
            if subscriber.id in self._live:
                continue

            self._live[subscriber.id] = subscriber
            subscriber.mark_live()
            self._subscribers_admitted += 1
            logger.info(f"[ws][client] added {subscriber.remote_address}, {len(self._live)} live")

    def _close_all(self) -> None:
        """Close every live and pending subscriber (shutdown)."""
        for sub in list(self._live.values()):
            sub.close("shutdown")
        self._live.clear()
        while True:
            try:
                self.registrations.get_nowait().close("shutdown")
            except queue.Empty:
                break
        self._snapshot = ()

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop dispatcher and close all subscribers.

        Args:
            timeout: Maximum time to wait for thread to stop
        """
        self.shutdown_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning("Dispatcher did not stop within timeout")
        else:
            self._close_all()

    def live_subscriber_ids(self) -> Tuple[str, ...]:
        """Ids in the live set as of the end of the last cycle."""
        return self._snapshot

    def get_stats(self) -> dict:
        """
        Get dispatcher statistics (snapshot as of the last cycle).

        Returns:
            dict: live_subscribers, pending_registrations, frames_dispatched,
                  subscribers_admitted, subscribers_removed
        """
        return {
            "live_subscribers": len(self._snapshot),
            "pending_registrations": self.registrations.qsize(),
            "frames_dispatched": self._frames_dispatched,
            "subscribers_admitted": self._subscribers_admitted,
            "subscribers_removed": self._subscribers_removed,
        }
