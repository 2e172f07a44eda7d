"""
Contract tests for LatestFrameMailbox.

Covers the overwrite law (a newer frame replaces an unsent one), ordering
under a concurrent producer/consumer, capacity > 1, and close semantics.
"""

import threading
import time

import pytest

from relay.broadcast.mailbox import LatestFrameMailbox, MailboxStats


class TestMailboxOverwrite:
    """send() replaces whatever is still waiting."""

    def test_writer_observes_only_latest(self):
        """send(A) then send(B) before the writer drains: the writer sees exactly B."""
        mailbox = LatestFrameMailbox()

        mailbox.send(b"A")
        mailbox.send(b"B")

        assert mailbox.receive(timeout=0.1) == b"B"
        assert mailbox.receive(timeout=0.05) is None

    def test_three_rapid_frames_leave_only_last(self):
        mailbox = LatestFrameMailbox(capacity=1)

        for frame in (b"F1", b"F2", b"F3"):
            assert mailbox.send(frame) is True

        assert len(mailbox) == 1
        assert mailbox.receive(timeout=0.1) == b"F3"
        assert mailbox.dropped_count == 2
        assert mailbox.delivered_count == 1

    def test_capacity_keeps_most_recent_in_order(self):
        """With capacity N the N newest frames are kept, oldest first."""
        mailbox = LatestFrameMailbox(capacity=2)

        for frame in (b"F1", b"F2", b"F3"):
            mailbox.send(frame)

        assert mailbox.receive(timeout=0.1) == b"F2"
        assert mailbox.receive(timeout=0.1) == b"F3"
        assert mailbox.dropped_count == 1

    def test_send_never_blocks(self):
        """The producer never waits on the consumer, however many frames pile up."""
        mailbox = LatestFrameMailbox()

        start = time.monotonic()
        for i in range(10000):
            mailbox.send(bytes([i % 256]))
        elapsed = time.monotonic() - start

        assert elapsed < 2.0
        assert len(mailbox) == 1

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            LatestFrameMailbox(capacity=0)


class TestMailboxOrdering:
    """A consumer never sees a frame older than one it already received."""

    @pytest.mark.timeout(10)
    def test_concurrent_receive_is_monotonic(self):
        mailbox = LatestFrameMailbox()
        received = []

        def consumer():
            while True:
                frame = mailbox.receive()
                if frame is None:
                    return
                received.append(int.from_bytes(frame, "big"))

        t = threading.Thread(target=consumer)
        t.start()
        for i in range(5000):
            mailbox.send(i.to_bytes(4, "big"))
        time.sleep(0.05)
        mailbox.close()
        t.join(timeout=2.0)

        assert not t.is_alive()
        assert received, "consumer should receive some frames"
        assert all(a < b for a, b in zip(received, received[1:]))


class TestMailboxClose:
    """Closing ends the hand-off for both sides."""

    def test_send_after_close_reports_dead(self):
        mailbox = LatestFrameMailbox()
        mailbox.close()

        assert mailbox.send(b"frame") is False
        assert mailbox.closed

    def test_close_discards_pending_frame(self):
        mailbox = LatestFrameMailbox()
        mailbox.send(b"frame")

        mailbox.close()

        assert mailbox.receive(timeout=0.05) is None
        assert len(mailbox) == 0

    @pytest.mark.timeout(5)
    def test_close_wakes_blocked_receiver(self):
        mailbox = LatestFrameMailbox()
        result = []
        t = threading.Thread(target=lambda: result.append(mailbox.receive()))
        t.start()
        time.sleep(0.05)

        mailbox.close()
        t.join(timeout=1.0)

        assert not t.is_alive()
        assert result == [None]

    def test_close_is_idempotent(self):
        mailbox = LatestFrameMailbox()
        mailbox.close()
        mailbox.close()

        assert mailbox.stats() == MailboxStats(capacity=1, count=0, delivered=0, dropped=0, closed=True)
