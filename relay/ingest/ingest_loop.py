"""
Ingest loop thread.

This module provides IngestLoop, a dedicated thread that reads the encoder
pipe, splits it into frames with the configured demuxer and hands each frame
to the broadcast dispatcher through its single-slot intake queue.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import BinaryIO, Callable, Optional

from relay.ingest.demuxer import DemuxError, FrameDemuxer, StreamEnded
from relay.ingest.reader import ByteStreamReader

logger = logging.getLogger(__name__)

# 8MB scratch buffer, same as the encoder pipe reader
DEFAULT_MAX_FRAME_BYTES = 8 * 1024 * 1024

# How often a blocked hand-off re-checks for shutdown
SUBMIT_POLL_SEC = 0.1


class IngestLoop(threading.Thread):
    """
    Dedicated thread that turns the upstream byte stream into frames.

    Owns one reusable scratch buffer. Every decoded frame is copied out of it
    into a fresh bytes object before hand-off, so the dispatcher and the
    subscribers can hold on to a frame while the scratch buffer is reused.

    The hand-off blocks while the dispatcher still holds the previous frame.
    This is the only place backpressure reaches upstream: the encoder pipe
    simply fills up and ffmpeg paces itself.

    Any demux error ends the loop for good. A malformed or finished upstream
    is not retried here; restarting the encoder is the supervisor's job.

    Attributes:
        stream: Upstream binary stream (usually stdin)
        demuxer: FrameDemuxer for the configured format
        intake: Dispatcher intake queue (maxsize=1)
        shutdown_event: Event to signal thread shutdown
        error: DemuxError that ended the loop, if any
    """

    def __init__(
        self,
        stream: BinaryIO,
        demuxer: FrameDemuxer,
        intake: "queue.Queue[bytes]",
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        shutdown_event: Optional[threading.Event] = None,
        on_exit: Optional[Callable[[Optional[DemuxError]], None]] = None,
    ) -> None:
        """
        Initialize ingest loop.

        Args:
            stream: Readable binary stream carrying back-to-back frames
            demuxer: Demuxer for the stream's format
            intake: Queue the dispatcher reads frames from
            max_frame_bytes: Scratch buffer size (largest accepted frame)
            shutdown_event: Event to signal shutdown (created if omitted)
            on_exit: Called once from this thread when the loop ends, with the
                     error that ended it (None on shutdown)

        Raises:
            ValueError: If max_frame_bytes <= 0
        """
        super().__init__(name="IngestLoop", daemon=True)
        if max_frame_bytes <= 0:
            raise ValueError(f"max_frame_bytes must be > 0, got {max_frame_bytes}")

        self.stream = stream
        self.demuxer = demuxer
        self.intake = intake
        self.shutdown_event = shutdown_event or threading.Event()
        self.on_exit = on_exit
        self.error: Optional[DemuxError] = None

        self._reader = ByteStreamReader(stream)
        self._scratch = bytearray(max_frame_bytes)
        self._stats_lock = threading.Lock()
        self._frames_ingested = 0
        self._bytes_ingested = 0
        self._last_frame_bytes = 0

    def run(self) -> None:
        """Main ingest loop: decode, copy, hand off, until error or shutdown."""
        logger.info(f"Ingest loop started (format={self.demuxer.format.value})")

        try:
            while not self.shutdown_event.is_set():
                try:
                    n = self.demuxer.decode(self._reader, self._scratch)
                except StreamEnded as e:
                    self.error = e
                    logger.info(f"Upstream stream ended: {e}")
                    break
                except DemuxError as e:
                    self.error = e
                    logger.error(
                        f"Ingest stopped: {type(e).__name__}: {e} "
                        f"(after {self._frames_ingested} frames)"
                    )
                    break

                frame = bytes(self._scratch[:n])
                logger.debug(f"Frame decoded: {n} bytes, head={frame[:8].hex()}")

                with self._stats_lock:
                    self._frames_ingested += 1
                    self._bytes_ingested += n
                    self._last_frame_bytes = n

                if not self._submit(frame):
                    break
        finally:
            logger.info(f"Ingest loop stopped after {self._frames_ingested} frames")
            if self.on_exit is not None:
                self.on_exit(self.error)

    def _submit(self, frame: bytes) -> bool:
        """
        Hand a frame to the dispatcher, blocking while the slot is occupied.

        Returns:
            True if delivered, False if shutdown was requested while waiting
        """
        while not self.shutdown_event.is_set():
            try:
                self.intake.put(frame, timeout=SUBMIT_POLL_SEC)
                return True
            except queue.Full:
                continue
        return False

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop ingest loop.

        A read blocked on the upstream pipe only returns when the pipe
        delivers data or closes, so the thread may outlive the timeout.

        Args:
            timeout: Maximum time to wait for thread to stop
        """
        self.shutdown_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning("Ingest loop did not stop within timeout (blocked on upstream read)")

    def get_stats(self) -> dict:
        """
        Get ingest statistics.

        Returns:
            dict: frames_ingested, bytes_ingested, last_frame_bytes, running, error
        """
        with self._stats_lock:
            return {
                "frames_ingested": self._frames_ingested,
                "bytes_ingested": self._bytes_ingested,
                "last_frame_bytes": self._last_frame_bytes,
                "running": self.is_alive(),
                "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            }
