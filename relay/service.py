# relay/service.py

import logging
import os
import stat
import sys
import threading
from typing import BinaryIO, Optional

from relay.broadcast.dispatcher import BroadcastDispatcher
from relay.config import RelayConfig
from relay.http.server import HTTPServer
from relay.ingest.demuxer import DemuxError, StreamEnded, get_demuxer
from relay.ingest.ingest_loop import IngestLoop

logger = logging.getLogger(__name__)


def describe_input(stream: BinaryIO) -> str:
    """Human-readable kind of the upstream stream (pipe, file, terminal...)."""
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except (AttributeError, OSError, ValueError):
        return type(stream).__name__
    if stat.S_ISFIFO(mode):
        return "pipe"
    if stat.S_ISREG(mode):
        return "file"
    if stat.S_ISCHR(mode):
        return "character device"
    if stat.S_ISSOCK(mode):
        return "socket"
    return "unknown"


class RelayService:
    """
    Wires ingest, broadcast and HTTP together.

    Thread layout:
    - IngestLoop: upstream stream -> dispatcher intake
    - BroadcastDispatcher: intake -> subscriber mailboxes
    - HTTPServer: accept loop plus one thread per connection
    - one writer thread per subscriber
    """

    def __init__(self, config: RelayConfig, source: Optional[BinaryIO] = None):
        """
        Initialize RelayService.

        Args:
            config: Validated relay configuration
            source: Upstream binary stream (default: stdin)

        Raises:
            ValueError: If the configured frame format has no demuxer
        """
        self.config = config
        self.source = source if source is not None else sys.stdin.buffer

        self.shutdown_event = threading.Event()
        self.ingest_finished = threading.Event()

        # Fail fast on format before anything starts
        self.demuxer = get_demuxer(config.frame_format, verify_crc=config.verify_png_crc)

        self.dispatcher = BroadcastDispatcher(
            registration_queue_size=config.registration_queue_size,
            shutdown_event=self.shutdown_event,
        )
        self.ingest = IngestLoop(
            stream=self.source,
            demuxer=self.demuxer,
            intake=self.dispatcher.intake,
            max_frame_bytes=config.max_frame_bytes,
            shutdown_event=self.shutdown_event,
            on_exit=self._on_ingest_exit,
        )
        self.http_server = HTTPServer(
            host=config.host,
            port=config.port,
            dispatcher=self.dispatcher,
            static_root=config.static_root,
            mailbox_capacity=config.mailbox_capacity,
            ws_compression=config.ws_compression,
            max_clients=config.max_clients,
            stats_provider=self.get_stats,
        )

        self.running = False

    def start(self):
        """Start dispatcher, HTTP server and ingest threads."""
        logger.info("=== ws-relay starting ===")
        logger.info(f"WebSocket compression: {'on' if self.config.ws_compression else 'off'}")
        logger.info(f"Frame format: {self.config.frame_format.value}, mailbox capacity: {self.config.mailbox_capacity}")
        logger.info(f"Input: {describe_input(self.source)}")

        # Dispatcher first so the ingest hand-off always has a consumer
        self.dispatcher.start()

        self.http_server.start()
        if not self.http_server.wait_ready():
            raise RuntimeError(f"HTTP server did not bind {self.config.listen_address}")
        logger.info(f"Listening on {self.http_server.host}:{self.http_server.port}")

        self.ingest.start()
        self.running = True

    def _on_ingest_exit(self, error: Optional[DemuxError]):
        self.ingest_finished.set()
        if error is None:
            return
        if isinstance(error, StreamEnded):
            logger.info("No more frames: upstream closed, still serving existing clients")
        else:
            logger.error("No more frames: upstream stream is malformed, still serving existing clients")

    def run_forever(self):
        """Block until stop() is called (or KeyboardInterrupt)."""
        try:
            while self.running and not self.shutdown_event.wait(1.0):
                pass
        finally:
            self.stop()

    def stop(self):
        """Stop all threads and close every subscriber."""
        if not self.running and self.shutdown_event.is_set():
            return
        logger.info("Shutting down ws-relay...")
        self.running = False
        self.shutdown_event.set()
        self.http_server.stop()
        self.dispatcher.stop()
        self.ingest.stop()
        logger.info("ws-relay stopped")

    def get_stats(self) -> dict:
        """Combined ingest and broadcast statistics (served at /relay/stats)."""
        return {
            "format": self.config.frame_format.value,
            "ingest": self.ingest.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }
