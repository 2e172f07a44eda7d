"""
Test harness for relay contract tests.

Responsibilities:
- Build synthetic JPEG and PNG frames
- Provide an in-memory subscriber transport
- Start an in-process HTTP server on a free port
"""

import queue
import socket
import struct
import threading
import time
import zlib
from typing import List, Optional, Tuple

from relay.broadcast.dispatcher import BroadcastDispatcher
from relay.broadcast.subscriber import SubscriberTransport, SubscriberWriteFailed
from relay.http.server import HTTPServer


def jpeg_frame(body: bytes = b"\x00\x11\x22\x33") -> bytes:
    """SOI + body + EOI. The demuxer does not parse segments, so any body without FF D9 works."""
    return b"\xFF\xD8" + body + b"\xFF\xD9"


def png_chunk(chunk_type: bytes, data: bytes, crc: Optional[int] = None) -> bytes:
    if crc is None:
        crc = zlib.crc32(data, zlib.crc32(chunk_type)) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


def png_frame(idat: bytes = b"\x78\x9c\x63\x00\x00\x00\x01\x00\x01", bad_crc: bool = False) -> bytes:
    """Signature + IHDR + IDAT + IEND with valid CRCs (unless bad_crc)."""
    ihdr = struct.pack(">IIBBBBB", 1, 1, 8, 0, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + png_chunk(b"IHDR", ihdr)
        + png_chunk(b"IDAT", idat, crc=0xDEADBEEF if bad_crc else None)
        + png_chunk(b"IEND", b"")
    )


class RecordingTransport(SubscriberTransport):
    """In-memory transport that records every written frame."""

    def __init__(self, remote_address: str = "test:0", fail: bool = False, delay: float = 0.0):
        self.remote_address = remote_address
        self.fail = fail
        self.delay = delay
        self.frames: List[bytes] = []
        self.write_attempts = 0
        self.close_calls = 0
        self.written = threading.Event()
        self.release = threading.Event()
        self.release.set()

    def write(self, frame: bytes) -> None:
        self.write_attempts += 1
        if self.fail:
            raise SubscriberWriteFailed("broken pipe")
        # Tests clear release to stall the writer
        self.release.wait()
        if self.delay:
            time.sleep(self.delay)
        self.frames.append(frame)
        self.written.set()

    def close(self) -> None:
        self.close_calls += 1
        self.release.set()


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll predicate until true or timeout."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def start_server(static_root: str = ".", **kwargs):
    """
    Start dispatcher + HTTP server on 127.0.0.1 with an OS-assigned port.

    Returns:
        (server, dispatcher)
    """
    dispatcher = BroadcastDispatcher()
    dispatcher.start()
    server = HTTPServer(
        host="127.0.0.1",
        port=0,
        dispatcher=dispatcher,
        static_root=static_root,
        **kwargs,
    )
    server.start()
    assert server.wait_ready(5.0), "HTTP server did not start"
    return server, dispatcher


def stop_server(server: HTTPServer, dispatcher: BroadcastDispatcher):
    server.stop()
    dispatcher.stop()


def admit_subscribers(dispatcher: BroadcastDispatcher, count: int, timeout: float = 5.0) -> bool:
    """
    Push filler frames until `count` subscribers are live.

    Subscribers are only admitted during a dispatch cycle, so a connected
    client needs frames flowing before it joins the live set.
    """
    filler = jpeg_frame(b"filler")
    deadline = time.time() + timeout
    while len(dispatcher.live_subscriber_ids()) < count:
        if time.time() > deadline:
            return False
        try:
            dispatcher.submit(filler, timeout=0.1)
        except queue.Full:
            pass
        time.sleep(0.01)
    return True


def raw_http_request(port: int, request: bytes, timeout: float = 5.0) -> Tuple[int, bytes]:
    """Send a raw request and read until the server closes. Returns (status, body)."""
    with socket.create_connection(("127.0.0.1", port), timeout=timeout) as sock:
        sock.sendall(request)
        response = b""
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            response += chunk
    head, _, body = response.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1]) if head else 0
    return status, body
