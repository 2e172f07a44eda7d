"""
HTTP server for the relay.

Serves:
- /ws           WebSocket endpoint; every connection becomes a broadcast subscriber
- /relay/stats  JSON snapshot of ingest and broadcast statistics
- anything else static files from the configured root (viewer page)

One thread per connection, raw sockets, no framework.
"""

import json
import logging
import mimetypes
import queue
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit

from relay.broadcast.dispatcher import BroadcastDispatcher
from relay.broadcast.subscriber import Subscriber, SubscriberWriteFailed
from relay.http.websocket import (
    CLOSE_MESSAGE_TOO_BIG,
    CLOSE_NORMAL,
    CLOSE_PROTOCOL_ERROR,
    OPCODE_CLOSE,
    OPCODE_PING,
    PerMessageDeflate,
    WebSocketError,
    WebSocketTransport,
    create_upgrade_response,
    decode_websocket_frame,
    frame_length_hint,
    parse_upgrade_request,
)

logger = logging.getLogger(__name__)

WEBSOCKET_PATH = "/ws"
STATS_PATH = "/relay/stats"

# Request head limits
MAX_REQUEST_HEAD_BYTES = 65536
REQUEST_HEAD_TIMEOUT_SEC = 5.0

# Clients only send control frames; anything bigger is refused
MAX_CLIENT_FRAME_BYTES = 65536

# How long an upgraded connection may wait for a registration slot
REGISTRATION_TIMEOUT_SEC = 5.0

# Close codes that only describe local conditions and must not go on the wire
NO_WIRE_CLOSE_CODES = frozenset({1005, 1006, 1015})

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class HTTPServer:
    """
    HTTP/WebSocket front end of the relay.

    Owns the listening socket and the connection threads. Broadcast state
    lives in the dispatcher: this server only creates subscribers, registers
    them, and closes them when their connection ends.
    """

    def __init__(
        self,
        host: str,
        port: int,
        dispatcher: BroadcastDispatcher,
        static_root: str = ".",
        mailbox_capacity: int = 1,
        ws_compression: bool = False,
        max_clients: int = 100,
        stats_provider: Optional[Callable[[], dict]] = None,
    ):
        """
        Initialize HTTPServer.

        Args:
            host: Host address to bind to
            port: Port to listen on (0 picks a free port, see .port after start)
            dispatcher: Dispatcher new subscribers are registered with
            static_root: Directory served for non-WebSocket GET requests
            mailbox_capacity: Mailbox capacity for new subscribers
            ws_compression: Offer permessage-deflate to clients that ask for it
            max_clients: Maximum concurrent WebSocket clients
            stats_provider: Returns the dict served at /relay/stats
        """
        self.host = host
        self.port = port
        self.dispatcher = dispatcher
        self.static_root = Path(static_root).resolve()
        self.mailbox_capacity = mailbox_capacity
        self.ws_compression = ws_compression
        self.max_clients = max_clients
        self.stats_provider = stats_provider

        self._ws_clients: Dict[str, Subscriber] = {}
        self._ws_clients_lock = threading.Lock()

        self.running = False
        self._server_sock: Optional[socket.socket] = None
        self._ready = threading.Event()

    def start(self):
        """Start the HTTP server in a background thread."""
        self.running = True
        threading.Thread(target=self._run, name="HTTPServer", daemon=True).start()

    def serve_forever(self):
        """Run the HTTP server in the current thread (blocking)."""
        self.running = True
        self._run()

    def wait_ready(self, timeout: float = 5.0) -> bool:
        """Wait until the listening socket is bound."""
        return self._ready.wait(timeout)

    def _run(self):
        """Main server loop - accepts connections."""
        self._server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_sock.bind((self.host, self.port))
        self._server_sock.listen(50)
        self.port = self._server_sock.getsockname()[1]
        self._ready.set()
        logger.info(f"HTTP server listening on {self.host}:{self.port}")

        while self.running:
            try:
                client, addr = self._server_sock.accept()
            except OSError:
                # Socket closed during shutdown
                break
            threading.Thread(
                target=self._handle_client,
                args=(client, addr),
                name=f"HTTPConn-{addr[0]}:{addr[1]}",
                daemon=True,
            ).start()

    def stop(self):
        """Stop accepting connections and close every WebSocket client."""
        self.running = False
        if self._server_sock is not None:
            # shutdown() wakes a thread blocked in accept(); close() alone does not on Linux
            try:
                self._server_sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self._server_sock.close()
            except OSError:
                pass
        with self._ws_clients_lock:
            clients = list(self._ws_clients.values())
        for subscriber in clients:
            subscriber.close("server shutdown")
        logger.info("HTTP server stopped")

    def _read_request_head(self, client: socket.socket) -> Optional[bytes]:
        """Read until the end of the request headers. Returns None if the client went away."""
        client.settimeout(REQUEST_HEAD_TIMEOUT_SEC)
        data = b""
        while b"\r\n\r\n" not in data:
            if len(data) > MAX_REQUEST_HEAD_BYTES:
                self._send_response(client, 413, "text/plain", b"Request header too large\n")
                return None
            try:
                chunk = client.recv(4096)
            except socket.timeout:
                return None
            if not chunk:
                return None
            data += chunk
        return data

    def _handle_client(self, client: socket.socket, addr: Tuple[str, int]):
        """Handle a single client connection."""
        remote = f"{addr[0]}:{addr[1]}"
        try:
            request = self._read_request_head(client)
            if not request:
                client.close()
                return

            # Anything after the blank line already belongs to the upgraded stream
            head, _, leftover = request.partition(b"\r\n\r\n")
            request_str = (head + b"\r\n\r\n").decode('utf-8', errors='ignore')
            parts = request_str.split('\r\n', 1)[0].split()
            if len(parts) < 2:
                self._send_response(client, 400, "text/plain", b"Bad request\n")
                return

            method = parts[0]
            path = urlsplit(parts[1]).path

            if path == WEBSOCKET_PATH:
                ws_info = parse_upgrade_request(request_str)
                if ws_info:
                    self._handle_websocket(client, remote, ws_info, leftover)
                else:
                    logger.warning(f"[ws] upgrade failed for {remote}: not a WebSocket upgrade request")
                    self._send_response(client, 400, "text/plain", b"WebSocket upgrade required\n")
            elif method not in ("GET", "HEAD"):
                self._send_response(client, 405, "text/plain", b"Method not allowed\n",
                                    extra_headers={"Allow": "GET, HEAD"})
            elif path == STATS_PATH:
                self._handle_stats(client, method)
            else:
                self._handle_static(client, method, path)

        except OSError as e:
            logger.debug(f"Connection error from {remote}: {e}")
            self._close_quietly(client)
        except Exception as e:
            logger.warning(f"Client error from {remote}: {e}", exc_info=True)
            self._close_quietly(client)

    def _handle_websocket(self, client: socket.socket, remote: str, ws_info: dict, leftover: bytes = b""):
        """Upgrade the connection and run it as a broadcast subscriber until it ends."""
        deflate = PerMessageDeflate.negotiate(ws_info['extensions']) if self.ws_compression else None
        transport = WebSocketTransport(client, remote_address=remote, deflate=deflate)
        subscriber = Subscriber(transport, mailbox_capacity=self.mailbox_capacity)

        # Check and claim the slot together so concurrent upgrades cannot pass the cap
        with self._ws_clients_lock:
            at_capacity = len(self._ws_clients) >= self.max_clients
            if not at_capacity:
                self._ws_clients[subscriber.id] = subscriber
        if at_capacity:
            logger.warning(f"Rejecting {remote}: maximum client count ({self.max_clients}) reached")
            self._send_response(client, 503, "text/plain", b"Too many clients\n")
            return

        try:
            upgrade = create_upgrade_response(
                ws_info['sec-websocket-key'],
                extensions=deflate.response_header() if deflate else None,
            )
            client.sendall(upgrade)
            # Blocking from here on: no read or write timeout on the upgraded connection
            client.settimeout(None)
            logger.info(f"[ws][client] connect {remote}" + (" (deflate)" if deflate else ""))

            try:
                self.dispatcher.register(subscriber, timeout=REGISTRATION_TIMEOUT_SEC)
            except queue.Full:
                logger.warning(f"[ws] registration queue full, dropping {remote}")
                subscriber.close("registration queue full")
                return

            subscriber.start()
            self._read_client_frames(transport, subscriber, leftover)
        finally:
            subscriber.close("client disconnected")
            with self._ws_clients_lock:
                self._ws_clients.pop(subscriber.id, None)
            logger.info(f"[ws][client] disconnect {remote}")

    def _read_client_frames(self, transport: WebSocketTransport, subscriber: Subscriber, initial: bytes = b""):
        """
        Read frames from the client until it disconnects or the subscriber dies.

        Clients are not expected to send data; pings are answered and a close
        frame is echoed back. initial holds bytes that arrived together with
        the upgrade request.
        """
        buffer = b""
        data = initial
        while not subscriber.is_dead:
            if not data:
                try:
                    data = transport.sock.recv(4096)
                except OSError:
                    break
                if not data:
                    break

            buffer += data
            data = b""
            while len(buffer) >= 2:
                size = frame_length_hint(buffer)
                if size is not None and size > MAX_CLIENT_FRAME_BYTES:
                    logger.warning(f"[ws] {transport.remote_address} sent a {size}-byte frame, closing")
                    self._send_close_quietly(transport, CLOSE_MESSAGE_TOO_BIG)
                    return

                try:
                    opcode, payload, consumed = decode_websocket_frame(buffer)
                except WebSocketError as e:
                    logger.warning(f"[ws] protocol error from {transport.remote_address}: {e}")
                    self._send_close_quietly(transport, CLOSE_PROTOCOL_ERROR)
                    return
                if opcode is None:
                    # Incomplete frame, wait for more data
                    break
                buffer = buffer[consumed:]

                if opcode == OPCODE_CLOSE:
                    code = int.from_bytes(payload[:2], "big") if len(payload) >= 2 else CLOSE_NORMAL
                    if code in NO_WIRE_CLOSE_CODES:
                        code = CLOSE_NORMAL
                    self._send_close_quietly(transport, code)
                    return
                if opcode == OPCODE_PING:
                    try:
                        transport.send_pong(payload)
                    except SubscriberWriteFailed:
                        return
                # Text/binary/pong from the client are ignored

    def _handle_stats(self, client: socket.socket, method: str):
        """Serve the /relay/stats JSON snapshot."""
        if self.stats_provider is None:
            self._send_response(client, 503, "application/json", b'{"error": "Stats not available"}\n')
            return

        stats = dict(self.stats_provider())
        with self._ws_clients_lock:
            stats["connected_clients"] = len(self._ws_clients)
        stats["max_clients"] = self.max_clients
        stats["timestamp"] = time.time()

        body = json.dumps(stats).encode("utf-8")
        self._send_response(client, 200, "application/json", body, head_only=(method == "HEAD"))

    def _resolve_static(self, path: str) -> Optional[Path]:
        """Map a URL path to a file under static_root, or None if outside it or missing."""
        relative = unquote(path).lstrip("/")
        target = (self.static_root / relative).resolve()
        if target != self.static_root and self.static_root not in target.parents:
            return None
        if target.is_dir():
            target = target / "index.html"
        if not target.is_file():
            return None
        return target

    def _handle_static(self, client: socket.socket, method: str, path: str):
        """Serve a file from static_root."""
        target = self._resolve_static(path)
        if target is None:
            self._send_response(client, 404, "text/plain", f"404 Not Found: {path}\n".encode("utf-8"))
            return

        try:
            body = target.read_bytes()
        except OSError as e:
            logger.warning(f"Error reading static file {target}: {e}")
            self._send_response(client, 500, "text/plain", b"Internal server error\n")
            return

        content_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        self._send_response(client, 200, content_type, body, head_only=(method == "HEAD"))

    def _send_response(
        self,
        client: socket.socket,
        status: int,
        content_type: str,
        body: bytes,
        extra_headers: Optional[Dict[str, str]] = None,
        head_only: bool = False,
    ):
        """Send a complete HTTP/1.1 response and close the connection."""
        headers = (
            f"HTTP/1.1 {status} {_REASONS.get(status, '')}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Cache-Control: no-cache\r\n"
            "Connection: close\r\n"
        )
        for key, value in (extra_headers or {}).items():
            headers += f"{key}: {value}\r\n"
        headers += "\r\n"
        try:
            client.sendall(headers.encode("ascii") + (b"" if head_only else body))
        except OSError as e:
            logger.debug(f"Error sending {status} response: {e}")
        self._close_quietly(client)

    @staticmethod
    def _send_close_quietly(transport: WebSocketTransport, code: int):
        try:
            transport.send_close(code)
        except SubscriberWriteFailed:
            pass

    @staticmethod
    def _close_quietly(client: socket.socket):
        try:
            client.close()
        except OSError:
            pass

    def get_client_stats(self) -> dict:
        """Per-client statistics for connected WebSocket clients."""
        with self._ws_clients_lock:
            clients = list(self._ws_clients.values())
        return {
            "connected_clients": len(clients),
            "max_clients": self.max_clients,
            "clients": [sub.get_stats() for sub in clients],
        }
