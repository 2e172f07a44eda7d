"""
WebSocket protocol handling for the relay's /ws endpoint.

Implements the RFC 6455 upgrade handshake and framing, the permessage-deflate
extension (RFC 7692) for outbound binary frames, and WebSocketTransport, the
subscriber transport that writes one image frame per binary message.
"""

import base64
import hashlib
import logging
import socket
import struct
import threading
import zlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from relay.broadcast.subscriber import SubscriberTransport, SubscriberWriteFailed

logger = logging.getLogger(__name__)

# WebSocket magic string per RFC 6455
WEBSOCKET_MAGIC_STRING = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

OPCODE_CONTINUATION = 0x0
OPCODE_TEXT = 0x1
OPCODE_BINARY = 0x2
OPCODE_CLOSE = 0x8
OPCODE_PING = 0x9
OPCODE_PONG = 0xA

_KNOWN_OPCODES = frozenset({
    OPCODE_CONTINUATION, OPCODE_TEXT, OPCODE_BINARY,
    OPCODE_CLOSE, OPCODE_PING, OPCODE_PONG,
})

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_MESSAGE_TOO_BIG = 1009

# Trailer removed from every compressed message per RFC 7692 7.2.1
_DEFLATE_TAIL = b"\x00\x00\xff\xff"


class WebSocketError(Exception):
    """WebSocket protocol error."""
    pass


def generate_accept_key(sec_websocket_key: str) -> str:
    """
    Generate WebSocket accept key for upgrade response.

    Per RFC 6455 Section 1.3: SHA-1(key + magic_string), then base64 encode.
    """
    key = sec_websocket_key + WEBSOCKET_MAGIC_STRING
    sha1 = hashlib.sha1(key.encode('utf-8')).digest()
    return base64.b64encode(sha1).decode('utf-8')


def _header_tokens(value: str) -> List[str]:
    return [token.strip().lower() for token in value.split(',') if token.strip()]


def parse_extension_offers(header_value: str) -> List[Tuple[str, Dict[str, Optional[str]]]]:
    """
    Parse a Sec-WebSocket-Extensions header.

    Args:
        header_value: e.g. "permessage-deflate; client_max_window_bits, x-foo"

    Returns:
        List of (extension_name, params) in offer order; valueless params map to None
    """
    offers = []
    for offer in header_value.split(','):
        parts = [p.strip() for p in offer.split(';') if p.strip()]
        if not parts:
            continue
        params: Dict[str, Optional[str]] = {}
        for param in parts[1:]:
            if '=' in param:
                key, value = param.split('=', 1)
                params[key.strip().lower()] = value.strip().strip('"')
            else:
                params[param.lower()] = None
        offers.append((parts[0].lower(), params))
    return offers


def parse_upgrade_request(request_str: str) -> Optional[dict]:
    """
    Parse HTTP upgrade request to extract WebSocket headers.

    Args:
        request_str: Raw HTTP request string

    Returns:
        Dictionary with path, headers, sec-websocket-key and extension offers,
        or None if not a valid WebSocket upgrade
    """
    lines = request_str.split('\r\n')
    if not lines:
        return None

    parts = lines[0].split()
    if len(parts) < 3:
        return None

    method, path = parts[0], parts[1]
    if method != "GET":
        return None

    headers = {}
    for line in lines[1:]:
        if not line.strip():
            break
        if ':' in line:
            key, value = line.split(':', 1)
            headers[key.strip().lower()] = value.strip()

    if 'websocket' not in _header_tokens(headers.get('upgrade', '')):
        return None

    # Browsers may send "keep-alive, Upgrade"
    if 'upgrade' not in _header_tokens(headers.get('connection', '')):
        return None

    if 'sec-websocket-key' not in headers:
        return None

    # Only support version 13
    if headers.get('sec-websocket-version') != '13':
        return None

    return {
        'path': path,
        'headers': headers,
        'sec-websocket-key': headers['sec-websocket-key'],
        'extensions': parse_extension_offers(headers.get('sec-websocket-extensions', '')),
    }


def create_upgrade_response(sec_websocket_key: str, extensions: Optional[str] = None) -> bytes:
    """
    Create WebSocket upgrade response.

    Args:
        sec_websocket_key: Client's Sec-WebSocket-Key header value
        extensions: Accepted Sec-WebSocket-Extensions value, if any

    Returns:
        HTTP response bytes for WebSocket upgrade
    """
    accept_key = generate_accept_key(sec_websocket_key)

    response = (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept_key}\r\n"
    )
    if extensions:
        response += f"Sec-WebSocket-Extensions: {extensions}\r\n"
    response += "\r\n"
    return response.encode('ascii')


def encode_websocket_frame(payload: bytes, opcode: int = OPCODE_TEXT, rsv1: bool = False) -> bytes:
    """
    Encode a single unmasked, final WebSocket frame (server to client).

    Per RFC 6455 Section 5.2: FIN=1, RSV1 set only for compressed messages,
    7-bit / 16-bit / 64-bit payload length.

    Args:
        payload: Frame payload bytes
        opcode: Frame opcode
        rsv1: Set the RSV1 bit (permessage-deflate compressed payload)

    Returns:
        Encoded WebSocket frame bytes
    """
    payload_len = len(payload)
    first_byte = 0x80 | (0x40 if rsv1 else 0) | (opcode & 0x0F)

    if payload_len < 126:
        header = struct.pack('!BB', first_byte, payload_len)
    elif payload_len < 65536:
        header = struct.pack('!BBH', first_byte, 126, payload_len)
    else:
        header = struct.pack('!BBQ', first_byte, 127, payload_len)

    return header + payload


def decode_websocket_frame(data: bytes) -> Tuple[Optional[int], Optional[bytes], int]:
    """
    Decode a WebSocket frame.

    Args:
        data: Raw frame bytes

    Returns:
        Tuple of (opcode, payload, bytes_consumed)
        Returns (None, None, 0) if frame is incomplete

    Raises:
        WebSocketError: If the frame uses a reserved opcode
    """
    if len(data) < 2:
        return None, None, 0

    opcode = data[0] & 0x0F
    if opcode not in _KNOWN_OPCODES:
        raise WebSocketError(f"Reserved opcode 0x{opcode:X}")
    masked = (data[1] >> 7) & 0x01
    payload_len = data[1] & 0x7F

    header_len = 2
    if payload_len == 126:
        if len(data) < 4:
            return None, None, 0
        payload_len = struct.unpack('!H', data[2:4])[0]
        header_len = 4
    elif payload_len == 127:
        if len(data) < 10:
            return None, None, 0
        payload_len = struct.unpack('!Q', data[2:10])[0]
        header_len = 10

    mask_key = None
    if masked:
        if len(data) < header_len + 4:
            return None, None, 0
        mask_key = data[header_len:header_len + 4]
        header_len += 4

    if len(data) < header_len + payload_len:
        return None, None, 0

    payload = data[header_len:header_len + payload_len]
    if mask_key:
        payload = bytes(payload[i] ^ mask_key[i % 4] for i in range(len(payload)))

    return opcode, bytes(payload), header_len + payload_len


def frame_length_hint(data: bytes) -> Optional[int]:
    """Total size of the frame starting at data[0], once its header is complete."""
    if len(data) < 2:
        return None
    masked = (data[1] >> 7) & 0x01
    payload_len = data[1] & 0x7F
    header_len = 2
    if payload_len == 126:
        if len(data) < 4:
            return None
        payload_len = struct.unpack('!H', data[2:4])[0]
        header_len = 4
    elif payload_len == 127:
        if len(data) < 10:
            return None
        payload_len = struct.unpack('!Q', data[2:10])[0]
        header_len = 10
    return header_len + (4 if masked else 0) + payload_len


def create_close_frame(code: int = CLOSE_NORMAL, reason: str = "") -> bytes:
    """
    Create a WebSocket close frame.

    Args:
        code: Close status code (1000 = normal closure)
        reason: Optional close reason
    """
    payload = struct.pack('!H', code) + reason.encode('utf-8')
    return encode_websocket_frame(payload, opcode=OPCODE_CLOSE)


@dataclass
class PerMessageDeflate:
    """
    Outbound permessage-deflate (RFC 7692) with server_no_context_takeover.

    Every message is compressed on its own, so frames can be dropped or sent
    out of band without desynchronizing the client's inflater.

    Attributes:
        window_bits: LZ77 window size (9-15)
        level: zlib compression level
    """
    window_bits: int = 15
    level: int = 6

    def compress(self, payload: bytes) -> bytes:
        compressor = zlib.compressobj(self.level, zlib.DEFLATED, -self.window_bits)
        data = compressor.compress(payload) + compressor.flush(zlib.Z_SYNC_FLUSH)
        if data.endswith(_DEFLATE_TAIL):
            data = data[:-len(_DEFLATE_TAIL)]
        return data

    def response_header(self) -> str:
        header = "permessage-deflate; server_no_context_takeover"
        if self.window_bits != 15:
            header += f"; server_max_window_bits={self.window_bits}"
        return header

    @classmethod
    def negotiate(cls, offers: List[Tuple[str, Dict[str, Optional[str]]]]) -> Optional["PerMessageDeflate"]:
        """
        Accept the first usable permessage-deflate offer.

        Returns:
            PerMessageDeflate to use, or None if the client made no usable offer
        """
        for name, params in offers:
            if name != "permessage-deflate":
                continue
            window_bits = 15
            requested = params.get("server_max_window_bits")
            if requested is not None:
                try:
                    window_bits = int(requested)
                except ValueError:
                    continue
                # zlib raw deflate cannot produce an 8-bit window
                if not 9 <= window_bits <= 15:
                    continue
            return cls(window_bits=window_bits)
        return None


class WebSocketTransport(SubscriberTransport):
    """
    Subscriber transport over an upgraded WebSocket connection.

    write() is called by the subscriber's writer thread; pongs and the close
    reply are sent by the connection thread. A send lock keeps their frames
    from interleaving on the socket. Writes block without a timeout; a hung
    client only stalls its own writer.
    """

    def __init__(
        self,
        sock: socket.socket,
        remote_address: str = "unknown",
        deflate: Optional[PerMessageDeflate] = None,
    ) -> None:
        self.sock = sock
        self.remote_address = remote_address
        self.deflate = deflate
        self._send_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _send(self, data: bytes) -> None:
        if self._closed:
            raise SubscriberWriteFailed("connection closed")
        try:
            with self._send_lock:
                self.sock.sendall(data)
        except OSError as e:
            raise SubscriberWriteFailed(str(e) or type(e).__name__) from e

    def write(self, frame: bytes) -> None:
        """Send one image frame as one binary message."""
        if self.deflate is not None:
            data = encode_websocket_frame(self.deflate.compress(frame), opcode=OPCODE_BINARY, rsv1=True)
        else:
            data = encode_websocket_frame(frame, opcode=OPCODE_BINARY)
        self._send(data)

    def send_pong(self, payload: bytes = b"") -> None:
        self._send(encode_websocket_frame(payload, opcode=OPCODE_PONG))

    def send_close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        self._send(create_close_frame(code, reason))

    def close(self) -> None:
        """
        Shut down and close the socket. Idempotent.

        shutdown() also unblocks a writer stuck in sendall() and the
        connection thread stuck in recv().
        """
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected
            pass
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Error closing socket for {self.remote_address}: {e}")
