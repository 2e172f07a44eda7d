"""
HTTP surface of the relay: WebSocket subscribers, static files and stats.
"""

from relay.http.server import HTTPServer
from relay.http.websocket import PerMessageDeflate, WebSocketError, WebSocketTransport

__all__ = [
    "HTTPServer",
    "PerMessageDeflate",
    "WebSocketError",
    "WebSocketTransport",
]
