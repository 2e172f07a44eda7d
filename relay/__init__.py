"""
ws-relay: still-image stream relay.

Reads back-to-back JPEG or PNG frames from an encoder pipe and fans each
frame out to connected WebSocket clients, latest frame wins.
"""

__version__ = "0.3.0"
