"""
Demux error taxonomy.

Every error raised while splitting the upstream byte stream into frames
derives from DemuxError. All of them are fatal to the ingest loop.
"""

from __future__ import annotations


class DemuxError(Exception):
    """
    Base class for frame demux failures.

    Attributes:
        bytes_consumed: Bytes of the current frame already taken from the stream
                        when the error was raised.
    """

    def __init__(self, message: str, bytes_consumed: int = 0) -> None:
        super().__init__(message)
        self.bytes_consumed = bytes_consumed


class FormatMismatch(DemuxError):
    """Stream does not start with the signature of the configured format."""
    pass


class Truncated(DemuxError):
    """Upstream ended or failed before a required field was complete."""
    pass


class StreamEnded(Truncated):
    """Upstream ended cleanly on a frame boundary (no partial frame read)."""
    pass


class FrameTooLarge(DemuxError):
    """Accumulated frame does not fit in the scratch buffer."""
    pass


class ChecksumMismatch(DemuxError):
    """PNG chunk CRC does not match its type and payload (only when verification is on)."""
    pass
