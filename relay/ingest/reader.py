"""
Buffered reader for the upstream frame pipe.

This module provides ByteStreamReader, which sits between the raw encoder
pipe and the demuxers. It accumulates bytes read from the stream and hands
them out in exact-length pieces or up to a delimiter byte, keeping whatever
is left over for the next call so frame boundaries are never lost.
"""

from __future__ import annotations

import logging
from typing import BinaryIO

from relay.ingest.errors import FrameTooLarge, StreamEnded, Truncated

logger = logging.getLogger(__name__)

# Read up to 64KB per refill
DEFAULT_CHUNK_SIZE = 65536


class ByteStreamReader:
    """
    Blocking reader over a binary stream with exact and delimited reads.

    Refills use read1() when the stream provides it, which returns as soon as
    any bytes are available. A plain read(n) on a pipe would wait for n bytes
    and hold back the tail of a frame until the next one arrives.

    Attributes:
        stream: Underlying binary stream (stdin pipe, file, BytesIO)
        chunk_size: Maximum bytes requested from the stream per refill
    """

    def __init__(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        """
        Initialize reader.

        Args:
            stream: Readable binary stream
            chunk_size: Bytes per refill (must be > 0)

        Raises:
            ValueError: If chunk_size <= 0
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be > 0, got {chunk_size}")

        self.stream = stream
        self.chunk_size = chunk_size
        self._buffer = bytearray()
        self._eof = False
        self._read = getattr(stream, "read1", None) or stream.read
        self._total_read = 0

    @property
    def buffered(self) -> int:
        """Bytes read from the stream but not yet handed out."""
        return len(self._buffer)

    @property
    def total_read(self) -> int:
        """Total bytes pulled from the underlying stream."""
        return self._total_read

    @property
    def at_eof(self) -> bool:
        """True once the stream reported end-of-file and the buffer is drained."""
        return self._eof and not self._buffer

    def _fill(self) -> bool:
        """
        Pull one chunk from the stream into the buffer.

        Returns:
            True if bytes were added, False on end-of-file

        Raises:
            Truncated: If the stream raises while reading
        """
        if self._eof:
            return False

        try:
            data = self._read(self.chunk_size)
        except (OSError, ValueError) as e:
            # Closed pipe or read error mid-stream
            self._eof = True
            raise Truncated(f"Upstream read failed: {e}") from e

        if not data:
            self._eof = True
            return False

        self._buffer.extend(data)
        self._total_read += len(data)
        return True

    def read_exactly(self, n: int) -> bytes:
        """
        Read exactly n bytes.

        Args:
            n: Number of bytes required

        Returns:
            n bytes

        Raises:
            StreamEnded: If the stream ended before any byte of this read
            Truncated: If the stream ended after some but not all n bytes
        """
        while len(self._buffer) < n:
            if not self._fill():
                available = len(self._buffer)
                if available == 0:
                    raise StreamEnded(f"Upstream ended (wanted {n} bytes)")
                raise Truncated(
                    f"Upstream ended after {available} of {n} bytes",
                    bytes_consumed=available,
                )

        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    def read_until(self, delimiter: int, limit: int) -> bytes:
        """
        Read up to and including the next occurrence of a delimiter byte.

        Args:
            delimiter: Byte value (0-255) that terminates the read
            limit: Maximum bytes this call may return

        Returns:
            Bytes ending with delimiter (at most limit bytes)

        Raises:
            FrameTooLarge: If more than limit bytes precede the delimiter
            StreamEnded: If the stream ended with nothing buffered
            Truncated: If the stream ended before the delimiter was seen
        """
        scanned = 0
        while True:
            idx = self._buffer.find(delimiter, scanned)
            if idx >= 0:
                end = idx + 1
                if end > limit:
                    raise FrameTooLarge(
                        f"Delimited read needs {end} bytes, limit is {limit}",
                        bytes_consumed=0,
                    )
                data = bytes(self._buffer[:end])
                del self._buffer[:end]
                return data

            scanned = len(self._buffer)
            if scanned > limit:
                raise FrameTooLarge(
                    f"No 0x{delimiter:02X} within {limit} bytes",
                    bytes_consumed=0,
                )

            if not self._fill():
                if scanned == 0:
                    raise StreamEnded(f"Upstream ended while scanning for 0x{delimiter:02X}")
                raise Truncated(
                    f"Upstream ended after {scanned} bytes without 0x{delimiter:02X}",
                    bytes_consumed=scanned,
                )
