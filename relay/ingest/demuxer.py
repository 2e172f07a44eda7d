"""
Frame demuxers for back-to-back still-image streams.

This module splits the output of `ffmpeg -f image2pipe -` into complete
image frames. Two container formats are supported:

- JPEG (MJPEG): scans for the FF D8 start marker and the FF D9 end marker.
  Internal segments are not parsed, so an FF D9 pair inside entropy-coded
  data would end a frame early. Encoder output does not produce that pair
  there in practice; this is a known approximation, not a full JPEG parser.
- PNG: walks length-prefixed chunks after the 8-byte signature until the
  IEND chunk.

Output guarantees:
- Frames are returned exactly as received (byte-for-byte), framing bytes included
- Exactly one frame is consumed per decode() call, nothing past its last byte
- Any malformed or ended stream raises a DemuxError subclass
"""

from __future__ import annotations

import logging
import struct
import zlib
from abc import ABC, abstractmethod
from enum import Enum

from relay.ingest.errors import (
    ChecksumMismatch,
    DemuxError,
    FormatMismatch,
    FrameTooLarge,
    StreamEnded,
    Truncated,
)
from relay.ingest.reader import ByteStreamReader

logger = logging.getLogger(__name__)

JPEG_SOI = b"\xFF\xD8"
JPEG_EOI = b"\xFF\xD9"
JPEG_EOI_TAIL = 0xD9

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_IEND = b"IEND"
# length (4) + type (4)
PNG_CHUNK_HEADER = struct.Struct(">I4s")
PNG_CRC_SIZE = 4


class FrameFormat(str, Enum):
    """Supported upstream container formats."""

    JPEG = "jpg"
    PNG = "png"

    @classmethod
    def parse(cls, value: "str | FrameFormat") -> "FrameFormat":
        """
        Resolve a format name to a FrameFormat.

        Accepts jpg, jpeg, mjpeg and png (case-insensitive).

        Raises:
            ValueError: If the name is not a supported format
        """
        if isinstance(value, FrameFormat):
            return value
        name = str(value).strip().lower()
        fmt = _FORMAT_ALIASES.get(name)
        if fmt is None:
            supported = ", ".join(sorted(_FORMAT_ALIASES))
            raise ValueError(f"Unsupported frame format: {value!r} (supported: {supported})")
        return fmt


_FORMAT_ALIASES = {
    "jpg": FrameFormat.JPEG,
    "jpeg": FrameFormat.JPEG,
    "mjpeg": FrameFormat.JPEG,
    "png": FrameFormat.PNG,
}


class FrameDemuxer(ABC):
    """
    Extracts one complete frame per call from a ByteStreamReader.

    Implementations write the frame into a caller-owned scratch buffer so the
    ingest loop can reuse one large allocation for every frame.
    """

    format: FrameFormat

    @abstractmethod
    def decode(self, reader: ByteStreamReader, scratch: bytearray) -> int:
        """
        Read one frame into scratch[0:n].

        Args:
            reader: Reader positioned at the start of a frame
            scratch: Buffer sized for the largest expected frame

        Returns:
            Frame length n

        Raises:
            FormatMismatch: Leading bytes are not this format's signature
            Truncated: Stream ended or failed mid-frame (StreamEnded if on a boundary)
            FrameTooLarge: Frame does not fit in scratch
        """
        pass

    @staticmethod
    def _store(scratch: bytearray, offset: int, data: bytes) -> int:
        """Copy data into scratch at offset and return the new offset."""
        end = offset + len(data)
        if end > len(scratch):
            raise FrameTooLarge(
                f"Frame exceeds buffer capacity ({end} > {len(scratch)} bytes)",
                bytes_consumed=end,
            )
        scratch[offset:end] = data
        return end

    @staticmethod
    def _continue_read(exc: Truncated, offset: int) -> Truncated:
        """A stream ending after the first bytes of a frame is a truncation, not a clean end."""
        consumed = offset + exc.bytes_consumed
        if isinstance(exc, StreamEnded):
            return Truncated(f"Upstream ended mid-frame after {offset} bytes", bytes_consumed=consumed)
        exc.bytes_consumed = consumed
        return exc


class JpegDemuxer(FrameDemuxer):
    """Marker-delimited demuxer for JPEG/MJPEG frames."""

    format = FrameFormat.JPEG

    def decode(self, reader: ByteStreamReader, scratch: bytearray) -> int:
        head = reader.read_exactly(len(JPEG_SOI))
        offset = self._store(scratch, 0, head)
        if head != JPEG_SOI:
            raise FormatMismatch(
                f"Not a JPEG frame: expected start marker {JPEG_SOI.hex()}, got {head.hex()}",
                bytes_consumed=offset,
            )

        while True:
            try:
                segment = reader.read_until(JPEG_EOI_TAIL, limit=len(scratch) - offset)
            except FrameTooLarge as e:
                raise FrameTooLarge(
                    f"JPEG frame exceeds buffer capacity ({len(scratch)} bytes)",
                    bytes_consumed=offset,
                ) from e
            except Truncated as e:
                raise self._continue_read(e, offset) from e

            offset = self._store(scratch, offset, segment)
            # Marker may straddle two segments (segment of just D9)
            if scratch[offset - 2:offset] == JPEG_EOI:
                return offset


class PngDemuxer(FrameDemuxer):
    """
    Chunk-walking demuxer for PNG frames.

    Each chunk is a 4-byte big-endian data length, a 4-byte type tag, the
    data, and a 4-byte CRC. The CRC is passed through untouched unless
    verify_crc is set, in which case a mismatch raises ChecksumMismatch.
    """

    format = FrameFormat.PNG

    def __init__(self, verify_crc: bool = False) -> None:
        self.verify_crc = verify_crc

    def decode(self, reader: ByteStreamReader, scratch: bytearray) -> int:
        signature = reader.read_exactly(len(PNG_SIGNATURE))
        offset = self._store(scratch, 0, signature)
        if signature != PNG_SIGNATURE:
            raise FormatMismatch(
                f"Not a PNG frame: bad signature {signature.hex()}",
                bytes_consumed=offset,
            )

        while True:
            try:
                header = reader.read_exactly(PNG_CHUNK_HEADER.size)
            except Truncated as e:
                raise self._continue_read(e, offset) from e

            length, chunk_type = PNG_CHUNK_HEADER.unpack(header)
            chunk_end = offset + PNG_CHUNK_HEADER.size + length + PNG_CRC_SIZE
            if chunk_end > len(scratch):
                raise FrameTooLarge(
                    f"PNG chunk {chunk_type!r} of {length} bytes exceeds buffer capacity "
                    f"({chunk_end} > {len(scratch)} bytes)",
                    bytes_consumed=offset + PNG_CHUNK_HEADER.size,
                )
            offset = self._store(scratch, offset, header)

            try:
                body = reader.read_exactly(length + PNG_CRC_SIZE)
            except Truncated as e:
                raise self._continue_read(e, offset) from e

            if self.verify_crc:
                self._check_crc(chunk_type, body, offset + len(body))

            offset = self._store(scratch, offset, body)
            if chunk_type == PNG_IEND:
                return offset

    @staticmethod
    def _check_crc(chunk_type: bytes, body: bytes, consumed: int) -> None:
        data, crc_bytes = body[:-PNG_CRC_SIZE], body[-PNG_CRC_SIZE:]
        expected = struct.unpack(">I", crc_bytes)[0]
        actual = zlib.crc32(data, zlib.crc32(chunk_type)) & 0xFFFFFFFF
        if actual != expected:
            raise ChecksumMismatch(
                f"PNG chunk {chunk_type!r} CRC mismatch: stored {expected:08x}, computed {actual:08x}",
                bytes_consumed=consumed,
            )


def get_demuxer(fmt: "FrameFormat | str", verify_crc: bool = False) -> FrameDemuxer:
    """
    Build the demuxer for a configured format.

    Args:
        fmt: FrameFormat or format name
        verify_crc: Validate PNG chunk CRCs (ignored for JPEG)

    Returns:
        Demuxer instance for the format

    Raises:
        ValueError: If the format is not supported
    """
    fmt = FrameFormat.parse(fmt)
    if fmt is FrameFormat.PNG:
        return PngDemuxer(verify_crc=verify_crc)
    return JpegDemuxer()


__all__ = [
    "ChecksumMismatch",
    "DemuxError",
    "FormatMismatch",
    "FrameDemuxer",
    "FrameFormat",
    "FrameTooLarge",
    "JpegDemuxer",
    "PngDemuxer",
    "StreamEnded",
    "Truncated",
    "get_demuxer",
]
