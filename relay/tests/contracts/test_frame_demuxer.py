"""
Contract tests for the JPEG and PNG frame demuxers.

Covers:
- Byte-exact reconstruction of back-to-back frames with no residual bytes
- FormatMismatch iff the leading bytes differ from the format signature
- Truncated iff a required field cannot be supplied completely
- FrameTooLarge instead of overrunning the scratch buffer
- PNG CRC pass-through (default) and optional verification
- Format selection by name, rejecting unknown names
"""

import io

import pytest

from relay.ingest.demuxer import (
    ChecksumMismatch,
    FormatMismatch,
    FrameFormat,
    FrameTooLarge,
    JpegDemuxer,
    PngDemuxer,
    StreamEnded,
    Truncated,
    get_demuxer,
)
from relay.ingest.reader import ByteStreamReader
from relay.tests.contracts._relay_harness import jpeg_frame, png_frame


def decode_all(demuxer, data: bytes, chunk_size: int = 65536, scratch_size: int = 1 << 16):
    """Decode frames until the stream ends. Returns (frames, reader)."""
    reader = ByteStreamReader(io.BytesIO(data), chunk_size=chunk_size)
    scratch = bytearray(scratch_size)
    frames = []
    while True:
        try:
            n = demuxer.decode(reader, scratch)
        except StreamEnded:
            return frames, reader
        frames.append(bytes(scratch[:n]))


class TestJpegDemuxer:
    """Marker-delimited variant."""

    def test_two_back_to_back_minimal_images(self):
        """Two SOI+payload+EOI images decode to their exact lengths, in order."""
        first = jpeg_frame(b"\x01\x02\x03")
        second = jpeg_frame(b"\x04\x05\x06\x07\x08")
        reader = ByteStreamReader(io.BytesIO(first + second))
        scratch = bytearray(1024)

        assert JpegDemuxer().decode(reader, scratch) == len(first)
        assert bytes(scratch[:len(first)]) == first
        assert JpegDemuxer().decode(reader, scratch) == len(second)
        assert bytes(scratch[:len(second)]) == second

    def test_reconstructs_stream_exactly(self):
        """Concatenating decoded frames gives back the whole stream, nothing left over."""
        frames = [jpeg_frame(bytes([i]) * (10 + i)) for i in range(20)]
        stream = b"".join(frames)

        decoded, reader = decode_all(JpegDemuxer(), stream)

        assert decoded == frames
        assert reader.at_eof
        assert reader.total_read == len(stream)

    def test_terminator_byte_inside_payload(self):
        """A lone D9 byte not preceded by FF does not end the frame."""
        frame = jpeg_frame(b"\x00\xD9\x10\xD9\xD9\x20")

        decoded, _ = decode_all(JpegDemuxer(), frame + frame)

        assert decoded == [frame, frame]

    def test_end_marker_split_across_reads(self):
        """FF and D9 arriving in separate refills still close the frame."""
        frames = [jpeg_frame(b"\x11\x22"), jpeg_frame(b"\x33")]

        decoded, _ = decode_all(JpegDemuxer(), b"".join(frames), chunk_size=1)

        assert decoded == frames

    def test_wrong_start_marker_is_format_mismatch(self):
        with pytest.raises(FormatMismatch):
            decode_all(JpegDemuxer(), b"\x89PNG\r\n\x1a\n")

    def test_garbage_between_frames_is_format_mismatch(self):
        """Anything other than FF D8 where a frame should start is rejected."""
        reader = ByteStreamReader(io.BytesIO(jpeg_frame() + b"\x00" + jpeg_frame()))
        scratch = bytearray(1024)
        demuxer = JpegDemuxer()

        demuxer.decode(reader, scratch)
        with pytest.raises(FormatMismatch):
            demuxer.decode(reader, scratch)

    def test_end_during_marker_scan_is_truncated(self):
        """Stream ending before FF D9 is a truncation, not a clean end."""
        with pytest.raises(Truncated) as exc_info:
            decode_all(JpegDemuxer(), b"\xFF\xD8\x01\x02\x03")

        assert not isinstance(exc_info.value, StreamEnded)

    def test_end_after_start_marker_is_truncated(self):
        with pytest.raises(Truncated) as exc_info:
            decode_all(JpegDemuxer(), b"\xFF\xD8")

        assert not isinstance(exc_info.value, StreamEnded)

    def test_single_byte_is_truncated(self):
        with pytest.raises(Truncated) as exc_info:
            decode_all(JpegDemuxer(), b"\xFF")

        assert not isinstance(exc_info.value, StreamEnded)

    def test_oversized_frame_is_frame_too_large(self):
        """A frame longer than the scratch buffer raises FrameTooLarge."""
        frame = jpeg_frame(b"\x00" * 100)

        with pytest.raises(FrameTooLarge):
            decode_all(JpegDemuxer(), frame, scratch_size=32)

    def test_frame_exactly_filling_scratch(self):
        frame = jpeg_frame(b"\x00" * 28)

        decoded, _ = decode_all(JpegDemuxer(), frame, scratch_size=len(frame))

        assert decoded == [frame]


class TestPngDemuxer:
    """Chunk-structured variant."""

    def test_reconstructs_stream_exactly(self):
        frames = [png_frame(idat=bytes([i]) * (5 + i)) for i in range(10)]
        stream = b"".join(frames)

        decoded, reader = decode_all(PngDemuxer(), stream)

        assert decoded == frames
        assert reader.at_eof

    def test_reconstructs_from_trickling_stream(self):
        frames = [png_frame(), png_frame(idat=b"\xD9" * 40)]

        decoded, _ = decode_all(PngDemuxer(), b"".join(frames), chunk_size=3)

        assert decoded == frames

    def test_bad_signature_is_format_mismatch(self):
        with pytest.raises(FormatMismatch):
            decode_all(PngDemuxer(), jpeg_frame(b"\x00" * 20))

    def test_end_mid_chunk_is_truncated(self):
        """Stream ending inside a chunk header or payload raises Truncated."""
        frame = png_frame()

        with pytest.raises(Truncated) as exc_info:
            decode_all(PngDemuxer(), frame[:-6])
        assert not isinstance(exc_info.value, StreamEnded)

        with pytest.raises(Truncated) as exc_info:
            decode_all(PngDemuxer(), frame[:20])
        assert not isinstance(exc_info.value, StreamEnded)

    def test_end_on_chunk_boundary_before_iend_is_truncated(self):
        """A frame without its IEND chunk is incomplete even if a chunk just finished."""
        frame = png_frame()

        with pytest.raises(Truncated) as exc_info:
            decode_all(PngDemuxer(), frame[:-12])

        assert not isinstance(exc_info.value, StreamEnded)

    def test_oversized_chunk_is_frame_too_large(self):
        """Declared chunk length beyond the scratch buffer is rejected before reading the payload."""
        with pytest.raises(FrameTooLarge):
            decode_all(PngDemuxer(), png_frame(), scratch_size=32)

    def test_crc_passed_through_by_default(self):
        """A wrong chunk CRC is carried through untouched when verification is off."""
        frame = png_frame(bad_crc=True)

        decoded, _ = decode_all(PngDemuxer(), frame)

        assert decoded == [frame]

    def test_crc_verification(self):
        decoded, _ = decode_all(PngDemuxer(verify_crc=True), png_frame())
        assert len(decoded) == 1

        with pytest.raises(ChecksumMismatch):
            decode_all(PngDemuxer(verify_crc=True), png_frame(bad_crc=True))


class TestFormatSelection:
    """Format names map to demuxers at startup; unknown names fail fast."""

    @pytest.mark.parametrize("name,expected", [
        ("jpg", JpegDemuxer),
        ("JPEG", JpegDemuxer),
        ("mjpeg", JpegDemuxer),
        ("png", PngDemuxer),
        (FrameFormat.PNG, PngDemuxer),
    ])
    def test_known_formats(self, name, expected):
        assert isinstance(get_demuxer(name), expected)

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError):
            get_demuxer("gif")

    def test_verify_crc_reaches_png_demuxer(self):
        demuxer = get_demuxer("png", verify_crc=True)
        assert demuxer.verify_crc is True
