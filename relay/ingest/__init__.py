"""
Frame ingestion subsystem.

This package splits the upstream encoder pipe into complete image frames
and hands them to the broadcast dispatcher.
"""

from relay.ingest.demuxer import (
    ChecksumMismatch,
    DemuxError,
    FormatMismatch,
    FrameDemuxer,
    FrameFormat,
    FrameTooLarge,
    JpegDemuxer,
    PngDemuxer,
    StreamEnded,
    Truncated,
    get_demuxer,
)
from relay.ingest.ingest_loop import IngestLoop
from relay.ingest.reader import ByteStreamReader

__all__ = [
    "ByteStreamReader",
    "ChecksumMismatch",
    "DemuxError",
    "FormatMismatch",
    "FrameDemuxer",
    "FrameFormat",
    "FrameTooLarge",
    "IngestLoop",
    "JpegDemuxer",
    "PngDemuxer",
    "StreamEnded",
    "Truncated",
    "get_demuxer",
]
