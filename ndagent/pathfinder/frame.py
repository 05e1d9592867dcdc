"""Binary frame encoding for the Pathfinder multiplexing protocol.

Wire format: ``[type:1][stream_id:4][length:4][data:length]``, big endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

FRAME_HEADER_SIZE = 9
MAX_FRAME_DATA_SIZE = 16 * 1024 * 1024

_HEADER = struct.Struct(">BII")


class FrameType(IntEnum):
    """Frame types used on the wire."""

    DATA = 0x01
    CLOSE = 0x02
    OPEN = 0x03
    ACK = 0x04


class FrameError(ValueError):
    """Raised when a binary frame cannot be decoded."""


@dataclass
class Frame:
    """A single protocol frame."""

    type: int
    stream_id: int
    data: bytes = b""

    def type_string(self) -> str:
        """Return a human-readable name for the frame type."""
        try:
            return FrameType(self.type).name
        except ValueError:
            return f"UNKNOWN(0x{self.type:02x})"


def encode_frame(frame: Frame) -> bytes:
    """Encode a frame into its binary representation."""
    data = bytes(frame.data or b"")
    return _HEADER.pack(frame.type, frame.stream_id, len(data)) + data


def decode_frame(data: bytes) -> Frame:
    """Decode a binary frame, raising FrameError if it is malformed."""
    if len(data) < FRAME_HEADER_SIZE:
        raise FrameError("frame too short: missing header")

    frame_type, stream_id, data_len = _HEADER.unpack_from(data)

    if data_len > MAX_FRAME_DATA_SIZE:
        raise FrameError(f"frame data too large: {data_len} bytes")

    expected_len = FRAME_HEADER_SIZE + data_len
    if len(data) < expected_len:
        raise FrameError(
            f"frame truncated: expected {expected_len} bytes, got {len(data)}"
        )

    return Frame(
        type=frame_type,
        stream_id=stream_id,
        data=bytes(data[FRAME_HEADER_SIZE:expected_len]),
    )