"""Wire protocol for the AR capture stream.

Shared between the capture-side muxer and the remote UDP consumer.
Every datagram carries exactly one packet: a 16-byte big-endian header
followed by the stream payload.

    Header: stream_type(4) + timestamp_ms(8) + length(4)
"""

import struct
import time
from enum import IntEnum
from typing import NamedTuple, Optional

HEADER_FORMAT = ">iqi"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 16 bytes

MAX_PAYLOAD_LENGTH = 2**31 - 1
# IPv4 UDP ceiling (65535 - 8 UDP - 20 IP)
MAX_DATAGRAM_SIZE = 65507
MAX_DATAGRAM_PAYLOAD = MAX_DATAGRAM_SIZE - HEADER_SIZE

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000
DEFAULT_ZMQ_ENDPOINT = "tcp://127.0.0.1:5555"


class StreamType(IntEnum):
    CAMERA = 1
    DEPTH = 2
    POSE = 3
    POINT_CLOUD = 4
    METADATA = 5


STREAM_NAMES = {t: t.name.lower() for t in StreamType}


class Packet(NamedTuple):
    stream_type: StreamType
    timestamp_ms: int
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)


def now_ms() -> int:
    return int(time.time() * 1000)


def frame_packet(stream_type: int, payload: bytes,
                 timestamp_ms: Optional[int] = None) -> bytes:
    """Prefix *payload* with the fixed header. The payload is not touched."""
    if len(payload) > MAX_PAYLOAD_LENGTH:
        raise ValueError(f"Payload too large: {len(payload)} bytes")
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    header = struct.pack(HEADER_FORMAT, int(stream_type), timestamp_ms, len(payload))
    return header + bytes(payload)


def parse_header(data: bytes):
    """Return ``(stream_type, timestamp_ms, length)`` from the first 16 bytes."""
    if len(data) < HEADER_SIZE:
        raise ValueError(f"Packet too short: {len(data)} bytes")
    return struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])


def parse_packet(data: bytes) -> Packet:
    """Decode one datagram. Raises ValueError on invalid data."""
    type_id, timestamp_ms, length = parse_header(data)

    try:
        stream_type = StreamType(type_id)
    except ValueError:
        raise ValueError(f"Unknown stream type: {type_id}") from None

    if length < 0 or len(data) != HEADER_SIZE + length:
        raise ValueError(
            f"Size mismatch: got {len(data)}, expected {HEADER_SIZE + length}")

    return Packet(stream_type, timestamp_ms, bytes(data[HEADER_SIZE:]))
