"""Streaming configuration, destination validation and logging setup."""

import logging
import re
import sys
from dataclasses import dataclass
from typing import Optional

from .depth import DEFAULT_DOWNSAMPLE_FACTOR
from .protocol import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_ZMQ_ENDPOINT
from .serializer import DEFAULT_DEVICE

LOG_FORMAT = "[%(name)s] %(message)s"

_DOTTED_QUAD = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")


@dataclass
class StreamConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    fps: float = 60.0
    downsample_factor: int = DEFAULT_DOWNSAMPLE_FACTOR
    point_cloud_mode: str = "sparse"
    max_points: Optional[int] = None
    device: str = DEFAULT_DEVICE
    max_queue: Optional[int] = None
    source: str = "mock"
    zmq_endpoint: str = DEFAULT_ZMQ_ENDPOINT

    def validate(self):
        validate_destination(self.host, self.port)
        if self.fps <= 0:
            raise ValueError(f"fps must be positive, got {self.fps}")
        if self.downsample_factor < 1:
            raise ValueError(f"downsample_factor must be >= 1, got {self.downsample_factor}")
        if self.max_queue is not None and self.max_queue < 1:
            raise ValueError(f"max_queue must be >= 1, got {self.max_queue}")


def validate_destination(host: str, port: int):
    """Reject anything that is not a dotted-quad address and a 1-65535 port."""
    match = _DOTTED_QUAD.match(host or "")
    if match is None or any(int(octet) > 255 for octet in match.groups()):
        raise ValueError(f"Invalid destination address: {host!r}")
    if not isinstance(port, int) or not 1 <= port <= 65535:
        raise ValueError(f"Invalid destination port: {port!r}")


def setup_logging(level="INFO"):
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
