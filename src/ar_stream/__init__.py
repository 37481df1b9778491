"""ar-stream: stream AR capture data (camera, depth, pose, point clouds)
to a remote viewer over UDP.

Quick start::

    from ar_stream import ArStreamer, MockObservationSource

    with ArStreamer(MockObservationSource()) as streamer:
        ...

For lower-level access, drive :class:`CaptureLoop` and :class:`DataMuxer`
directly, and use :class:`PacketReceiver` on the viewing side.
"""

from .capture import CaptureLoop
from .config import StreamConfig, validate_destination
from .depth import DepthMap, DepthReducer, DownsampledDepthMap
from .muxer import DataMuxer, TransportState
from .observation import (
    ImageFormat, Observation, Plane, PlaneType, Pose, RawImage, TrackingState,
)
from .protocol import (
    DEFAULT_PORT,
    HEADER_SIZE,
    Packet,
    StreamType,
    frame_packet,
    parse_packet,
)
from .receiver import PacketReceiver
from .serializer import FrameSerializer
from .source import MockObservationSource, ObservationSource, ZmqObservationSource
from .streamer import ArStreamer

__version__ = "0.1.0"

__all__ = [
    "ArStreamer",
    "CaptureLoop",
    "DataMuxer",
    "TransportState",
    "DepthMap",
    "DepthReducer",
    "DownsampledDepthMap",
    "FrameSerializer",
    "ObservationSource",
    "MockObservationSource",
    "ZmqObservationSource",
    "PacketReceiver",
    "StreamConfig",
    "validate_destination",
    "Observation",
    "Pose",
    "Plane",
    "PlaneType",
    "RawImage",
    "ImageFormat",
    "TrackingState",
    "Packet",
    "StreamType",
    "frame_packet",
    "parse_packet",
    "DEFAULT_PORT",
    "HEADER_SIZE",
    "__version__",
]
