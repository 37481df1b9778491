"""Encodes one observation into transport-ready payloads.

Pose, planes and metadata travel as UTF-8 JSON. Camera frames travel as
a deflate-compressed buffer::

    width(4) + height(4) + y_size(4) + u_size(4) + Y + U + V

with the four integers big-endian.
"""

import json
import logging
import struct
import zlib
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .observation import (
    ImageFormat, Plane, PlaneType, Pose, RawImage, TrackingState,
)
from .protocol import now_ms

logger = logging.getLogger(__name__)

IMAGE_HEADER_FORMAT = ">iiii"
IMAGE_HEADER_SIZE = struct.calcsize(IMAGE_HEADER_FORMAT)  # 16 bytes

DEFAULT_DEVICE = "ar-stream"
DEFAULT_COMPRESSION_LEVEL = 1  # zlib Z_BEST_SPEED


def _dumps(obj) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


class FrameSerializer:
    """Serializes pose, planes, camera images and per-tick metadata.

    Parameters
    ----------
    device : str
        Device tag written into every metadata record.
    compression_level : int
        zlib level for camera frames (1 = fastest).
    """

    def __init__(self, device: str = DEFAULT_DEVICE,
                 compression_level: int = DEFAULT_COMPRESSION_LEVEL):
        self.device = device
        self.compression_level = compression_level

    # ------------------------------------------------------------------
    # Pose / planes
    # ------------------------------------------------------------------

    def encode_pose(self, pose: Optional[Pose],
                    timestamp_ms: Optional[int] = None) -> bytes:
        if pose is None:
            return b"{}"
        tx, ty, tz = pose.translation
        qx, qy, qz, qw = pose.rotation
        return _dumps({
            "tx": float(tx), "ty": float(ty), "tz": float(tz),
            "qx": float(qx), "qy": float(qy), "qz": float(qz), "qw": float(qw),
            "timestamp": now_ms() if timestamp_ms is None else timestamp_ms,
        })

    def encode_planes(self, planes: Optional[Iterable[Plane]]) -> bytes:
        return _dumps([plane_record(p) for p in planes or ()])

    # ------------------------------------------------------------------
    # Camera image
    # ------------------------------------------------------------------

    def encode_image(self, image: Optional[RawImage]) -> Optional[bytes]:
        """Compressed YUV 4:2:0 frame, or ``None`` if there is nothing to send."""
        if image is None:
            return None

        if image.format is not ImageFormat.YUV_420_888:
            logger.warning("Unsupported image format: %s", image.format.value)
            return None
        if len(image.planes) != 3:
            logger.warning("YUV image has %d planes, expected 3", len(image.planes))
            return None

        y_plane, u_plane, v_plane = (bytes(p) for p in image.planes)
        header = struct.pack(IMAGE_HEADER_FORMAT, image.width, image.height,
                             len(y_plane), len(u_plane))
        raw = header + y_plane + u_plane + v_plane
        compressed = zlib.compress(raw, self.compression_level)
        logger.debug("Compressed image from %d to %d bytes", len(raw), len(compressed))
        return compressed

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def encode_metadata(self, pose: Optional[Pose],
                        depth_info: Optional[Mapping[str, Any]],
                        tracking_state: Optional[TrackingState],
                        plane_count: int,
                        timestamp_ms: Optional[int] = None,
                        planes: Optional[Iterable[Plane]] = None) -> bytes:
        """Per-tick heartbeat record. Plane records are embedded when *planes*
        is given, since planes have no stream of their own."""
        record: Dict[str, Any] = {
            "device": self.device,
            "timestamp": now_ms() if timestamp_ms is None else timestamp_ms,
            "tracking_state": tracking_state.value if tracking_state else "UNKNOWN",
            "planes_detected": plane_count,
        }
        if pose is not None:
            record["camera"] = {
                "position": [float(v) for v in pose.translation],
                "rotation": [float(v) for v in pose.rotation],
            }
        record["depth"] = dict(depth_info or {})
        if planes is not None:
            record["planes"] = [plane_record(p) for p in planes]
        return _dumps(record)


def plane_record(plane: Plane) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "id": plane.plane_id,
        "type": plane.plane_type.value,
        "trackingState": plane.tracking_state.value,
        "centerX": float(plane.center[0]),
        "centerY": float(plane.center[1]),
        "centerZ": float(plane.center[2]),
        "extentX": float(plane.extent_x),
        "extentZ": float(plane.extent_z),
    }
    if plane.polygon is not None:
        coords = [float(v) for v in plane.polygon]
        record["polygon"] = [
            {"x": coords[i], "z": coords[i + 1]}
            for i in range(0, len(coords) - 1, 2)
        ]
    return record


# ----------------------------------------------------------------------
# Decoders (receiving side)
# ----------------------------------------------------------------------

def decode_pose(data: bytes) -> Optional[Pose]:
    """Inverse of :meth:`FrameSerializer.encode_pose`. Raises ValueError."""
    record = json.loads(data)
    if not record:
        return None
    try:
        return Pose(
            translation=(record["tx"], record["ty"], record["tz"]),
            rotation=(record["qx"], record["qy"], record["qz"], record["qw"]),
        )
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed pose record: {e!r}") from e


def decode_planes(data: bytes) -> List[Plane]:
    return planes_from_records(json.loads(data))


def planes_from_records(records: Iterable[Mapping[str, Any]]) -> List[Plane]:
    """Rebuild planes from decoded records. Raises ValueError."""
    planes = []
    try:
        for record in records:
            polygon = None
            if "polygon" in record:
                polygon = tuple(
                    coord for vertex in record["polygon"]
                    for coord in (vertex["x"], vertex["z"]))
            planes.append(Plane(
                plane_id=record["id"],
                plane_type=PlaneType(record["type"]),
                tracking_state=TrackingState(record["trackingState"]),
                center=(record["centerX"], record["centerY"], record["centerZ"]),
                extent_x=record["extentX"],
                extent_z=record["extentZ"],
                polygon=polygon,
            ))
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed plane record: {e!r}") from e
    return planes


def decode_metadata(data: bytes) -> Dict[str, Any]:
    record = json.loads(data)
    if not isinstance(record, dict):
        raise ValueError(f"Metadata must be a JSON object, got {type(record).__name__}")
    return record


def decode_image(data: bytes) -> RawImage:
    """Inverse of :meth:`FrameSerializer.encode_image`. Raises ValueError."""
    try:
        raw = zlib.decompress(data)
    except zlib.error as e:
        raise ValueError(f"Bad image payload: {e}") from e

    if len(raw) < IMAGE_HEADER_SIZE:
        raise ValueError(f"Image payload too short: {len(raw)} bytes")

    width, height, y_size, u_size = struct.unpack(
        IMAGE_HEADER_FORMAT, raw[:IMAGE_HEADER_SIZE])
    body = raw[IMAGE_HEADER_SIZE:]
    if y_size < 0 or u_size < 0 or y_size + u_size > len(body):
        raise ValueError("Image plane sizes exceed payload")

    y_plane = body[:y_size]
    u_plane = body[y_size:y_size + u_size]
    v_plane = body[y_size + u_size:]
    return RawImage(width, height, ImageFormat.YUV_420_888, (y_plane, u_plane, v_plane))
