"""AR/camera observation sources.

The capture loop talks to its AR tracking collaborator through the
:class:`ObservationSource` interface. Two implementations ship here:

* :class:`MockObservationSource`: synthetic data, no hardware needed.
* :class:`ZmqObservationSource`: observations pushed by an external
  tracker process over ZeroMQ (PUSH/PULL).

ZMQ message (multipart)::

    [0]  JSON header: timestamp_ms, pose, tracking_state, planes,
         depth {width, height, has_confidence}, image {width, height,
         format, planes}, point_count
    [1:] binary blobs in order: depth (<u2), confidence (u8),
         image planes, point cloud (<f4 x 4)

Usage:
    ar-stream-mock --zmq-endpoint tcp://127.0.0.1:5555 --fps 30
"""

import argparse
import json
import logging
import math
import signal
import time
from typing import List, Optional, Sequence

import numpy as np
import zmq

from .config import setup_logging
from .depth import DEPTH_DTYPE, DepthMap, points_from_bytes, points_to_bytes
from .observation import (
    ImageFormat, Observation, Plane, PlaneType, Pose, RawImage, TrackingState,
)
from .protocol import DEFAULT_ZMQ_ENDPOINT, now_ms
from .serializer import plane_record, planes_from_records

logger = logging.getLogger(__name__)


class ObservationSource:
    """Per-tick accessors of the AR tracking and camera subsystems.

    :meth:`update` advances to the next frame and may block briefly; it
    returns ``False`` when no new frame arrived. Every accessor may return
    ``None``. Images from :meth:`acquire_camera_image` must be closed by
    the caller.
    """

    def update(self) -> bool:
        return True

    def current_pose(self) -> Optional[Pose]:
        return None

    def current_tracking_state(self) -> Optional[TrackingState]:
        return None

    def current_planes(self) -> Optional[Sequence[Plane]]:
        return None

    def acquire_depth_map(self) -> Optional[DepthMap]:
        return None

    def acquire_camera_image(self) -> Optional[RawImage]:
        return None

    def acquire_point_cloud(self) -> Optional[np.ndarray]:
        return None

    def close(self):
        pass


def snapshot(source: ObservationSource, with_point_cloud: bool = True) -> Observation:
    """Build one immutable observation from *source*'s current frame."""
    planes = source.current_planes()
    return Observation(
        timestamp_ms=now_ms(),
        pose=source.current_pose(),
        tracking_state=source.current_tracking_state(),
        planes=tuple(planes) if planes is not None else None,
        depth=source.acquire_depth_map(),
        point_cloud=source.acquire_point_cloud() if with_point_cloud else None,
        image=source.acquire_camera_image(),
    )


# ----------------------------------------------------------------------
# Mock source
# ----------------------------------------------------------------------

class MockObservationSource(ObservationSource):
    """Generates a moving synthetic scene for testing without a device.

    Depth is a horizontal gradient (0.5 m to 4 m) that drifts every frame,
    with every seventh column left empty. The camera image is a moving
    luma gradient with neutral chroma.
    """

    def __init__(self, width: int = 640, height: int = 480,
                 depth_width: int = 160, depth_height: int = 120,
                 fps: Optional[float] = None, with_depth: bool = True,
                 with_camera: bool = True, with_planes: bool = True,
                 point_count: int = 500):
        self.width = width
        self.height = height
        self.depth_width = depth_width
        self.depth_height = depth_height
        self.with_depth = with_depth
        self.with_camera = with_camera
        self.with_planes = with_planes
        self.point_count = point_count
        self.frame_count = 0
        self.released_images = 0

        self._frame_interval = 1.0 / fps if fps else 0.0
        self._last_update = 0.0

    def update(self) -> bool:
        if self._frame_interval:
            sleep_time = self._frame_interval - (time.monotonic() - self._last_update)
            if sleep_time > 0:
                time.sleep(sleep_time)
            self._last_update = time.monotonic()
        self.frame_count += 1
        return True

    @property
    def _phase(self) -> float:
        return (self.frame_count % 60) / 60.0

    def current_pose(self) -> Optional[Pose]:
        angle = self._phase * 2 * math.pi
        return Pose(
            translation=(0.5 * math.cos(angle), 1.5, 0.5 * math.sin(angle)),
            rotation=(0.0, math.sin(angle / 2), 0.0, math.cos(angle / 2)),
        )

    def current_tracking_state(self) -> Optional[TrackingState]:
        return TrackingState.TRACKING

    def current_planes(self) -> Optional[Sequence[Plane]]:
        if not self.with_planes:
            return None
        return [Plane(
            plane_id=1,
            plane_type=PlaneType.HORIZONTAL_UPWARD_FACING,
            tracking_state=TrackingState.TRACKING,
            center=(0.0, 0.0, -1.0),
            extent_x=2.0,
            extent_z=1.5,
            polygon=(-1.0, -0.75, 1.0, -0.75, 1.0, 0.75, -1.0, 0.75),
        )]

    def acquire_depth_map(self) -> Optional[DepthMap]:
        if not self.with_depth:
            return None
        x = np.linspace(500, 4000, self.depth_width, dtype=np.float32)
        x = np.roll(x, int(self._phase * self.depth_width))
        depth = np.tile(x, (self.depth_height, 1)).astype(np.uint16)
        depth[:, ::7] = 0
        confidence = np.full(depth.shape, 255, dtype=np.uint8)
        return DepthMap(depth, confidence, now_ms())

    def acquire_camera_image(self) -> Optional[RawImage]:
        if not self.with_camera:
            return None
        x = np.linspace(0, 255, self.width, dtype=np.float32)
        luma = np.tile(np.roll(x, int(self._phase * self.width)), (self.height, 1))
        y_plane = luma.astype(np.uint8).tobytes()
        chroma = bytes([128]) * ((self.width // 2) * (self.height // 2))
        return RawImage(self.width, self.height, ImageFormat.YUV_420_888,
                        (y_plane, chroma, chroma), int(time.monotonic() * 1e9),
                        release=self._on_release)

    def acquire_point_cloud(self) -> Optional[np.ndarray]:
        if self.point_count <= 0:
            return None
        rng = np.random.default_rng(self.frame_count)
        points = rng.uniform(-1.0, 1.0, size=(self.point_count, 4)).astype(np.float32)
        points[:, 2] = np.abs(points[:, 2]) + 0.5
        points[:, 3] = np.abs(points[:, 3])
        return points

    def _on_release(self):
        self.released_images += 1


# ----------------------------------------------------------------------
# ZMQ message format
# ----------------------------------------------------------------------

def pack_observation(obs: Observation) -> List[bytes]:
    """Encode *obs* as a multipart ZMQ message."""
    header = {
        "timestamp_ms": obs.timestamp_ms,
        "pose": None,
        "tracking_state": obs.tracking_state.value if obs.tracking_state else None,
        "planes": [plane_record(p) for p in obs.planes] if obs.planes is not None else None,
        "depth": None,
        "image": None,
        "point_count": None,
    }
    blobs: List[bytes] = []

    if obs.pose is not None:
        header["pose"] = {
            "translation": [float(v) for v in obs.pose.translation],
            "rotation": [float(v) for v in obs.pose.rotation],
        }

    if obs.depth is not None:
        header["depth"] = {
            "width": obs.depth.width,
            "height": obs.depth.height,
            "has_confidence": obs.depth.confidence is not None,
        }
        blobs.append(np.ascontiguousarray(obs.depth.depth, dtype=DEPTH_DTYPE).tobytes())
        if obs.depth.confidence is not None:
            blobs.append(np.ascontiguousarray(obs.depth.confidence).tobytes())

    if obs.image is not None:
        header["image"] = {
            "width": obs.image.width,
            "height": obs.image.height,
            "format": obs.image.format.value,
            "planes": len(obs.image.planes),
        }
        blobs.extend(bytes(p) for p in obs.image.planes)

    if obs.point_cloud is not None:
        header["point_count"] = len(obs.point_cloud)
        blobs.append(points_to_bytes(obs.point_cloud))

    return [json.dumps(header).encode("utf-8")] + blobs


def unpack_observation(frames: Sequence[bytes]) -> Observation:
    """Decode a multipart message from :func:`pack_observation`.

    Raises ValueError on malformed messages.
    """
    if not frames:
        raise ValueError("Empty message")
    try:
        header = json.loads(frames[0])
    except ValueError as e:
        raise ValueError(f"Bad header: {e}") from e
    if not isinstance(header, dict):
        raise ValueError("Header is not a JSON object")

    blobs = list(frames[1:])

    def take() -> bytes:
        if not blobs:
            raise ValueError("Message is missing a binary part")
        return bytes(blobs.pop(0))

    try:
        pose = None
        if header.get("pose"):
            pose = Pose(tuple(header["pose"]["translation"]),
                        tuple(header["pose"]["rotation"]))

        tracking_state = None
        if header.get("tracking_state"):
            tracking_state = TrackingState(header["tracking_state"])

        planes = None
        if header.get("planes") is not None:
            planes = tuple(planes_from_records(header["planes"]))

        depth = None
        if header.get("depth"):
            info = header["depth"]
            data = take()
            confidence = take() if info.get("has_confidence") else None
            depth = DepthMap.from_bytes(data, info["width"], info["height"],
                                        confidence, header.get("timestamp_ms", 0))

        image = None
        if header.get("image"):
            info = header["image"]
            image = RawImage(info["width"], info["height"], ImageFormat(info["format"]),
                             [take() for _ in range(info["planes"])])

        point_cloud = None
        if header.get("point_count") is not None:
            point_cloud = points_from_bytes(take())
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed observation: {e}") from e

    return Observation(
        timestamp_ms=header.get("timestamp_ms") or now_ms(),
        pose=pose,
        tracking_state=tracking_state,
        planes=planes,
        depth=depth,
        image=image,
        point_cloud=point_cloud,
    )


# ----------------------------------------------------------------------
# ZMQ source
# ----------------------------------------------------------------------

class ZmqObservationSource(ObservationSource):
    """Receives observations from an external tracker over ZeroMQ.

    :meth:`update` waits up to *poll_timeout_ms* for a message and keeps
    only the newest one if several are queued.

    Usage::

        source = ZmqObservationSource("tcp://127.0.0.1:5555")
        if source.update():
            pose = source.current_pose()
        source.close()
    """

    def __init__(self, zmq_endpoint: str = DEFAULT_ZMQ_ENDPOINT,
                 poll_timeout_ms: int = 100):
        self._endpoint = zmq_endpoint
        self._poll_timeout_ms = poll_timeout_ms
        self._latest: Optional[Observation] = None
        self._received = 0
        self._dropped = 0

        self._ctx = zmq.Context()
        self._socket = self._ctx.socket(zmq.PULL)
        self._socket.connect(zmq_endpoint)
        self._poller = zmq.Poller()
        self._poller.register(self._socket, zmq.POLLIN)
        logger.info("Connected to %s", zmq_endpoint)

    def update(self) -> bool:
        events = dict(self._poller.poll(timeout=self._poll_timeout_ms))
        if self._socket not in events:
            return False

        frames = self._socket.recv_multipart()
        # Skip stale frames
        while True:
            try:
                frames = self._socket.recv_multipart(zmq.NOBLOCK)
                self._dropped += 1
            except zmq.Again:
                break

        try:
            self._latest = unpack_observation(frames)
        except ValueError as e:
            logger.warning("Bad observation message: %s", e)
            self._latest = None
            return False

        self._received += 1
        return True

    def current_pose(self) -> Optional[Pose]:
        return self._latest.pose if self._latest else None

    def current_tracking_state(self) -> Optional[TrackingState]:
        return self._latest.tracking_state if self._latest else None

    def current_planes(self) -> Optional[Sequence[Plane]]:
        return self._latest.planes if self._latest else None

    def acquire_depth_map(self) -> Optional[DepthMap]:
        return self._latest.depth if self._latest else None

    def acquire_camera_image(self) -> Optional[RawImage]:
        return self._latest.image if self._latest else None

    def acquire_point_cloud(self) -> Optional[np.ndarray]:
        return self._latest.point_cloud if self._latest else None

    def get_stats(self):
        return {
            "source": "zmq",
            "zmq_endpoint": self._endpoint,
            "received": self._received,
            "dropped": self._dropped,
        }

    def close(self):
        self._socket.close()
        self._ctx.term()


# ----------------------------------------------------------------------
# Mock publisher (stand-in for the external tracker process)
# ----------------------------------------------------------------------

def run_mock_publisher(zmq_endpoint: str, fps: int, width: int, height: int):
    ctx = zmq.Context()
    socket = ctx.socket(zmq.PUSH)
    socket.setsockopt(zmq.SNDHWM, 2)  # drop old observations if consumer is slow
    socket.bind(zmq_endpoint)
    logger.info("ZMQ bound to %s", zmq_endpoint)
    logger.info("Generating %dx%d observations @ %d FPS", width, height, fps)

    source = MockObservationSource(width=width, height=height, fps=fps)

    shutdown = False

    def handle_signal(sig, frame):
        nonlocal shutdown
        shutdown = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    start_time = time.monotonic()
    sent = 0
    while not shutdown:
        source.update()
        obs = snapshot(source)
        try:
            socket.send_multipart(pack_observation(obs), zmq.NOBLOCK)
            sent += 1
        except zmq.Again:
            pass  # consumer too slow, drop observation
        finally:
            if obs.image is not None:
                obs.image.close()

        if source.frame_count % fps == 0:
            elapsed = time.monotonic() - start_time
            logger.info("frames=%d sent=%d fps=%.1f", source.frame_count, sent,
                        source.frame_count / elapsed if elapsed > 0 else 0)

    logger.info("Done. Sent %d observations.", sent)
    socket.close()
    ctx.term()


def main():
    parser = argparse.ArgumentParser(description="Mock AR tracker publishing over ZMQ")
    parser.add_argument("--zmq-endpoint", default=DEFAULT_ZMQ_ENDPOINT)
    parser.add_argument("--fps", type=int, default=30)
    parser.add_argument("--width", type=int, default=640, help="Camera image width")
    parser.add_argument("--height", type=int, default=480, help="Camera image height")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    setup_logging(args.log_level)
    run_mock_publisher(args.zmq_endpoint, args.fps, args.width, args.height)


if __name__ == "__main__":
    main()
