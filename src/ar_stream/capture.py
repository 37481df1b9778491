"""Per-tick capture loop that pulls observations and feeds the muxer.

Each tick builds one immutable :class:`Observation` from the AR/camera
source, reduces depth, serializes whatever is present and queues the
payloads. A failing tick is logged and followed by a pause; it never ends
the loop.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from .depth import DEFAULT_DENSE_POINTS, DEFAULT_SPARSE_POINTS, DepthReducer, points_to_bytes
from .muxer import DataMuxer
from .observation import Observation
from .serializer import FrameSerializer
from .source import ObservationSource, snapshot

logger = logging.getLogger(__name__)

TARGET_FPS = 60
ERROR_BACKOFF = 1.0
POINT_CLOUD_MODES = ("sparse", "dense", "off")


class CaptureLoop:
    """Drives the capture-to-wire pipeline at a fixed cadence.

    Parameters
    ----------
    source : ObservationSource
        AR/camera collaborator supplying pose, depth, image and planes.
    muxer : DataMuxer
        Transport the encoded payloads are queued on.
    point_cloud_mode : str
        ``"sparse"`` sends the source's own point cloud, ``"dense"`` samples
        the downsampled depth map, ``"off"`` sends none.
    max_points : int or None
        Point cap; defaults to 1000 (sparse) or 10000 (dense).
    fps : float
        Target tick rate. The delay between ticks is fixed, not a deadline.
    """

    def __init__(
        self,
        source: ObservationSource,
        muxer: DataMuxer,
        reducer: Optional[DepthReducer] = None,
        serializer: Optional[FrameSerializer] = None,
        point_cloud_mode: str = "sparse",
        max_points: Optional[int] = None,
        fps: float = TARGET_FPS,
        error_backoff: float = ERROR_BACKOFF,
    ):
        if point_cloud_mode not in POINT_CLOUD_MODES:
            raise ValueError(f"Unknown point cloud mode: {point_cloud_mode!r}")
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")

        self._source = source
        self._muxer = muxer
        self._reducer = reducer or DepthReducer()
        self._serializer = serializer or FrameSerializer()
        self._point_cloud_mode = point_cloud_mode
        if max_points is None:
            max_points = DEFAULT_DENSE_POINTS if point_cloud_mode == "dense" else DEFAULT_SPARSE_POINTS
        self._max_points = max_points
        self._interval = 1.0 / fps
        self._error_backoff = error_backoff

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ticks = 0
        self._errors = 0
        self._start_time = time.monotonic()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self):
        """Run the loop on a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._start_time = time.monotonic()
        self._thread = threading.Thread(target=self.run, name="ar-stream-capture",
                                        daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        """Let the current tick finish, then end the loop."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None

    def run(self):
        """Loop until :meth:`stop` is called. Runs on the caller's thread."""
        logger.info("Capture loop started (%.0f fps, point cloud: %s)",
                    1.0 / self._interval, self._point_cloud_mode)
        while not self._stop_event.is_set():
            try:
                self.run_once()
                self._stop_event.wait(self._interval)
            except Exception:
                self._errors += 1
                logger.exception("Error in capture tick")
                self._stop_event.wait(self._error_backoff)
        logger.info("Capture loop stopped after %d ticks", self._ticks)

    def run_once(self) -> Optional[Observation]:
        """Process a single tick. Returns the observation, or ``None`` if
        the source had no new frame."""
        if not self._source.update():
            return None

        observation = snapshot(self._source, self._point_cloud_mode == "sparse")
        try:
            self._process(observation)
        finally:
            if observation.image is not None:
                observation.image.close()
        self._ticks += 1
        return observation

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_stats(self) -> Dict[str, Any]:
        elapsed = time.monotonic() - self._start_time
        return {
            "ticks": self._ticks,
            "errors": self._errors,
            "fps": self._ticks / elapsed if elapsed > 0 else 0.0,
            "point_cloud_mode": self._point_cloud_mode,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _process(self, obs: Observation):
        serializer = self._serializer

        depth_bytes = None
        depth_info: Dict[str, Any] = {}
        reduced = None
        if obs.depth is not None:
            reduced = self._reducer.reduce(obs.depth)
            depth_bytes = reduced.to_bytes()
            depth_info = reduced.metadata()
        else:
            logger.debug("No depth map this tick")

        points = None
        if self._point_cloud_mode == "sparse":
            points = self._reducer.sparse_points(obs.point_cloud, self._max_points)
        elif self._point_cloud_mode == "dense" and reduced is not None:
            points = self._reducer.dense_points(reduced, self._max_points)

        pose_bytes = serializer.encode_pose(obs.pose, obs.timestamp_ms) if obs.pose else None
        metadata = serializer.encode_metadata(
            obs.pose, depth_info, obs.tracking_state, obs.plane_count,
            obs.timestamp_ms, planes=obs.planes)

        self._muxer.send_ar_data(
            camera=serializer.encode_image(obs.image),
            depth=depth_bytes,
            pose=pose_bytes,
            point_cloud=points_to_bytes(points) if points is not None and len(points) else None,
            metadata=metadata,
        )
