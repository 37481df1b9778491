"""Per-tick observation values handed from the AR collaborators to the core.

One :class:`Observation` is built per capture tick and never mutated;
absent fields are ``None``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .depth import DepthMap


class TrackingState(Enum):
    TRACKING = "TRACKING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


class PlaneType(Enum):
    HORIZONTAL_UPWARD_FACING = "HORIZONTAL_UPWARD_FACING"
    HORIZONTAL_DOWNWARD_FACING = "HORIZONTAL_DOWNWARD_FACING"
    VERTICAL = "VERTICAL"


class ImageFormat(Enum):
    YUV_420_888 = "YUV_420_888"
    RGBA_8888 = "RGBA_8888"
    JPEG = "JPEG"
    DEPTH16 = "DEPTH16"


@dataclass(frozen=True)
class Pose:
    """Camera pose: translation in metres, unit quaternion scalar-last."""

    translation: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rotation: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)

    @property
    def tx(self) -> float:
        return self.translation[0]

    @property
    def ty(self) -> float:
        return self.translation[1]

    @property
    def tz(self) -> float:
        return self.translation[2]


@dataclass(frozen=True)
class Plane:
    plane_id: int
    plane_type: PlaneType
    tracking_state: TrackingState
    center: Tuple[float, float, float]
    extent_x: float
    extent_z: float
    # flat x0, z0, x1, z1, ...
    polygon: Optional[Sequence[float]] = None


class RawImage:
    """A camera image buffer borrowed from the capture subsystem.

    The owner must call :meth:`close` once the image is no longer needed.
    """

    __slots__ = ("width", "height", "format", "planes", "timestamp_ns",
                 "_release", "_closed")

    def __init__(self, width: int, height: int, format: ImageFormat,
                 planes: Sequence[bytes], timestamp_ns: int = 0,
                 release: Optional[Callable[[], None]] = None):
        self.width = width
        self.height = height
        self.format = format
        self.planes = tuple(planes)
        self.timestamp_ns = timestamp_ns
        self._release = release
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._release is not None:
            self._release()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@dataclass(frozen=True)
class Observation:
    timestamp_ms: int
    pose: Optional[Pose] = None
    tracking_state: Optional[TrackingState] = None
    planes: Optional[Tuple[Plane, ...]] = None
    depth: Optional[DepthMap] = None
    image: Optional[RawImage] = None
    # (N, 4) float32 rows of x, y, z, confidence
    point_cloud: Optional[np.ndarray] = field(default=None, compare=False)

    @property
    def plane_count(self) -> int:
        return len(self.planes) if self.planes else 0
