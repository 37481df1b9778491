"""Depth map reduction and point-cloud extraction.

Depth samples are 16-bit millimetres with 0 meaning "no return". Zero
samples never take part in an average, so holes do not pull the
downsampled depth towards the camera.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import numpy as np

from .protocol import now_ms

logger = logging.getLogger(__name__)

DEFAULT_DOWNSAMPLE_FACTOR = 4
DEFAULT_SPARSE_POINTS = 1000
DEFAULT_DENSE_POINTS = 10000
DEPTH_FORMAT = "depth16"

# Wire dtypes for binary payloads
DEPTH_DTYPE = np.dtype("<u2")
POINT_DTYPE = np.dtype("<f4")

_EMPTY_POINTS = np.zeros((0, 4), dtype=np.float32)


@dataclass(frozen=True, eq=False)
class DepthMap:
    """Full resolution depth grid for one tick.

    ``depth`` is ``(H, W)`` uint16, ``confidence`` an optional ``(H, W)``
    uint8 grid of the same shape.
    """

    depth: np.ndarray
    confidence: Optional[np.ndarray] = None
    timestamp_ms: int = 0

    def __post_init__(self):
        depth = np.asarray(self.depth)
        if depth.ndim != 2:
            raise ValueError(f"Depth map must be 2-D, got shape {depth.shape}")
        object.__setattr__(self, "depth", depth.astype(np.uint16, copy=False))

        if self.confidence is not None:
            confidence = np.asarray(self.confidence)
            if confidence.shape != depth.shape:
                raise ValueError(
                    f"Confidence shape {confidence.shape} does not match "
                    f"depth shape {depth.shape}")
            object.__setattr__(self, "confidence",
                               confidence.astype(np.uint8, copy=False))

    @property
    def width(self) -> int:
        return self.depth.shape[1]

    @property
    def height(self) -> int:
        return self.depth.shape[0]

    @classmethod
    def from_bytes(cls, data: bytes, width: int, height: int,
                   confidence: Optional[bytes] = None,
                   timestamp_ms: int = 0) -> "DepthMap":
        depth = depth_from_bytes(data, width, height)
        conf = None
        if confidence:
            conf = np.frombuffer(confidence, dtype=np.uint8).reshape((height, width))
        return cls(depth, conf, timestamp_ms)


@dataclass(frozen=True, eq=False)
class DownsampledDepthMap:
    """Block-averaged depth grid of size ``(H // factor, W // factor)``."""

    depth: np.ndarray
    factor: int
    source_width: int
    source_height: int
    timestamp_ms: int = 0

    @property
    def width(self) -> int:
        return self.depth.shape[1]

    @property
    def height(self) -> int:
        return self.depth.shape[0]

    def metadata(self) -> Dict[str, Any]:
        return {
            "original_width": self.source_width,
            "original_height": self.source_height,
            "width": self.width,
            "height": self.height,
            "downsample_factor": self.factor,
            "format": DEPTH_FORMAT,
            "timestamp": self.timestamp_ms,
        }

    def to_bytes(self) -> bytes:
        return np.ascontiguousarray(self.depth, dtype=DEPTH_DTYPE).tobytes()


class DepthReducer:
    """Downsamples depth maps and samples point clouds from them.

    Parameters
    ----------
    factor : int
        Default block size used by :meth:`reduce`.
    """

    def __init__(self, factor: int = DEFAULT_DOWNSAMPLE_FACTOR):
        if factor < 1:
            raise ValueError(f"Downsample factor must be >= 1, got {factor}")
        self.factor = factor

    def reduce(self, depth_map: DepthMap,
               factor: Optional[int] = None) -> DownsampledDepthMap:
        """Average each ``factor x factor`` block over its nonzero samples.

        Remainder rows and columns at the right/bottom edge are dropped.
        A block without any valid sample yields 0.
        """
        factor = self.factor if factor is None else factor
        if factor < 1:
            raise ValueError(f"Downsample factor must be >= 1, got {factor}")

        src = depth_map.depth
        height, width = src.shape
        out_h, out_w = height // factor, width // factor

        if factor == 1:
            reduced = src.copy()
        else:
            blocks = src[:out_h * factor, :out_w * factor].reshape(
                out_h, factor, out_w, factor)
            sums = blocks.sum(axis=(1, 3), dtype=np.uint64)
            counts = (blocks > 0).sum(axis=(1, 3), dtype=np.uint64)
            means = np.zeros_like(sums)
            np.floor_divide(sums, counts, out=means, where=counts > 0)
            reduced = means.astype(np.uint16)

        logger.debug("Reduced depth %dx%d -> %dx%d (factor %d)",
                     width, height, out_w, out_h, factor)

        return DownsampledDepthMap(
            depth=reduced,
            factor=factor,
            source_width=width,
            source_height=height,
            timestamp_ms=depth_map.timestamp_ms or now_ms(),
        )

    @staticmethod
    def sparse_points(source, max_points: int = DEFAULT_SPARSE_POINTS) -> np.ndarray:
        """First *max_points* ``(x, y, z, confidence)`` samples of *source*.

        *source* is an externally supplied point cloud, either ``(N, 4)`` or
        a flat float sequence. Points are truncated in native order, never
        resampled. ``None`` or an empty cloud gives an empty result.
        """
        if max_points < 0:
            raise ValueError(f"max_points must be >= 0, got {max_points}")
        if source is None:
            return _EMPTY_POINTS.copy()

        flat = np.asarray(source, dtype=np.float32).ravel()
        count = min(flat.size // 4, max_points)
        if count == 0:
            logger.debug("No point cloud samples available")
            return _EMPTY_POINTS.copy()

        return flat[:count * 4].reshape(count, 4).copy()

    @staticmethod
    def dense_points(depth_map: Union[DepthMap, DownsampledDepthMap, np.ndarray],
                     max_points: int = DEFAULT_DENSE_POINTS) -> np.ndarray:
        """Sample up to *max_points* points on a stride grid over *depth_map*.

        Strides keep the map's aspect ratio so the visited grid holds about
        *max_points* cells. Zero depths are skipped, pixels are projected
        with a simplified normalised camera model (no intrinsics).
        """
        if max_points < 0:
            raise ValueError(f"max_points must be >= 0, got {max_points}")

        confidence = None
        if isinstance(depth_map, (DepthMap, DownsampledDepthMap)):
            depth = depth_map.depth
            confidence = getattr(depth_map, "confidence", None)
        else:
            depth = np.asarray(depth_map)

        height, width = depth.shape
        if max_points == 0 or width == 0 or height == 0:
            return _EMPTY_POINTS.copy()

        aspect = width / height
        stride_x = max(1, int(width / math.sqrt(max_points / aspect)))
        stride_y = max(1, int(height / math.sqrt(max_points * aspect)))

        grid = depth[::stride_y, ::stride_x]
        rows, cols = np.nonzero(grid)  # row-major walk
        rows = rows[:max_points]
        cols = cols[:max_points]

        px = cols * stride_x
        py = rows * stride_y
        z = grid[rows, cols].astype(np.float32) / np.float32(1000.0)

        points = np.empty((len(z), 4), dtype=np.float32)
        points[:, 0] = (px / width * 2 - 1) * z
        points[:, 1] = (py / height * 2 - 1) * z
        points[:, 2] = z
        if confidence is not None:
            points[:, 3] = confidence[py, px] / 255.0
        else:
            points[:, 3] = 1.0

        logger.debug("Dense point cloud: %d points (stride %dx%d)",
                     len(points), stride_x, stride_y)
        return points


def depth_from_bytes(data: bytes, width: int, height: int) -> np.ndarray:
    return np.frombuffer(data, dtype=DEPTH_DTYPE).reshape((height, width)).astype(np.uint16)


def points_to_bytes(points: np.ndarray) -> bytes:
    return np.ascontiguousarray(points, dtype=POINT_DTYPE).tobytes()


def points_from_bytes(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype=POINT_DTYPE).reshape(-1, 4).astype(np.float32)
