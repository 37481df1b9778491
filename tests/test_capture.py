"""Capture loop: per-tick packet production and failure containment."""

import json
import time

import numpy as np
import pytest

from ar_stream.capture import CaptureLoop
from ar_stream.depth import DepthMap
from ar_stream.observation import ImageFormat, Pose, RawImage, TrackingState
from ar_stream.protocol import StreamType, parse_packet
from ar_stream.serializer import FrameSerializer
from ar_stream.source import MockObservationSource, ObservationSource


class FakeSource(ObservationSource):
    def __init__(self, depth=True, image=None, pose=True, point_cloud=None):
        self.depth = depth
        self.image = image
        self.pose = pose
        self.point_cloud = point_cloud
        self.updates = 0

    def update(self):
        self.updates += 1
        return True

    def current_pose(self):
        return Pose((1.0, 2.0, 3.0), (0.0, 0.0, 0.0, 1.0)) if self.pose else None

    def current_tracking_state(self):
        return TrackingState.TRACKING

    def acquire_depth_map(self):
        if not self.depth:
            return None
        return DepthMap(np.full((120, 160), 1500, dtype=np.uint16))

    def acquire_camera_image(self):
        return self.image

    def acquire_point_cloud(self):
        return self.point_cloud


def drained(muxer):
    return [parse_packet(p) for p in muxer.drain()]


def test_tick_without_camera_image(idle_muxer):
    loop = CaptureLoop(FakeSource(depth=True, image=None), idle_muxer)
    assert loop.run_once() is not None

    packets = drained(idle_muxer)
    types = {p.stream_type for p in packets}
    assert types == {StreamType.DEPTH, StreamType.POSE, StreamType.METADATA}

    depth = next(p for p in packets if p.stream_type is StreamType.DEPTH)
    assert len(depth.payload) == 40 * 30 * 2

    metadata = json.loads(next(p for p in packets if p.stream_type is StreamType.METADATA).payload)
    assert metadata["depth"]["width"] == 40
    assert metadata["depth"]["height"] == 30
    assert metadata["tracking_state"] == "TRACKING"


def test_tick_with_nothing_still_sends_metadata(idle_muxer):
    loop = CaptureLoop(FakeSource(depth=False, pose=False), idle_muxer)
    loop.run_once()

    packets = drained(idle_muxer)
    assert [p.stream_type for p in packets] == [StreamType.METADATA]
    assert json.loads(packets[0].payload)["depth"] == {}


def test_camera_image_is_sent_and_released(idle_muxer):
    source = MockObservationSource(width=64, height=48, depth_width=32, depth_height=24)
    loop = CaptureLoop(source, idle_muxer)
    obs = loop.run_once()

    types = [p.stream_type for p in drained(idle_muxer)]
    assert types == [StreamType.CAMERA, StreamType.DEPTH, StreamType.POSE,
                     StreamType.POINT_CLOUD, StreamType.METADATA]
    assert obs.image.closed
    assert source.released_images == 1


def test_unsupported_image_is_skipped(idle_muxer):
    image = RawImage(2, 2, ImageFormat.JPEG, (b"\xff\xd8",))
    loop = CaptureLoop(FakeSource(image=image), idle_muxer)
    loop.run_once()

    types = {p.stream_type for p in drained(idle_muxer)}
    assert StreamType.CAMERA not in types
    assert StreamType.METADATA in types
    assert image.closed


class ExplodingSerializer(FrameSerializer):
    def encode_image(self, image):
        raise RuntimeError("encoder crashed")


def test_image_released_when_serialization_fails(idle_muxer):
    image = RawImage(2, 2, ImageFormat.YUV_420_888, (bytes(4), bytes(1), bytes(1)))
    loop = CaptureLoop(FakeSource(image=image), idle_muxer, serializer=ExplodingSerializer())

    with pytest.raises(RuntimeError):
        loop.run_once()
    assert image.closed


def test_sparse_point_cloud_is_capped(idle_muxer):
    cloud = np.ones((50, 4), dtype=np.float32)
    loop = CaptureLoop(FakeSource(point_cloud=cloud), idle_muxer, max_points=10)
    loop.run_once()

    cloud_packets = [p for p in drained(idle_muxer) if p.stream_type is StreamType.POINT_CLOUD]
    assert len(cloud_packets) == 1
    assert len(cloud_packets[0].payload) == 10 * 16


def test_dense_point_cloud_from_depth(idle_muxer):
    loop = CaptureLoop(FakeSource(), idle_muxer, point_cloud_mode="dense", max_points=200)
    loop.run_once()

    cloud = next(p for p in drained(idle_muxer) if p.stream_type is StreamType.POINT_CLOUD)
    assert 0 < len(cloud.payload) <= 200 * 16
    assert len(cloud.payload) % 16 == 0


def test_point_cloud_off(idle_muxer):
    cloud = np.ones((5, 4), dtype=np.float32)
    loop = CaptureLoop(FakeSource(point_cloud=cloud), idle_muxer, point_cloud_mode="off")
    loop.run_once()
    types = {p.stream_type for p in drained(idle_muxer)}
    assert StreamType.POINT_CLOUD not in types


def test_no_new_frame_sends_nothing(idle_muxer):
    class IdleSource(ObservationSource):
        def update(self):
            return False

    loop = CaptureLoop(IdleSource(), idle_muxer)
    assert loop.run_once() is None
    assert idle_muxer.drain() == []


def test_rejects_unknown_point_cloud_mode(idle_muxer):
    with pytest.raises(ValueError):
        CaptureLoop(FakeSource(), idle_muxer, point_cloud_mode="voxels")


class FlakySource(FakeSource):
    """Raises on the first update, then behaves."""

    def update(self):
        self.updates += 1
        if self.updates == 1:
            raise RuntimeError("camera hiccup")
        return True


def test_loop_survives_failed_tick(idle_muxer):
    source = FlakySource()
    loop = CaptureLoop(source, idle_muxer, fps=200, error_backoff=0.05)
    loop.start()
    try:
        deadline = time.monotonic() + 2.0
        while loop.get_stats()["ticks"] < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        loop.stop()

    stats = loop.get_stats()
    assert stats["errors"] == 1
    assert stats["ticks"] >= 3
    assert not loop.is_running


def test_stop_lets_loop_exit(idle_muxer):
    loop = CaptureLoop(FakeSource(), idle_muxer, fps=100)
    loop.start()
    assert loop.is_running
    loop.stop()
    assert not loop.is_running
