"""Observation sources: mock generator and the ZMQ bridge.

The ZMQ tests run a PUSH sender thread in-process, like an external
tracker would.
"""

import json
import threading
import time

import numpy as np
import pytest
import zmq

from ar_stream.depth import DepthMap
from ar_stream.observation import Observation
from ar_stream.source import (
    MockObservationSource, ZmqObservationSource, pack_observation, snapshot,
    unpack_observation,
)

ZMQ_ENDPOINT = "tcp://127.0.0.1:5561"


def test_mock_source_produces_full_observation():
    source = MockObservationSource(width=32, height=16, depth_width=40, depth_height=20)
    assert source.update()
    obs = snapshot(source)

    assert obs.pose is not None
    assert obs.depth.depth.shape == (20, 40)
    assert (obs.depth.depth[:, ::7] == 0).all()
    assert len(obs.image.planes[0]) == 32 * 16
    assert len(obs.image.planes[1]) == 16 * 8
    assert obs.point_cloud.shape == (500, 4)
    assert obs.plane_count == 1

    obs.image.close()
    obs.image.close()
    assert source.released_images == 1


def test_mock_source_can_omit_streams():
    source = MockObservationSource(with_depth=False, with_camera=False,
                                   with_planes=False, point_count=0)
    source.update()
    obs = snapshot(source)
    assert obs.depth is None
    assert obs.image is None
    assert obs.planes is None
    assert obs.point_cloud is None


def test_pack_unpack_observation():
    source = MockObservationSource(width=16, height=8, depth_width=12, depth_height=6,
                                   point_count=10)
    source.update()
    obs = snapshot(source)

    restored = unpack_observation(pack_observation(obs))

    assert restored.timestamp_ms == obs.timestamp_ms
    assert restored.pose.translation == pytest.approx(obs.pose.translation)
    assert restored.tracking_state is obs.tracking_state
    assert restored.planes == obs.planes
    np.testing.assert_array_equal(restored.depth.depth, obs.depth.depth)
    np.testing.assert_array_equal(restored.depth.confidence, obs.depth.confidence)
    assert restored.image.planes == obs.image.planes
    np.testing.assert_array_equal(restored.point_cloud, obs.point_cloud)


def test_unpack_rejects_missing_blobs():
    header = {"timestamp_ms": 1, "depth": {"width": 2, "height": 2, "has_confidence": False}}
    with pytest.raises(ValueError):
        unpack_observation([json.dumps(header).encode()])
    with pytest.raises(ValueError):
        unpack_observation([b"{not json"])
    with pytest.raises(ValueError):
        unpack_observation([])


def sender_thread(endpoint, messages, ready):
    """Simulates the external tracker: pushes observations over ZMQ."""
    ctx = zmq.Context()
    socket = ctx.socket(zmq.PUSH)
    socket.bind(endpoint)
    ready.set()
    time.sleep(0.3)  # let the consumer connect

    for frames in messages:
        socket.send_multipart(frames)
        time.sleep(0.05)

    time.sleep(0.5)  # let the consumer drain
    socket.close(linger=0)
    ctx.term()


def wait_for_update(source, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if source.update():
            return True
    return False


def test_zmq_source_receives_observations():
    mock = MockObservationSource(width=16, height=8, depth_width=8, depth_height=8)
    mock.update()
    obs = snapshot(mock)

    ready = threading.Event()
    t = threading.Thread(target=sender_thread,
                         args=(ZMQ_ENDPOINT, [pack_observation(obs)], ready))
    t.start()
    ready.wait(2.0)

    source = ZmqObservationSource(ZMQ_ENDPOINT, poll_timeout_ms=100)
    try:
        assert wait_for_update(source)
        assert source.current_tracking_state() is obs.tracking_state
        assert source.current_pose().translation == pytest.approx(obs.pose.translation)
        np.testing.assert_array_equal(source.acquire_depth_map().depth, obs.depth.depth)
        assert source.acquire_camera_image().planes == obs.image.planes
        assert source.get_stats()["received"] == 1
    finally:
        t.join(timeout=5)
        source.close()


def test_zmq_source_skips_malformed_messages():
    good = pack_observation(snapshot(MockObservationSource(point_count=0,
                                                           with_camera=False)))
    ready = threading.Event()
    t = threading.Thread(target=sender_thread,
                         args=("tcp://127.0.0.1:5562", [[b"garbage"], good], ready))
    t.start()
    ready.wait(2.0)

    source = ZmqObservationSource("tcp://127.0.0.1:5562", poll_timeout_ms=100)
    try:
        results = []
        deadline = time.monotonic() + 3.0
        while not any(results) and time.monotonic() < deadline:
            results.append(source.update())
        assert any(results)
        assert source.acquire_depth_map() is not None
    finally:
        t.join(timeout=5)
        source.close()


def test_observations_with_depth_compare():
    depth = DepthMap(np.full((2, 2), 500, dtype=np.uint16))
    cloud = np.zeros((3, 4), dtype=np.float32)
    first = Observation(timestamp_ms=5, depth=depth, point_cloud=cloud)
    second = Observation(timestamp_ms=5, depth=depth, point_cloud=cloud + 1)

    assert first == second
    assert first != Observation(timestamp_ms=5, depth=DepthMap(depth.depth.copy()))
