import socket
import time

import pytest

from ar_stream.muxer import DataMuxer


@pytest.fixture
def idle_muxer():
    """A running muxer whose sender sleeps long enough for tests to drain the queue."""
    muxer = DataMuxer(idle_sleep=10.0)
    assert muxer.start("127.0.0.1", 9)
    time.sleep(0.1)  # let the sender reach its idle wait
    yield muxer
    muxer.stop()


@pytest.fixture
def udp_listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()
