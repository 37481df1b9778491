"""Destination validation, config checks and network quality estimates."""

import pytest

from ar_stream.config import StreamConfig, validate_destination
from ar_stream.network import ConnectionQuality, NetworkType, estimate_quality


@pytest.mark.parametrize("host,port", [
    ("127.0.0.1", 9000),
    ("192.168.1.20", 1),
    ("10.0.0.255", 65535),
])
def test_valid_destinations(host, port):
    validate_destination(host, port)


@pytest.mark.parametrize("host,port", [
    ("localhost", 9000),
    ("256.1.1.1", 9000),
    ("1.2.3", 9000),
    ("", 9000),
    ("127.0.0.1", 0),
    ("127.0.0.1", 65536),
    ("127.0.0.1", "9000"),
])
def test_invalid_destinations(host, port):
    with pytest.raises(ValueError):
        validate_destination(host, port)


def test_config_validate():
    StreamConfig().validate()
    with pytest.raises(ValueError):
        StreamConfig(fps=0).validate()
    with pytest.raises(ValueError):
        StreamConfig(downsample_factor=0).validate()
    with pytest.raises(ValueError):
        StreamConfig(max_queue=0).validate()


@pytest.mark.parametrize("network_type,kbps,has_internet,expected", [
    (NetworkType.WIFI, 50000, True, ConnectionQuality.EXCELLENT),
    (NetworkType.WIFI, 1000, True, ConnectionQuality.GOOD),
    (NetworkType.CELLULAR, 5000, True, ConnectionQuality.GOOD),
    (NetworkType.CELLULAR, 1000, True, ConnectionQuality.MODERATE),
    (NetworkType.ETHERNET, 100, True, ConnectionQuality.POOR),
    (NetworkType.WIFI, 50000, False, ConnectionQuality.NO_INTERNET),
    (NetworkType.NONE, 0, False, ConnectionQuality.UNKNOWN),
])
def test_estimate_quality(network_type, kbps, has_internet, expected):
    assert estimate_quality(network_type, kbps, has_internet) is expected
