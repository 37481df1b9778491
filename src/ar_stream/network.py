"""Network telemetry reported alongside the stream.

These values are passive: they are shown in stats and never change how
the transport behaves.
"""

from enum import Enum


class ConnectionState(Enum):
    UNKNOWN = "UNKNOWN"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"


class NetworkType(Enum):
    NONE = "NONE"
    WIFI = "WIFI"
    CELLULAR = "CELLULAR"
    ETHERNET = "ETHERNET"
    BLUETOOTH = "BLUETOOTH"
    OTHER = "OTHER"


class ConnectionQuality(Enum):
    UNKNOWN = "UNKNOWN"
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    MODERATE = "MODERATE"
    POOR = "POOR"
    NO_INTERNET = "NO_INTERNET"


def estimate_quality(network_type: NetworkType, upstream_kbps: int,
                     has_internet: bool = True) -> ConnectionQuality:
    if network_type is NetworkType.NONE:
        return ConnectionQuality.UNKNOWN
    if not has_internet:
        return ConnectionQuality.NO_INTERNET
    if network_type is NetworkType.WIFI and upstream_kbps > 20000:
        return ConnectionQuality.EXCELLENT
    if network_type is NetworkType.WIFI or (
            network_type is NetworkType.CELLULAR and upstream_kbps > 2000):
        return ConnectionQuality.GOOD
    if upstream_kbps > 500:
        return ConnectionQuality.MODERATE
    return ConnectionQuality.POOR
