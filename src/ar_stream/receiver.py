"""Remote consumer that receives AR packets from the UDP stream.

Runs on the viewing machine. Parses each datagram, decodes the payload
by stream type and hands it to an optional callback.

Usage:
    ar-stream-receiver
    ar-stream-receiver --host 0.0.0.0 --port 9000
"""

import argparse
import logging
import signal
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .config import setup_logging
from .depth import depth_from_bytes, points_from_bytes
from .protocol import DEFAULT_PORT, STREAM_NAMES, Packet, StreamType, now_ms, parse_packet
from .serializer import decode_image, decode_metadata, decode_pose

logger = logging.getLogger(__name__)

RECV_BUFFER = 65535

Callback = Callable[[Packet, Any], None]


class PacketReceiver:
    """Bound UDP socket that yields decoded AR packets.

    Depth payloads carry no dimensions of their own; they are decoded with
    the size announced by the most recent metadata packet and are left
    undecoded (``None``) until one has arrived.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = DEFAULT_PORT,
                 timeout: float = 0.1):
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.bind((host, port))
        self._sock.settimeout(timeout)

        self._depth_shape: Optional[tuple] = None
        self._counts: Dict[str, int] = {name: 0 for name in STREAM_NAMES.values()}
        self._bad = 0
        self._latencies: List[float] = []
        self._start_time = time.monotonic()

    @property
    def address(self):
        return self._sock.getsockname()

    def receive(self) -> Optional[Packet]:
        """Next valid packet, or ``None`` on timeout or a malformed datagram."""
        try:
            data, _ = self._sock.recvfrom(RECV_BUFFER)
        except socket.timeout:
            return None

        try:
            packet = parse_packet(data)
        except ValueError as e:
            self._bad += 1
            logger.warning("Bad packet: %s", e)
            return None

        self._counts[STREAM_NAMES[packet.stream_type]] += 1
        self._latencies.append(now_ms() - packet.timestamp_ms)
        del self._latencies[:-300]
        return packet

    def decode(self, packet: Packet) -> Any:
        """Decode *packet*'s payload according to its stream type."""
        stream_type = packet.stream_type
        if stream_type is StreamType.POSE:
            return decode_pose(packet.payload)
        if stream_type is StreamType.METADATA:
            if not packet.payload:
                return {}
            metadata = decode_metadata(packet.payload)
            depth = metadata.get("depth")
            if isinstance(depth, dict):
                width, height = depth.get("width"), depth.get("height")
                if isinstance(width, int) and isinstance(height, int):
                    self._depth_shape = (width, height)
            return metadata
        if stream_type is StreamType.CAMERA:
            return decode_image(packet.payload)
        if stream_type is StreamType.POINT_CLOUD:
            return points_from_bytes(packet.payload)
        if stream_type is StreamType.DEPTH:
            if self._depth_shape is None:
                return None
            width, height = self._depth_shape
            if len(packet.payload) != width * height * 2:
                return None
            return depth_from_bytes(packet.payload, width, height)
        return packet.payload

    def run(self, callback: Optional[Callback] = None,
            stop_event: Optional[threading.Event] = None):
        """Receive until *stop_event* is set. Calls ``callback(packet, decoded)``."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            packet = self.receive()
            if packet is None:
                continue

            try:
                decoded = self.decode(packet)
            except ValueError as e:
                self._bad += 1
                logger.warning("Cannot decode %s packet: %s", packet.stream_type.name, e)
                continue

            if callback:
                callback(packet, decoded)

            total = sum(self._counts.values())
            if total % 300 == 0:
                stats = self.get_stats()
                logger.info("packets=%d rate=%.1f/s latency=%.1fms streams=%s",
                            total, stats["rate"], stats["latency_ms"], stats["packets"])

    def get_stats(self) -> Dict[str, Any]:
        elapsed = time.monotonic() - self._start_time
        total = sum(self._counts.values())
        latencies = self._latencies
        return {
            "packets": dict(self._counts),
            "bad_packets": self._bad,
            "rate": total / elapsed if elapsed > 0 else 0.0,
            "latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
            "uptime": elapsed,
        }

    def close(self):
        self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def main():
    parser = argparse.ArgumentParser(description="Receive an AR capture stream")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    setup_logging(args.log_level)

    stop_event = threading.Event()

    def handle_signal(sig, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    with PacketReceiver(args.host, args.port) as receiver:
        logger.info("Listening on %s:%d", *receiver.address)
        receiver.run(stop_event=stop_event)
        stats = receiver.get_stats()

    logger.info("Summary:")
    logger.info("  Packets per stream: %s", stats["packets"])
    logger.info("  Bad packets: %d", stats["bad_packets"])
    logger.info("  Duration: %.1fs", stats["uptime"])
    logger.info("  Average latency: %.1fms", stats["latency_ms"])


if __name__ == "__main__":
    main()
