"""High-level API: stream AR observations to a remote viewer with one call.

``ArStreamer`` wires an observation source, the capture loop and the UDP
muxer together and exposes start/stop plus runtime statistics.

Example::

    from ar_stream import ArStreamer, MockObservationSource

    streamer = ArStreamer(MockObservationSource())
    if streamer.start("192.168.1.20", 9000):
        ...
        streamer.stop()

Usage:
    ar-stream --host 192.168.1.20 --port 9000
    ar-stream --source zmq --zmq-endpoint tcp://127.0.0.1:5555 --point-cloud dense
"""

import argparse
import logging
import signal
import threading
import time
from typing import Any, Dict, Optional

from .capture import POINT_CLOUD_MODES, CaptureLoop
from .config import StreamConfig, setup_logging, validate_destination
from .depth import DepthReducer
from .muxer import DataMuxer
from .network import ConnectionQuality, NetworkType, estimate_quality
from .protocol import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_ZMQ_ENDPOINT
from .serializer import FrameSerializer
from .source import MockObservationSource, ObservationSource, ZmqObservationSource

logger = logging.getLogger(__name__)


class ArStreamer:
    """Capture AR observations and stream them over UDP.

    Parameters
    ----------
    source : ObservationSource
        Supplier of pose, depth, camera image and planes.
    config : StreamConfig or None
        Pipeline settings. Host and port here are defaults for
        :meth:`start`.
    """

    def __init__(self, source: ObservationSource,
                 config: Optional[StreamConfig] = None):
        self._source = source
        self._config = config or StreamConfig()
        self._muxer = DataMuxer(max_queue=self._config.max_queue)
        self._capture: Optional[CaptureLoop] = None

        self._network_type = NetworkType.NONE
        self._upstream_kbps = 0
        self._quality = ConnectionQuality.UNKNOWN

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """Open the transport and launch the capture loop.

        Returns ``False`` if the transport cannot be opened.

        Raises
        ------
        ValueError
            If the destination is not a dotted-quad address and valid port.
        """
        if self.is_running:
            logger.debug("Already streaming, ignoring start request")
            return True

        host = host or self._config.host
        port = port or self._config.port
        validate_destination(host, port)

        if not self._muxer.start(host, port):
            logger.error("Failed to start data muxer")
            return False

        config = self._config
        self._capture = CaptureLoop(
            self._source,
            self._muxer,
            reducer=DepthReducer(config.downsample_factor),
            serializer=FrameSerializer(device=config.device),
            point_cloud_mode=config.point_cloud_mode,
            max_points=config.max_points,
            fps=config.fps,
        )
        self._capture.start()
        logger.info("Streaming started to %s:%d", host, port)
        return True

    def stop(self):
        """Stop capturing, then drop the transport."""
        if self._capture is not None:
            self._capture.stop()
            self._capture = None
        self._muxer.stop()

    def update_network(self, network_type: NetworkType, upstream_kbps: int,
                       has_internet: bool = True):
        """Record passive network telemetry for :meth:`get_stats`."""
        self._network_type = network_type
        self._upstream_kbps = upstream_kbps
        self._quality = estimate_quality(network_type, upstream_kbps, has_internet)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "streaming": self.is_running,
            "transport": self._muxer.get_stats(),
            "network_type": self._network_type.value,
            "upload_bandwidth_kbps": self._upstream_kbps,
            "connection_quality": self._quality.value,
        }
        if self._capture is not None:
            stats["capture"] = self._capture.get_stats()
        return stats

    @property
    def is_running(self) -> bool:
        return self._muxer.is_running and self._capture is not None

    @property
    def muxer(self) -> DataMuxer:
        return self._muxer

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        if not self.start():
            raise RuntimeError("Could not open the UDP transport")
        return self

    def __exit__(self, *exc):
        self.stop()


def main():
    parser = argparse.ArgumentParser(description="Stream AR capture data over UDP")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Receiver IPv4 address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--source", choices=["mock", "zmq"], default="mock")
    parser.add_argument("--zmq-endpoint", default=DEFAULT_ZMQ_ENDPOINT)
    parser.add_argument("--fps", type=float, default=60.0)
    parser.add_argument("--downsample", type=int, default=4, help="Depth downsample factor")
    parser.add_argument("--point-cloud", choices=POINT_CLOUD_MODES, default="sparse")
    parser.add_argument("--max-points", type=int, default=None)
    parser.add_argument("--max-queue", type=int, default=None,
                        help="Cap the outbound queue (drops oldest packets)")
    parser.add_argument("--device", default=StreamConfig.device)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    setup_logging(args.log_level)

    config = StreamConfig(
        host=args.host, port=args.port, fps=args.fps,
        downsample_factor=args.downsample, point_cloud_mode=args.point_cloud,
        max_points=args.max_points, device=args.device, max_queue=args.max_queue,
        source=args.source, zmq_endpoint=args.zmq_endpoint,
    )
    try:
        config.validate()
    except ValueError as e:
        parser.error(str(e))

    if config.source == "zmq":
        source: ObservationSource = ZmqObservationSource(config.zmq_endpoint)
    else:
        source = MockObservationSource()

    streamer = ArStreamer(source, config)
    if not streamer.start():
        source.close()
        raise SystemExit(1)

    stop_event = threading.Event()

    def handle_signal(sig, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info("Streaming. Press Ctrl+C to stop.")
    start_time = time.monotonic()
    while not stop_event.wait(5.0):
        transport = streamer.get_stats()["transport"]
        logger.info("sent=%d bytes=%d queued=%d errors=%d",
                    transport["packets_sent"], transport["bytes_sent"],
                    transport["queued"], transport["send_errors"])

    streamer.stop()
    source.close()
    logger.info("Done after %.1fs.", time.monotonic() - start_time)


if __name__ == "__main__":
    main()
