"""UDP multiplexer: queues framed packets and sends them from a worker thread.

The capture side calls :meth:`DataMuxer.enqueue` (or
:meth:`DataMuxer.send_ar_data` once per tick); a background sender loop
pops packets and transmits each as a single datagram. Delivery is best
effort: nothing is retried and packets still queued at :meth:`stop` are
dropped.

Usage::

    muxer = DataMuxer()
    if muxer.start("192.168.1.20", 9000):
        muxer.enqueue(StreamType.POSE, pose_bytes)
        ...
        muxer.stop()
"""

import logging
import socket
import threading
from collections import deque
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .protocol import MAX_DATAGRAM_SIZE, StreamType, frame_packet

logger = logging.getLogger(__name__)

IDLE_SLEEP = 0.005
ERROR_BACKOFF = 1.0


class TransportState(Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"


class DataMuxer:
    """Single-destination UDP transport for framed AR packets.

    Parameters
    ----------
    max_queue : int or None
        Cap on queued packets. ``None`` (default) leaves the queue
        unbounded; with a cap the oldest packet is dropped on overflow.
    idle_sleep : float
        Seconds the sender waits when the queue is empty.
    error_backoff : float
        Seconds the sender waits after a failed send.
    """

    def __init__(self, max_queue: Optional[int] = None,
                 idle_sleep: float = IDLE_SLEEP,
                 error_backoff: float = ERROR_BACKOFF):
        self._queue: deque = deque(maxlen=max_queue)
        self._idle_sleep = idle_sleep
        self._error_backoff = error_backoff

        self._state_lock = threading.Lock()
        self._state = TransportState.STOPPED
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._destination: Optional[Tuple[str, int]] = None

        self._stats_lock = threading.Lock()
        self._packets_sent = 0
        self._bytes_sent = 0
        self._send_errors = 0
        self._dropped = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, host: str, port: int) -> bool:
        """Open the UDP socket and launch the sender loop.

        Returns ``False`` if the socket cannot be created; the muxer stays
        stopped and does not retry.
        """
        with self._state_lock:
            if self._state is TransportState.RUNNING:
                logger.debug("Muxer already running")
                return True

            self._state = TransportState.STARTING
            try:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            except OSError:
                logger.exception("Failed to open UDP socket")
                self._state = TransportState.STOPPED
                return False

            self._destination = (host, port)
            # One stop event per run; an earlier sender never sees it cleared.
            self._stop_event = threading.Event()
            self._queue.clear()
            self._thread = threading.Thread(
                target=self._sender_loop, args=(sock, self._stop_event),
                name="ar-stream-sender", daemon=True)
            self._state = TransportState.RUNNING
            self._thread.start()

        logger.info("Data muxer started for %s:%d", host, port)
        return True

    def stop(self, timeout: float = 2.0):
        """Stop the sender loop and drop anything still queued."""
        with self._state_lock:
            if self._state is TransportState.STOPPED:
                logger.debug("Muxer already stopped")
                return

            self._stop_event.set()
            thread, self._thread = self._thread, None
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("Sender thread did not exit within %.1fs", timeout)
            self._queue.clear()
            self._state = TransportState.STOPPED

        logger.info("Data muxer stopped")

    def enqueue(self, stream_type: StreamType, payload: Optional[bytes],
                timestamp_ms: Optional[int] = None) -> bool:
        """Frame *payload* and queue it. Returns ``True`` if it was queued.

        Empty payloads are skipped except for metadata, which is the
        per-tick heartbeat. Calls while stopped are ignored.
        """
        stream_type = StreamType(stream_type)
        if self._state is not TransportState.RUNNING:
            return False

        if not payload:
            if stream_type is not StreamType.METADATA:
                return False
            payload = b""

        packet = frame_packet(stream_type, payload, timestamp_ms)
        if len(packet) > MAX_DATAGRAM_SIZE:
            logger.warning("Dropping %s packet: %d bytes exceeds one datagram",
                           stream_type.name, len(packet))
            with self._stats_lock:
                self._dropped += 1
            return False

        with self._state_lock:
            if self._state is not TransportState.RUNNING:
                return False
            if self._queue.maxlen is not None and len(self._queue) >= self._queue.maxlen:
                with self._stats_lock:
                    self._dropped += 1
            self._queue.append(packet)
        return True

    def send_ar_data(self, camera: Optional[bytes] = None,
                     depth: Optional[bytes] = None,
                     pose: Optional[bytes] = None,
                     point_cloud: Optional[bytes] = None,
                     metadata: bytes = b"") -> int:
        """Queue one tick's payloads. Returns the number of packets queued."""
        if self._state is not TransportState.RUNNING:
            return 0

        queued = 0
        for stream_type, payload in (
            (StreamType.CAMERA, camera),
            (StreamType.DEPTH, depth),
            (StreamType.POSE, pose),
            (StreamType.POINT_CLOUD, point_cloud),
            (StreamType.METADATA, metadata),
        ):
            if self.enqueue(stream_type, payload):
                queued += 1
        return queued

    def drain(self) -> List[bytes]:
        """Remove and return every queued packet."""
        packets = []
        while True:
            try:
                packets.append(self._queue.popleft())
            except IndexError:
                return packets

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is TransportState.RUNNING

    @property
    def destination(self) -> Optional[Tuple[str, int]]:
        return self._destination

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "state": self._state.value,
                "destination": self._destination,
                "queued": len(self._queue),
                "packets_sent": self._packets_sent,
                "bytes_sent": self._bytes_sent,
                "send_errors": self._send_errors,
                "dropped": self._dropped,
            }

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sender_loop(self, sock: socket.socket, stop_event: threading.Event):
        logger.debug("Packet sender loop started")
        try:
            while not stop_event.is_set():
                try:
                    packet = self._queue.popleft()
                except IndexError:
                    stop_event.wait(self._idle_sleep)
                    continue

                try:
                    # Destination is looked up per send; it only changes
                    # across a stop/start cycle.
                    sock.sendto(packet, self._destination)
                except OSError as e:
                    with self._stats_lock:
                        self._send_errors += 1
                    logger.error("Error sending packet: %s", e)
                    stop_event.wait(self._error_backoff)
                    continue

                with self._stats_lock:
                    self._packets_sent += 1
                    self._bytes_sent += len(packet)
        finally:
            sock.close()
            logger.debug("Packet sender loop ended")

