#!/usr/bin/env python3
"""Minimal example: receive an AR stream and print what arrives.

Prerequisites:
    1. pip install ar-stream
    2. A sender running, e.g. ``ar-stream --host <this machine> --port 9000``

Usage:
    python examples/basic_consumer.py
    python examples/basic_consumer.py --port 9001
"""

import argparse
import threading
import time

from ar_stream import PacketReceiver, StreamType


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, default=9000)
    args = parser.parse_args()

    count = 0
    t0 = time.monotonic()

    def on_packet(packet, decoded):
        nonlocal count
        count += 1
        if packet.stream_type is StreamType.POSE and decoded is not None:
            print(f"  pose t=({decoded.tx:.2f}, {decoded.ty:.2f}, {decoded.tz:.2f})")
        elif packet.stream_type is StreamType.DEPTH and decoded is not None:
            h, w = decoded.shape
            print(f"  depth {w}x{h} center={decoded[h // 2, w // 2]}mm")
        if count % 300 == 0:
            print(f"  packets={count}  rate={count / (time.monotonic() - t0):.1f}/s")

    print("Receiving, press Ctrl+C to stop\n")
    with PacketReceiver(port=args.port) as receiver:
        try:
            receiver.run(on_packet, threading.Event())
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
