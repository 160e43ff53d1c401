from __future__ import annotations

import socket
import struct
import threading
from typing import Iterable, Optional

from .logging_utils import component_logger
from .rate import RateTracker
from .tracker import MarkerTracker
from .tracking_types import MarkerObservation

HEADER = struct.Struct("<II")
RECORD = struct.Struct("<iffff")


def encode_payload(frame_number: int, observations: Iterable[MarkerObservation]) -> bytes:
    """Pack one frame: ``frame_number, count`` then ``id, cx, cy, angle, size`` per marker."""
    markers = sorted(observations, key=lambda o: o.id)
    parts = [HEADER.pack(frame_number & 0xFFFFFFFF, len(markers))]
    for obs in markers:
        parts.append(RECORD.pack(obs.id, obs.center[0], obs.center[1], obs.angle, obs.size))
    return b"".join(parts)


def decode_payload(data: bytes) -> tuple[int, list[tuple[int, float, float, float, float]]]:
    if len(data) < HEADER.size:
        raise ValueError(f"payload too short: {len(data)} bytes")
    frame_number, count = HEADER.unpack_from(data, 0)
    expected = HEADER.size + count * RECORD.size
    if len(data) != expected:
        raise ValueError(f"payload length {len(data)} does not match {count} markers")
    records = [
        RECORD.unpack_from(data, HEADER.size + i * RECORD.size) for i in range(count)
    ]
    return frame_number, records


class Publisher:
    """Broadcasts the tracker's latest observations as one UDP datagram per frame."""

    def __init__(
        self,
        tracker: MarkerTracker,
        address: str = "255.255.255.255",
        port: int = 50000,
        logger=None,
        sock: Optional[socket.socket] = None,
    ):
        self.tracker = tracker
        self.logger = component_logger("publisher", logger)

        self._destination_lock = threading.Lock()
        self._destination = (address, int(port))

        if sock is None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        self._sock = sock

        self._frame_number = 0
        self.send_failures = 0
        self.rate_tracker = RateTracker()

    @property
    def destination(self) -> tuple[str, int]:
        with self._destination_lock:
            return self._destination

    def set_destination(self, address: str, port: int) -> None:
        with self._destination_lock:
            self._destination = (address, int(port))

    @property
    def frame_number(self) -> int:
        return self._frame_number

    @property
    def frame_rate(self) -> float:
        return self.rate_tracker.rate

    def pause(self) -> None:
        self.rate_tracker.reset()

    def poll(self) -> None:
        current = self.tracker.frame_number
        if current == self._frame_number:
            return

        observations = self.tracker.get_observations()
        payload = encode_payload(current, observations.values())
        destination = self.destination
        try:
            self._sock.sendto(payload, destination)
        except OSError as exc:
            # Dropped frames are not retried; the next frame supersedes them.
            self.send_failures += 1
            self.logger.debug("publish error: %s (%s:%d)", exc, *destination)

        self._frame_number = current
        self.rate_tracker.update()

    def close(self) -> None:
        self._sock.close()
