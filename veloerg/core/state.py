"""Telemetry sample and the latest-sample handoff between BLE and control contexts."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class TelemetrySample:
    power: int | None
    cadence: float | None
    speed_kmh: float | None
    timestamp: float


class LatestSample:
    """Single-slot mailbox: the producer overwrites, the consumer takes the latest.

    Notifications may be delivered from a BLE backend thread while the control
    loop reads on the event loop, so access goes through a lock. Samples
    overwritten before any latest() call are only counted; peek() does not
    mark a sample as read.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sample: TelemetrySample | None = None
        self._unread = False
        self.dropped = 0

    def put(self, sample: TelemetrySample) -> None:
        with self._lock:
            if self._unread:
                self.dropped += 1
            self._sample = sample
            self._unread = True

    def latest(self) -> TelemetrySample | None:
        with self._lock:
            self._unread = False
            return self._sample

    def peek(self) -> TelemetrySample | None:
        """Latest sample without marking it read."""
        with self._lock:
            return self._sample

    def clear(self) -> None:
        with self._lock:
            self._sample = None
            self._unread = False
