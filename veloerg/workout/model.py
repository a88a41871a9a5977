"""Workout domain models."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Union

from veloerg.core.errors import InvalidSegment


@dataclass(frozen=True)
class SteadyState:
    duration: int
    power: float
    cadence: float | None = None
    label: str | None = None


@dataclass(frozen=True)
class Ramp:
    """Linear power change from power_start to power_end over duration."""

    duration: int
    power_start: float
    power_end: float
    cadence: float | None = None
    label: str | None = None


@dataclass(frozen=True)
class IntervalsRepeat:
    repeat_count: int
    on_duration: int
    on_power: float
    off_duration: int
    off_power: float
    cadence: float | None = None
    off_cadence: float | None = None
    label: str | None = None

    @property
    def duration(self) -> int:
        return self.repeat_count * (self.on_duration + self.off_duration)


@dataclass(frozen=True)
class FreeRide:
    duration: int
    cadence: float | None = None
    label: str | None = None


Segment = Union[SteadyState, Ramp, IntervalsRepeat, FreeRide]


def resolve_power(ftp_watts: int, fraction: float) -> int:
    """Absolute watts for a fraction of FTP, rounded to the nearest watt."""
    return int(round(ftp_watts * fraction))


class Workout:
    """Validated, immutable ordered sequence of segments."""

    __slots__ = ("_name", "_segments")

    def __init__(self, segments: Iterable[Segment], name: str = "Workout") -> None:
        items = tuple(segments)
        if not items:
            raise InvalidSegment("Workout must contain at least one segment")
        for index, segment in enumerate(items):
            _validate_segment(segment, index)
        self._name = name
        self._segments = items

    @property
    def name(self) -> str:
        return self._name

    @property
    def segments(self) -> tuple[Segment, ...]:
        return self._segments

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self):
        return iter(self._segments)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Workout):
            return NotImplemented
        return self._name == other._name and self._segments == other._segments

    def __repr__(self) -> str:
        return f"Workout(name={self._name!r}, segments={len(self._segments)})"

    def total_duration(self) -> int:
        return sum(segment.duration for segment in self._segments)

    def duration_at(self, index: int) -> int:
        return self._segments[index].duration


def _validate_segment(segment: object, index: int) -> None:
    where = f"Segment {index + 1}"
    if isinstance(segment, IntervalsRepeat):
        _require_positive_int(segment.repeat_count, f"{where}: repeat_count")
        _require_positive_int(segment.on_duration, f"{where}: on_duration")
        _require_positive_int(segment.off_duration, f"{where}: off_duration")
        _require_non_negative(segment.on_power, f"{where}: on_power")
        _require_non_negative(segment.off_power, f"{where}: off_power")
        _require_cadence(segment.off_cadence, f"{where}: off_cadence")
    elif isinstance(segment, SteadyState):
        _require_positive_int(segment.duration, f"{where}: duration")
        _require_non_negative(segment.power, f"{where}: power")
    elif isinstance(segment, Ramp):
        _require_positive_int(segment.duration, f"{where}: duration")
        _require_non_negative(segment.power_start, f"{where}: power_start")
        _require_non_negative(segment.power_end, f"{where}: power_end")
    elif isinstance(segment, FreeRide):
        _require_positive_int(segment.duration, f"{where}: duration")
    else:
        raise InvalidSegment(f"{where}: unsupported segment type {type(segment).__name__}")

    _require_cadence(segment.cadence, f"{where}: cadence")


def _require_positive_int(value: object, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidSegment(f"{field} must be an integer number of seconds")
    if value <= 0:
        raise InvalidSegment(f"{field} must be > 0")


def _require_non_negative(value: object, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidSegment(f"{field} must be a number")
    if not math.isfinite(value):
        raise InvalidSegment(f"{field} must be finite")
    if value < 0:
        raise InvalidSegment(f"{field} must be >= 0")


def _require_cadence(value: object, field: str) -> None:
    if value is None:
        return
    _require_non_negative(value, field)
    if value == 0:
        raise InvalidSegment(f"{field} must be > 0")
