"""Time-indexed target oracle built from a workout."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Literal

from veloerg.core.errors import InvalidElapsed
from veloerg.workout.model import (
    FreeRide,
    IntervalsRepeat,
    Ramp,
    SteadyState,
    Workout,
)

PhaseKind = Literal["steady", "ramp", "on", "off", "free"]


@dataclass(frozen=True)
class Phase:
    start: int
    duration: int
    kind: PhaseKind
    power_start: float | None
    power_end: float | None
    cadence: float | None
    segment_index: int
    label: str
    repetition: int | None = None

    @property
    def end(self) -> int:
        return self.start + self.duration

    def power_at(self, offset: float) -> float | None:
        if self.power_start is None or self.power_end is None:
            return None
        if self.power_start == self.power_end:
            return self.power_start
        fraction = min(max(offset / self.duration, 0.0), 1.0)
        return self.power_start + (self.power_end - self.power_start) * fraction


@dataclass(frozen=True)
class TargetPoint:
    elapsed: float
    power: float | None
    cadence: float | None
    phase_index: int
    complete: bool


class Timeline:
    """Intervals are expanded once into concrete phases; queries bisect the starts."""

    def __init__(self, workout: Workout) -> None:
        self._workout = workout
        self._phases = tuple(_expand(workout))
        self._starts = [phase.start for phase in self._phases]
        last = self._phases[-1]
        self._total = last.end

    @property
    def workout(self) -> Workout:
        return self._workout

    @property
    def phases(self) -> tuple[Phase, ...]:
        return self._phases

    def total_duration(self) -> int:
        return self._total

    def phase_index_at(self, elapsed: float) -> int:
        if elapsed < 0:
            raise InvalidElapsed(f"Elapsed time must be >= 0, got {elapsed}")
        if elapsed >= self._total:
            return len(self._phases) - 1
        # Right-continuous: a boundary belongs to the phase that starts there.
        return bisect_right(self._starts, elapsed) - 1

    def phase_at(self, elapsed: float) -> Phase:
        return self._phases[self.phase_index_at(elapsed)]

    def target_at(self, elapsed: float) -> TargetPoint:
        index = self.phase_index_at(elapsed)
        phase = self._phases[index]
        complete = elapsed >= self._total
        clamped = min(float(elapsed), float(self._total))
        return TargetPoint(
            elapsed=clamped,
            power=phase.power_at(clamped - phase.start),
            cadence=phase.cadence,
            phase_index=index,
            complete=complete,
        )

    def remaining(self, elapsed: float) -> float:
        if elapsed < 0:
            raise InvalidElapsed(f"Elapsed time must be >= 0, got {elapsed}")
        return max(0.0, self._total - elapsed)


def _expand(workout: Workout) -> list[Phase]:
    phases: list[Phase] = []
    cursor = 0
    for index, segment in enumerate(workout.segments):
        if isinstance(segment, IntervalsRepeat):
            base = segment.label or f"Intervals {index + 1}"
            total = segment.repeat_count
            for rep in range(1, total + 1):
                phases.append(
                    Phase(
                        start=cursor,
                        duration=segment.on_duration,
                        kind="on",
                        power_start=segment.on_power,
                        power_end=segment.on_power,
                        cadence=segment.cadence,
                        segment_index=index,
                        label=f"{base} {rep}/{total} on",
                        repetition=rep,
                    )
                )
                cursor += segment.on_duration
                phases.append(
                    Phase(
                        start=cursor,
                        duration=segment.off_duration,
                        kind="off",
                        power_start=segment.off_power,
                        power_end=segment.off_power,
                        cadence=segment.off_cadence,
                        segment_index=index,
                        label=f"{base} {rep}/{total} off",
                        repetition=rep,
                    )
                )
                cursor += segment.off_duration
            continue

        if isinstance(segment, Ramp):
            kind: PhaseKind = "ramp"
            power_start: float | None = segment.power_start
            power_end: float | None = segment.power_end
            default_label = f"Ramp {index + 1}"
        elif isinstance(segment, SteadyState):
            kind = "steady"
            power_start = power_end = segment.power
            default_label = f"Steady {index + 1}"
        elif isinstance(segment, FreeRide):
            kind = "free"
            power_start = power_end = None
            default_label = f"Free ride {index + 1}"
        else:  # pragma: no cover - Workout validates segment types
            raise TypeError(f"Unsupported segment {segment!r}")

        phases.append(
            Phase(
                start=cursor,
                duration=segment.duration,
                kind=kind,
                power_start=power_start,
                power_end=power_end,
                cadence=segment.cadence,
                segment_index=index,
                label=segment.label or default_label,
            )
        )
        cursor += segment.duration
    return phases
