"""Workout file parser (JSON/ZWO/CSV)."""

from __future__ import annotations

import csv
import json
import math
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from veloerg.core.errors import InvalidSegment
from veloerg.workout.model import (
    FreeRide,
    IntervalsRepeat,
    Ramp,
    Segment,
    SteadyState,
    Workout,
    resolve_power,
)


class WorkoutParseError(ValueError):
    """Raised when a workout file is invalid."""


def load_workout(path: str | Path, ftp_watts: Optional[int] = None) -> Workout:
    """Load a workout file into absolute-watt segments.

    JSON and CSV carry absolute watts. ZWO files express power as fractions of
    FTP, so ``ftp_watts`` is required for them.
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix == ".json":
        workout = _load_json(file_path)
    elif suffix == ".zwo":
        workout = _load_zwo(file_path, ftp_watts)
    elif suffix == ".csv":
        workout = _load_csv(file_path)
    else:
        raise WorkoutParseError(
            f"Unsupported workout format '{file_path.suffix}'. Use .json, .zwo or .csv"
        )
    logger.info(
        f"Loaded {file_path.name}: {len(workout)} segments, {workout.total_duration()}s"
    )
    return workout


def _load_json(path: Path) -> Workout:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise WorkoutParseError(f"Invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise WorkoutParseError("Workout JSON must be an object")

    name_obj = data.get("name", path.stem)
    if not isinstance(name_obj, str):
        raise WorkoutParseError("Workout field 'name' must be a string")

    segments_obj = data.get("segments")
    if not isinstance(segments_obj, list):
        raise WorkoutParseError("Workout field 'segments' must be an array")

    segments: list[Segment] = []
    for i, raw in enumerate(segments_obj):
        if not isinstance(raw, dict):
            raise WorkoutParseError(f"Segment {i + 1}: must be an object")
        segments.append(_build_json_segment(raw, i))

    return _build_workout(name=name_obj.strip() or path.stem, segments=segments)


def _build_json_segment(raw: dict, index: int) -> Segment:
    kind = str(raw.get("type", "steady")).strip().lower()
    label = _parse_label(raw.get("label"))
    cadence = _parse_optional_number(raw.get("cadence_rpm"), "cadence_rpm", index)

    def number(field: str) -> float:
        return _parse_number(raw.get(field), field, index)

    def seconds(field: str) -> int:
        return _parse_int_field(raw=raw.get(field), field_name=field, index=index)

    if kind == "steady":
        return SteadyState(
            duration=seconds("duration_sec"),
            power=number("power_watts"),
            cadence=cadence,
            label=label,
        )
    if kind in ("ramp", "warmup", "cooldown"):
        return Ramp(
            duration=seconds("duration_sec"),
            power_start=number("power_start_watts"),
            power_end=number("power_end_watts"),
            cadence=cadence,
            label=label or (kind.capitalize() if kind != "ramp" else None),
        )
    if kind == "intervals":
        return IntervalsRepeat(
            repeat_count=seconds("repeat"),
            on_duration=seconds("on_duration_sec"),
            on_power=number("on_power_watts"),
            off_duration=seconds("off_duration_sec"),
            off_power=number("off_power_watts"),
            cadence=cadence,
            off_cadence=_parse_optional_number(
                raw.get("off_cadence_rpm"), "off_cadence_rpm", index
            ),
            label=label,
        )
    if kind == "free":
        return FreeRide(duration=seconds("duration_sec"), cadence=cadence, label=label)
    raise WorkoutParseError(f"Segment {index + 1}: unknown type '{kind}'")


def _load_zwo(path: Path, ftp_watts: Optional[int]) -> Workout:
    if ftp_watts is None or ftp_watts <= 0:
        raise WorkoutParseError("ZWO workouts need a positive FTP to resolve power")
    try:
        root = ET.fromstring(path.read_text(encoding="utf-8"))
    except ET.ParseError as exc:
        raise WorkoutParseError(f"Invalid ZWO XML: {exc}") from exc

    if root.tag != "workout_file":
        raise WorkoutParseError("ZWO root element must be <workout_file>")
    steps = root.find("workout")
    if steps is None:
        raise WorkoutParseError("ZWO file has no <workout> element")

    name = (root.findtext("name") or "").strip() or path.stem
    segments: list[Segment] = []
    for i, element in enumerate(steps):
        builder = _ZWO_BUILDERS.get(element.tag)
        if builder is None:
            logger.warning(f"Skipping unsupported ZWO step <{element.tag}>")
            continue
        segments.append(builder(_ZwoStep(element, i), ftp_watts))

    return _build_workout(name=name, segments=segments)


class _ZwoStep:
    def __init__(self, element: ET.Element, index: int) -> None:
        self._element = element
        self._index = index

    def integer(self, attr: str) -> int:
        raw = self._element.get(attr)
        try:
            return int(float(_require_attr(raw, attr, self._index)))
        except (ValueError, OverflowError) as exc:
            raise WorkoutParseError(f"Segment {self._index + 1}: invalid {attr}") from exc

    def fraction(self, attr: str) -> float:
        raw = _require_attr(self._element.get(attr), attr, self._index)
        return _parse_number(raw, attr, self._index)

    def optional(self, attr: str) -> float | None:
        return _parse_optional_number(self._element.get(attr), attr, self._index)


def _require_attr(raw: str | None, attr: str, index: int) -> str:
    if raw is None:
        raise WorkoutParseError(f"Segment {index + 1}: missing {attr}")
    return raw


def _zwo_ramp(step: _ZwoStep, ftp: int, label: str | None) -> Segment:
    # Cooldowns list the higher value as PowerLow; both run PowerLow -> PowerHigh.
    return Ramp(
        duration=step.integer("Duration"),
        power_start=resolve_power(ftp, step.fraction("PowerLow")),
        power_end=resolve_power(ftp, step.fraction("PowerHigh")),
        cadence=step.optional("Cadence"),
        label=label,
    )


def _zwo_steady(step: _ZwoStep, ftp: int) -> Segment:
    return SteadyState(
        duration=step.integer("Duration"),
        power=resolve_power(ftp, step.fraction("Power")),
        cadence=step.optional("Cadence"),
    )


def _zwo_intervals(step: _ZwoStep, ftp: int) -> Segment:
    return IntervalsRepeat(
        repeat_count=step.integer("Repeat"),
        on_duration=step.integer("OnDuration"),
        on_power=resolve_power(ftp, step.fraction("OnPower")),
        off_duration=step.integer("OffDuration"),
        off_power=resolve_power(ftp, step.fraction("OffPower")),
        cadence=step.optional("Cadence"),
        off_cadence=step.optional("CadenceResting"),
    )


def _zwo_free(step: _ZwoStep, ftp: int) -> Segment:
    return FreeRide(duration=step.integer("Duration"), cadence=step.optional("Cadence"))


_ZWO_BUILDERS: dict[str, Callable[[_ZwoStep, int], Segment]] = {
    "Warmup": lambda step, ftp: _zwo_ramp(step, ftp, "Warmup"),
    "Ramp": lambda step, ftp: _zwo_ramp(step, ftp, None),
    "Cooldown": lambda step, ftp: _zwo_ramp(step, ftp, "Cooldown"),
    "SteadyState": _zwo_steady,
    "IntervalsT": _zwo_intervals,
    "FreeRide": _zwo_free,
}


def _load_csv(path: Path) -> Workout:
    rows: list[Segment] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        fields = set(reader.fieldnames or [])
        required = {"duration_sec", "power_watts"}
        if not required.issubset(fields):
            raise WorkoutParseError(
                "CSV must contain headers: duration_sec,power_watts[,label,cadence_rpm]"
            )

        for i, row in enumerate(reader):
            rows.append(
                SteadyState(
                    duration=_parse_int_field(
                        raw=row.get("duration_sec"), field_name="duration_sec", index=i
                    ),
                    power=_parse_number(row.get("power_watts"), "power_watts", i),
                    cadence=_parse_optional_number(row.get("cadence_rpm"), "cadence_rpm", i),
                    label=_parse_label(row.get("label")),
                )
            )

    return _build_workout(name=path.stem, segments=rows)


def _build_workout(*, name: str, segments: list[Segment]) -> Workout:
    if not segments:
        raise WorkoutParseError("Workout must contain at least one segment")
    try:
        return Workout(segments, name=name)
    except InvalidSegment as exc:
        raise WorkoutParseError(str(exc)) from exc


def _parse_label(raw: object) -> str | None:
    if raw is None:
        return None
    return str(raw).strip() or None


def _parse_int_field(*, raw: object, field_name: str, index: int) -> int:
    if raw is None:
        raise WorkoutParseError(f"Segment {index + 1}: invalid {field_name}")
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise WorkoutParseError(f"Segment {index + 1}: invalid {field_name}") from exc


def _parse_number(raw: object, field_name: str, index: int) -> float:
    if raw is None or isinstance(raw, bool):
        raise WorkoutParseError(f"Segment {index + 1}: invalid {field_name}")
    try:
        value = float(str(raw).strip())
    except ValueError as exc:
        raise WorkoutParseError(f"Segment {index + 1}: invalid {field_name}") from exc
    if not math.isfinite(value):
        raise WorkoutParseError(f"Segment {index + 1}: {field_name} must be finite")
    return value


def _parse_optional_number(raw: object, field_name: str, index: int) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, str) and raw.strip() == "":
        return None
    return _parse_number(raw, field_name, index)
