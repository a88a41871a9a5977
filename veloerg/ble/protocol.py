"""FTMS binary payload encoding and decoding."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from veloerg.ble.constants import (
    FLAG_INSTANTANEOUS_CADENCE_PRESENT,
    FLAG_INSTANTANEOUS_POWER_PRESENT,
    FLAG_MORE_DATA,
    OP_REQUEST_CONTROL,
    OP_RESET,
    OP_RESPONSE_CODE,
    OP_SET_TARGET_POWER,
    OP_SET_TARGETED_CADENCE,
    OP_START_RESUME,
    OP_STOP_PAUSE,
    STOP_PAUSE_PARAM_PAUSE,
    STOP_PAUSE_PARAM_STOP,
    TARGET_SETTING_CADENCE,
    TARGET_SETTING_POWER,
    parse_indoor_bike_flags,
)


@dataclass(frozen=True)
class IndoorBikeData:
    instantaneous_power: Optional[int] = None
    instantaneous_cadence: Optional[float] = None
    instantaneous_speed_kmh: Optional[float] = None


@dataclass(frozen=True)
class ControlPointResponse:
    request_opcode: int
    result_code: int
    parameter: bytes = b""


@dataclass(frozen=True)
class FitnessMachineFeatures:
    machine_features: int
    target_settings: int

    @property
    def supports_power_target(self) -> bool:
        return bool(self.target_settings & TARGET_SETTING_POWER)

    @property
    def supports_cadence_target(self) -> bool:
        return bool(self.target_settings & TARGET_SETTING_CADENCE)


@dataclass(frozen=True)
class SupportedPowerRange:
    min_watts: int
    max_watts: int
    increment_watts: int


# Control point requests: opcode byte followed by little-endian parameters.


def encode_request_control() -> bytes:
    return bytes([OP_REQUEST_CONTROL])


def encode_reset() -> bytes:
    return bytes([OP_RESET])


def encode_start_resume() -> bytes:
    return bytes([OP_START_RESUME])


def encode_stop_pause(stop: bool = True) -> bytes:
    param = STOP_PAUSE_PARAM_STOP if stop else STOP_PAUSE_PARAM_PAUSE
    return bytes([OP_STOP_PAUSE, param])


def encode_set_target_power(watts: int) -> bytes:
    """SINT16, 1 W resolution."""
    if not -32768 <= watts <= 32767:
        raise ValueError(f"Target power {watts}W does not fit in SINT16")
    return bytes([OP_SET_TARGET_POWER]) + struct.pack("<h", watts)


def encode_set_targeted_cadence(rpm: float) -> bytes:
    """UINT16, 0.5 rpm resolution."""
    raw = int(round(rpm * 2))
    if not 0 <= raw <= 0xFFFF:
        raise ValueError(f"Target cadence {rpm}rpm does not fit in UINT16")
    return bytes([OP_SET_TARGETED_CADENCE]) + struct.pack("<H", raw)


def parse_control_point_response(payload: bytes) -> ControlPointResponse:
    """Parse a Control Point indication: 0x80, request opcode, result code[, params]."""
    if len(payload) < 3:
        raise ValueError(f"Control point indication too short: {payload.hex(' ')}")
    if payload[0] != OP_RESPONSE_CODE:
        raise ValueError(
            f"Control point indication has no response code: {payload.hex(' ')}"
        )
    return ControlPointResponse(
        request_opcode=payload[1],
        result_code=payload[2],
        parameter=bytes(payload[3:]),
    )


def parse_fitness_machine_feature(payload: bytes) -> FitnessMachineFeatures:
    if len(payload) < 8:
        raise ValueError(
            f"Fitness Machine Feature payload must be 8 bytes, got {len(payload)}"
        )
    machine_features, target_settings = struct.unpack_from("<II", payload, 0)
    return FitnessMachineFeatures(
        machine_features=machine_features,
        target_settings=target_settings,
    )


def parse_supported_power_range(payload: bytes) -> SupportedPowerRange:
    if len(payload) < 6:
        raise ValueError(f"Supported power range payload too short: {payload.hex(' ')}")
    min_watts, max_watts, increment_watts = struct.unpack_from("<hhH", payload, 0)
    if increment_watts <= 0:
        increment_watts = 1
    return SupportedPowerRange(min_watts, max_watts, increment_watts)


def parse_machine_status(payload: bytes) -> tuple[int, bytes]:
    if not payload:
        raise ValueError("Fitness Machine Status payload is empty")
    return payload[0], bytes(payload[1:])


def normalize_power_target(
    requested_watts: int, min_watts: int, max_watts: int, increment_watts: int
) -> int:
    if increment_watts <= 0:
        increment_watts = 1

    clamped = min(max(requested_watts, min_watts), max_watts)
    steps = round((clamped - min_watts) / increment_watts)
    normalized = min_watts + (steps * increment_watts)
    return min(max(normalized, min_watts), max_watts)


def _require_bytes(data: bytes, cursor: int, size: int) -> None:
    if cursor + size > len(data):
        raise ValueError(
            f"Invalid Indoor Bike Data payload: expected {size} bytes at offset {cursor}"
        )


def _decode_indoor_bike_data(
    payload: bytes, *, speed_present: bool
) -> tuple[IndoorBikeData, int]:
    raw_flags = struct.unpack_from("<H", payload, 0)[0]
    flags = parse_indoor_bike_flags(raw_flags)
    cursor = 2

    speed_kmh: Optional[float] = None
    if speed_present:
        _require_bytes(payload, cursor, 2)
        speed_kmh = struct.unpack_from("<H", payload, cursor)[0] / 100.0
        cursor += 2

    if flags.average_speed_present:
        _require_bytes(payload, cursor, 2)
        cursor += 2

    cadence: Optional[float] = None
    if flags.instantaneous_cadence_present:
        _require_bytes(payload, cursor, 2)
        cadence = struct.unpack_from("<H", payload, cursor)[0] / 2.0
        cursor += 2

    for present, size in (
        (flags.average_cadence_present, 2),
        (flags.total_distance_present, 3),
        (flags.resistance_level_present, 2),
    ):
        if present:
            _require_bytes(payload, cursor, size)
            cursor += size

    power: Optional[int] = None
    if flags.instantaneous_power_present:
        _require_bytes(payload, cursor, 2)
        power = struct.unpack_from("<h", payload, cursor)[0]
        cursor += 2

    for present, size in (
        (flags.average_power_present, 2),
        (flags.expended_energy_present, 5),
        (flags.heart_rate_present, 1),
        (flags.metabolic_equivalent_present, 1),
        (flags.elapsed_time_present, 2),
        (flags.remaining_time_present, 2),
    ):
        if present:
            _require_bytes(payload, cursor, size)
            cursor += size

    return IndoorBikeData(
        instantaneous_power=power,
        instantaneous_cadence=cadence,
        instantaneous_speed_kmh=speed_kmh,
    ), cursor


def _plausibility_score(metrics: IndoorBikeData) -> int:
    score = 0
    if metrics.instantaneous_cadence is not None:
        if not 0 <= metrics.instantaneous_cadence <= 220:
            score += 1000
    if metrics.instantaneous_power is not None:
        if not -200 <= metrics.instantaneous_power <= 3000:
            score += 1000
    if metrics.instantaneous_speed_kmh is not None:
        if not 0 <= metrics.instantaneous_speed_kmh <= 130:
            score += 1000
    return score


def parse_indoor_bike_data(payload: bytes) -> IndoorBikeData:
    """Parse FTMS Indoor Bike Data characteristic payload (0x2AD2)."""
    if len(payload) < 2:
        raise ValueError("Indoor Bike Data payload too short")

    raw_flags = struct.unpack_from("<H", payload, 0)[0]
    flags = parse_indoor_bike_flags(raw_flags)
    # Speed is present when "more_data" is clear, but some trainers get this
    # wrong, so both alignments are decoded and the plausible one wins.
    preferred_speed_present = not flags.more_data
    candidates: list[tuple[int, int, IndoorBikeData]] = []
    errors: list[ValueError] = []

    for speed_present in (preferred_speed_present, not preferred_speed_present):
        try:
            metrics, cursor = _decode_indoor_bike_data(
                payload, speed_present=speed_present
            )
        except ValueError as exc:
            errors.append(exc)
            continue
        candidates.append((_plausibility_score(metrics), len(payload) - cursor, metrics))

    if not candidates:
        raise errors[0]

    # Prefer plausible values, then tighter decode (fewer trailing bytes).
    candidates.sort(key=lambda item: (item[0], item[1]))
    return candidates[0][2]


def encode_indoor_bike_data(
    power: int | None, cadence: float | None, speed_kmh: float | None
) -> bytes:
    """Build an Indoor Bike Data payload; used by the simulated trainer."""
    flags = 0
    body = b""
    if speed_kmh is None:
        flags |= FLAG_MORE_DATA
    else:
        body += struct.pack("<H", int(round(speed_kmh * 100)))
    if cadence is not None:
        flags |= FLAG_INSTANTANEOUS_CADENCE_PRESENT
        body += struct.pack("<H", int(round(cadence * 2)))
    if power is not None:
        flags |= FLAG_INSTANTANEOUS_POWER_PRESENT
        body += struct.pack("<h", power)
    return struct.pack("<H", flags) + body


def encode_control_point_response(
    request_opcode: int, result_code: int, parameter: bytes = b""
) -> bytes:
    return bytes([OP_RESPONSE_CODE, request_opcode, result_code]) + parameter


def encode_fitness_machine_feature(machine_features: int, target_settings: int) -> bytes:
    return struct.pack("<II", machine_features, target_settings)


def encode_supported_power_range(min_watts: int, max_watts: int, increment: int) -> bytes:
    return struct.pack("<hhH", min_watts, max_watts, increment)
