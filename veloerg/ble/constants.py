"""FTMS constants and flag helpers for the BLE Fitness Machine Service."""

from __future__ import annotations

from dataclasses import dataclass

FTMS_SERVICE_UUID = "00001826-0000-1000-8000-00805f9b34fb"
FITNESS_MACHINE_FEATURE_CHAR_UUID = "00002acc-0000-1000-8000-00805f9b34fb"
INDOOR_BIKE_DATA_CHAR_UUID = "00002ad2-0000-1000-8000-00805f9b34fb"
SUPPORTED_POWER_RANGE_CHAR_UUID = "00002ad8-0000-1000-8000-00805f9b34fb"
FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID = "00002ad9-0000-1000-8000-00805f9b34fb"
FITNESS_MACHINE_STATUS_CHAR_UUID = "00002ada-0000-1000-8000-00805f9b34fb"

# Fitness Machine Control Point opcodes (FTMS v1.0, 4.16.1)
OP_REQUEST_CONTROL = 0x00
OP_RESET = 0x01
OP_SET_TARGET_POWER = 0x05
OP_START_RESUME = 0x07
OP_STOP_PAUSE = 0x08
OP_SET_TARGETED_CADENCE = 0x14
OP_RESPONSE_CODE = 0x80

STOP_PAUSE_PARAM_STOP = 0x01
STOP_PAUSE_PARAM_PAUSE = 0x02

OPCODE_NAMES: dict[int, str] = {
    OP_REQUEST_CONTROL: "RequestControl",
    OP_RESET: "Reset",
    OP_SET_TARGET_POWER: "SetTargetPower",
    OP_START_RESUME: "StartResume",
    OP_STOP_PAUSE: "StopPause",
    OP_SET_TARGETED_CADENCE: "SetTargetedCadence",
}

# Control Point result codes (FTMS v1.0, Table 4.24)
RESULT_SUCCESS = 0x01
RESULT_OP_CODE_NOT_SUPPORTED = 0x02
RESULT_INVALID_PARAMETER = 0x03
RESULT_OPERATION_FAILED = 0x04
RESULT_CONTROL_NOT_PERMITTED = 0x05

RESULT_NAMES: dict[int, str] = {
    RESULT_SUCCESS: "Success",
    RESULT_OP_CODE_NOT_SUPPORTED: "OpCodeNotSupported",
    RESULT_INVALID_PARAMETER: "InvalidParameter",
    RESULT_OPERATION_FAILED: "OperationFailed",
    RESULT_CONTROL_NOT_PERMITTED: "ControlNotPermitted",
}

# Fitness Machine Status opcodes
STATUS_RESET = 0x01
STATUS_STOPPED_PAUSED_BY_USER = 0x02
STATUS_STOPPED_BY_SAFETY_KEY = 0x03
STATUS_STARTED_RESUMED_BY_USER = 0x04
STATUS_TARGET_POWER_CHANGED = 0x08
STATUS_CONTROL_PERMISSION_LOST = 0xFF

# Fitness Machine Feature: target setting bits (second uint32)
TARGET_SETTING_SPEED = 1 << 0
TARGET_SETTING_INCLINATION = 1 << 1
TARGET_SETTING_RESISTANCE = 1 << 2
TARGET_SETTING_POWER = 1 << 3
TARGET_SETTING_HEART_RATE = 1 << 4
TARGET_SETTING_INDOOR_BIKE_SIMULATION = 1 << 13
TARGET_SETTING_CADENCE = 1 << 16

# Fitness Machine Feature: machine feature bits (first uint32)
FEATURE_CADENCE = 1 << 1
FEATURE_POWER_MEASUREMENT = 1 << 14

# Indoor Bike Data flags
FLAG_MORE_DATA = 1 << 0
FLAG_AVERAGE_SPEED_PRESENT = 1 << 1
FLAG_INSTANTANEOUS_CADENCE_PRESENT = 1 << 2
FLAG_AVERAGE_CADENCE_PRESENT = 1 << 3
FLAG_TOTAL_DISTANCE_PRESENT = 1 << 4
FLAG_RESISTANCE_LEVEL_PRESENT = 1 << 5
FLAG_INSTANTANEOUS_POWER_PRESENT = 1 << 6
FLAG_AVERAGE_POWER_PRESENT = 1 << 7
FLAG_EXPENDED_ENERGY_PRESENT = 1 << 8
FLAG_HEART_RATE_PRESENT = 1 << 9
FLAG_METABOLIC_EQUIVALENT_PRESENT = 1 << 10
FLAG_ELAPSED_TIME_PRESENT = 1 << 11
FLAG_REMAINING_TIME_PRESENT = 1 << 12


@dataclass(frozen=True)
class IndoorBikeDataFlags:
    more_data: bool
    average_speed_present: bool
    instantaneous_cadence_present: bool
    average_cadence_present: bool
    total_distance_present: bool
    resistance_level_present: bool
    instantaneous_power_present: bool
    average_power_present: bool
    expended_energy_present: bool
    heart_rate_present: bool
    metabolic_equivalent_present: bool
    elapsed_time_present: bool
    remaining_time_present: bool


def parse_indoor_bike_flags(raw_flags: int) -> IndoorBikeDataFlags:
    """Decode FTMS Indoor Bike Data flags into a typed structure."""
    return IndoorBikeDataFlags(
        more_data=bool(raw_flags & FLAG_MORE_DATA),
        average_speed_present=bool(raw_flags & FLAG_AVERAGE_SPEED_PRESENT),
        instantaneous_cadence_present=bool(raw_flags & FLAG_INSTANTANEOUS_CADENCE_PRESENT),
        average_cadence_present=bool(raw_flags & FLAG_AVERAGE_CADENCE_PRESENT),
        total_distance_present=bool(raw_flags & FLAG_TOTAL_DISTANCE_PRESENT),
        resistance_level_present=bool(raw_flags & FLAG_RESISTANCE_LEVEL_PRESENT),
        instantaneous_power_present=bool(raw_flags & FLAG_INSTANTANEOUS_POWER_PRESENT),
        average_power_present=bool(raw_flags & FLAG_AVERAGE_POWER_PRESENT),
        expended_energy_present=bool(raw_flags & FLAG_EXPENDED_ENERGY_PRESENT),
        heart_rate_present=bool(raw_flags & FLAG_HEART_RATE_PRESENT),
        metabolic_equivalent_present=bool(raw_flags & FLAG_METABOLIC_EQUIVALENT_PRESENT),
        elapsed_time_present=bool(raw_flags & FLAG_ELAPSED_TIME_PRESENT),
        remaining_time_present=bool(raw_flags & FLAG_REMAINING_TIME_PRESENT),
    )


def opcode_name(opcode: int) -> str:
    return OPCODE_NAMES.get(opcode, f"0x{opcode:02X}")


def result_name(result_code: int) -> str:
    return RESULT_NAMES.get(result_code, f"0x{result_code:02X}")
