from __future__ import annotations

import struct

import pytest

from veloerg.ble.constants import (
    OP_SET_TARGET_POWER,
    RESULT_INVALID_PARAMETER,
    TARGET_SETTING_CADENCE,
    TARGET_SETTING_POWER,
    parse_indoor_bike_flags,
)
from veloerg.ble.protocol import (
    encode_indoor_bike_data,
    encode_request_control,
    encode_set_target_power,
    encode_set_targeted_cadence,
    encode_start_resume,
    encode_stop_pause,
    normalize_power_target,
    parse_control_point_response,
    parse_fitness_machine_feature,
    parse_indoor_bike_data,
    parse_machine_status,
    parse_supported_power_range,
)


def test_parse_indoor_bike_flags_power_and_cadence_present() -> None:
    flags = parse_indoor_bike_flags(0x0044)
    assert flags.instantaneous_cadence_present is True
    assert flags.instantaneous_power_present is True
    assert flags.average_speed_present is False


def test_parse_indoor_bike_data_power_and_cadence() -> None:
    # Flags: cadence + power present. "More Data" is not set, so payload starts with
    # instantaneous speed (2 bytes) before cadence and power.
    payload = (
        struct.pack("<H", 0x0044)
        + struct.pack("<H", 3000)  # 30.00 km/h instantaneous speed
        + struct.pack("<H", 176)   # 88.0 rpm cadence (0.5 rpm units)
        + struct.pack("<h", 182)   # 182 W
    )

    data = parse_indoor_bike_data(payload)

    assert data.instantaneous_cadence == 88.0
    assert data.instantaneous_power == 182
    assert data.instantaneous_speed_kmh == 30.0


def test_parse_indoor_bike_data_negative_power() -> None:
    # Set "More Data" so instantaneous speed is not present.
    payload = struct.pack("<H", 0x0041) + struct.pack("<h", -10)

    data = parse_indoor_bike_data(payload)

    assert data.instantaneous_cadence is None
    assert data.instantaneous_power == -10


def test_parse_indoor_bike_data_fallback_when_speed_present_with_more_data_flag() -> None:
    # Device quirk: more_data is set but payload still includes instantaneous speed.
    payload = (
        struct.pack("<H", 0x0045)
        + struct.pack("<H", 2500)  # 25.00 km/h instantaneous speed
        + struct.pack("<H", 170)   # 85.0 rpm cadence
        + struct.pack("<h", 260)   # 260 W
    )

    data = parse_indoor_bike_data(payload)

    assert data.instantaneous_cadence == 85.0
    assert data.instantaneous_power == 260


def test_parse_indoor_bike_data_skips_optional_fields() -> None:
    # Speed, average speed, cadence, total distance (3 bytes), power, heart rate.
    flags = 0x0002 | 0x0004 | 0x0010 | 0x0040 | 0x0200
    payload = (
        struct.pack("<H", flags)
        + struct.pack("<H", 3210)
        + struct.pack("<H", 3000)
        + struct.pack("<H", 180)
        + bytes([0x10, 0x27, 0x00])
        + struct.pack("<h", 240)
        + bytes([142])
    )

    data = parse_indoor_bike_data(payload)

    assert data.instantaneous_speed_kmh == 32.1
    assert data.instantaneous_cadence == 90.0
    assert data.instantaneous_power == 240


def test_parse_indoor_bike_data_rejects_truncated_payload() -> None:
    with pytest.raises(ValueError):
        parse_indoor_bike_data(b"\x44")
    with pytest.raises(ValueError):
        parse_indoor_bike_data(struct.pack("<H", 0x0044) + b"\x01")


def test_encode_indoor_bike_data_is_read_back() -> None:
    data = parse_indoor_bike_data(encode_indoor_bike_data(215, 92.5, 33.4))

    assert data.instantaneous_power == 215
    assert data.instantaneous_cadence == 92.5
    assert data.instantaneous_speed_kmh == 33.4


def test_control_point_request_encodings() -> None:
    assert encode_request_control() == b"\x00"
    assert encode_start_resume() == b"\x07"
    assert encode_stop_pause() == b"\x08\x01"
    assert encode_stop_pause(stop=False) == b"\x08\x02"
    assert encode_set_target_power(250) == b"\x05\xfa\x00"
    assert encode_set_target_power(-5) == b"\x05\xfb\xff"
    # 0.5 rpm resolution: 90 rpm -> 180
    assert encode_set_targeted_cadence(90) == b"\x14\xb4\x00"
    assert encode_set_targeted_cadence(87.5) == b"\x14\xaf\x00"


def test_encode_set_target_power_out_of_range() -> None:
    with pytest.raises(ValueError):
        encode_set_target_power(40000)


def test_parse_control_point_response() -> None:
    response = parse_control_point_response(bytes([0x80, OP_SET_TARGET_POWER, 0x03]))

    assert response.request_opcode == OP_SET_TARGET_POWER
    assert response.result_code == RESULT_INVALID_PARAMETER
    assert response.parameter == b""


def test_parse_control_point_response_rejects_non_response_payloads() -> None:
    with pytest.raises(ValueError):
        parse_control_point_response(b"\x80\x05")
    with pytest.raises(ValueError):
        parse_control_point_response(b"\x05\x05\x01")


def test_parse_fitness_machine_feature_target_bits() -> None:
    payload = struct.pack("<II", 0x4002, TARGET_SETTING_POWER)

    features = parse_fitness_machine_feature(payload)

    assert features.supports_power_target
    assert not features.supports_cadence_target

    both = parse_fitness_machine_feature(
        struct.pack("<II", 0, TARGET_SETTING_POWER | TARGET_SETTING_CADENCE)
    )
    assert both.supports_cadence_target


def test_parse_fitness_machine_feature_requires_eight_bytes() -> None:
    with pytest.raises(ValueError):
        parse_fitness_machine_feature(b"\x00\x00\x00\x00")


def test_parse_supported_power_range() -> None:
    power_range = parse_supported_power_range(struct.pack("<hhH", 25, 1500, 0))

    assert power_range.min_watts == 25
    assert power_range.max_watts == 1500
    # A zero increment would make alignment divide by zero.
    assert power_range.increment_watts == 1


def test_parse_machine_status() -> None:
    assert parse_machine_status(b"\xff") == (0xFF, b"")
    assert parse_machine_status(b"\x08\xc8\x00") == (0x08, b"\xc8\x00")
    with pytest.raises(ValueError):
        parse_machine_status(b"")


def test_normalize_power_target_clamps_to_supported_range() -> None:
    assert normalize_power_target(20, 30, 400, 5) == 30
    assert normalize_power_target(420, 30, 400, 5) == 400


def test_normalize_power_target_aligns_to_increment() -> None:
    assert normalize_power_target(33, 30, 400, 5) == 35
    assert normalize_power_target(32, 30, 400, 5) == 30
