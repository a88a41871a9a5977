"""Simulated FTMS home trainer implementing the BLE capability surface."""

from __future__ import annotations

import asyncio
import contextlib
import math
import random
import struct
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from veloerg.ble.constants import (
    FEATURE_CADENCE,
    FEATURE_POWER_MEASUREMENT,
    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
    FITNESS_MACHINE_FEATURE_CHAR_UUID,
    FITNESS_MACHINE_STATUS_CHAR_UUID,
    INDOOR_BIKE_DATA_CHAR_UUID,
    OP_REQUEST_CONTROL,
    OP_RESET,
    OP_SET_TARGET_POWER,
    OP_SET_TARGETED_CADENCE,
    OP_START_RESUME,
    OP_STOP_PAUSE,
    RESULT_CONTROL_NOT_PERMITTED,
    RESULT_INVALID_PARAMETER,
    RESULT_OP_CODE_NOT_SUPPORTED,
    RESULT_SUCCESS,
    STATUS_CONTROL_PERMISSION_LOST,
    SUPPORTED_POWER_RANGE_CHAR_UUID,
    TARGET_SETTING_CADENCE,
    TARGET_SETTING_POWER,
)
from veloerg.ble.protocol import (
    encode_control_point_response,
    encode_fitness_machine_feature,
    encode_indoor_bike_data,
    encode_supported_power_range,
    normalize_power_target,
)
from veloerg.ble.transport import (
    DeviceFilter,
    DeviceHandle,
    DisconnectCallback,
    NotificationCallback,
    ScannedDevice,
)
from veloerg.core.errors import ConnectionLost, DeviceUnavailable

SIM_NAME = "Velox Sim HT"
SIM_ADDRESS = "SIM:HT:00:00:00:01"
# Power the simulated rider settles on when the trainer is not holding a target.
FREE_RIDE_WATTS = 140.0

_CONTROLLED_OPCODES = frozenset(
    {OP_RESET, OP_START_RESUME, OP_STOP_PAUSE, OP_SET_TARGET_POWER, OP_SET_TARGETED_CADENCE}
)


@dataclass
class SimulatedConnection:
    device: DeviceHandle
    on_disconnect: DisconnectCallback
    is_connected: bool = True
    subscriptions: dict[str, NotificationCallback] = field(default_factory=dict)


class SimulatedTrainer:
    """In-process trainer speaking FTMS bytes over the capability interface.

    Knobs let tests script device behaviour: opcodes that never answer,
    forced result codes, refused connects and a missing cadence target feature.
    """

    def __init__(
        self,
        *,
        target_settings: int = TARGET_SETTING_POWER | TARGET_SETTING_CADENCE,
        power_range: tuple[int, int, int] | None = (50, 1200, 5),
        telemetry_interval: float | None = 1.0,
        indication_delay: float = 0.0,
        silent_opcodes: set[int] | None = None,
        forced_results: dict[int, int] | None = None,
        refuse_connects: int = 0,
        seed: int = 20260225,
    ) -> None:
        self.target_settings = target_settings
        self.power_range = power_range
        self.telemetry_interval = telemetry_interval
        self.indication_delay = indication_delay
        self.silent_opcodes: set[int] = set(silent_opcodes or ())
        self.forced_results: dict[int, int] = dict(forced_results or {})
        self.refuse_connects = refuse_connects
        self.writes: list[bytes] = []
        self.connect_count = 0
        self.control_granted = False
        self.running = False
        self.target_watts = 120
        self.erg_engaged = False
        self.target_cadence: float | None = None
        self._connection: Optional[SimulatedConnection] = None
        self._telemetry_task: Optional[asyncio.Task[None]] = None
        self._rng = random.Random(seed)
        self._power = 100.0
        self._cadence = 85.0
        self._speed = 28.0
        self._tick = 0
        self._mode = "steady"
        self._mode_remaining = 0

    @property
    def held_watts(self) -> int | None:
        """ERG target the trainer is currently holding, None when the rider is free."""
        return self.target_watts if self.erg_engaged else None

    @property
    def written_opcodes(self) -> list[int]:
        return [payload[0] for payload in self.writes]

    async def scan(self, timeout: float = 5.0) -> list[ScannedDevice]:
        return [
            ScannedDevice(
                name=SIM_NAME,
                address=SIM_ADDRESS,
                rssi=-30,
                has_ftms=True,
                manufacturer="Velox",
            )
        ]

    async def scan_for_device(
        self, device_filter: DeviceFilter, timeout: float
    ) -> Optional[DeviceHandle]:
        if device_filter.matches(SIM_NAME, SIM_ADDRESS, [device_filter.service_uuid]):
            return DeviceHandle(name=SIM_NAME, address=SIM_ADDRESS)
        return None

    async def connect(
        self,
        device: DeviceHandle,
        *,
        on_disconnect: DisconnectCallback,
        timeout: float,
    ) -> SimulatedConnection:
        self.connect_count += 1
        if self.refuse_connects > 0:
            self.refuse_connects -= 1
            raise DeviceUnavailable(f"{device.label} did not answer")
        self.control_granted = False
        self.running = False
        self.erg_engaged = False
        self._connection = SimulatedConnection(device=device, on_disconnect=on_disconnect)
        return self._connection

    async def subscribe(
        self, connection: SimulatedConnection, characteristic: str, callback: NotificationCallback
    ) -> None:
        self._require_connected(connection)
        connection.subscriptions[characteristic] = callback
        if characteristic == INDOOR_BIKE_DATA_CHAR_UUID and self.telemetry_interval:
            if self._telemetry_task is None or self._telemetry_task.done():
                self._telemetry_task = asyncio.create_task(self._telemetry_loop(connection))

    async def read(self, connection: SimulatedConnection, characteristic: str) -> bytes:
        self._require_connected(connection)
        if characteristic == FITNESS_MACHINE_FEATURE_CHAR_UUID:
            return encode_fitness_machine_feature(
                FEATURE_CADENCE | FEATURE_POWER_MEASUREMENT, self.target_settings
            )
        if characteristic == SUPPORTED_POWER_RANGE_CHAR_UUID and self.power_range:
            return encode_supported_power_range(*self.power_range)
        raise KeyError(f"Characteristic {characteristic} not readable")

    async def write(
        self, connection: SimulatedConnection, characteristic: str, data: bytes
    ) -> None:
        self._require_connected(connection)
        if characteristic != FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID:
            raise KeyError(f"Characteristic {characteristic} not writable")
        payload = bytes(data)
        self.writes.append(payload)
        opcode = payload[0]
        result = self._apply(opcode, payload[1:])
        if opcode in self.silent_opcodes:
            logger.debug(f"[SIM-HT] swallowing opcode 0x{opcode:02X}")
            return
        result = self.forced_results.get(opcode, result)
        response = encode_control_point_response(opcode, result)
        loop = asyncio.get_running_loop()
        loop.call_later(self.indication_delay, self._indicate, connection, response)

    async def disconnect(self, connection: SimulatedConnection) -> None:
        if not connection.is_connected:
            return
        connection.is_connected = False
        await self._stop_telemetry()
        # BLE stacks report the link going down for local disconnects too.
        connection.on_disconnect()

    async def drop_connection(self) -> None:
        """Simulate the trainer vanishing (power loss, out of range)."""
        connection = self._connection
        if connection is None or not connection.is_connected:
            return
        connection.is_connected = False
        await self._stop_telemetry()
        connection.on_disconnect()

    def revoke_control(self) -> None:
        """Send Fitness Machine Status 'Control Permission Lost'."""
        self.control_granted = False
        connection = self._connection
        if connection is None:
            return
        callback = connection.subscriptions.get(FITNESS_MACHINE_STATUS_CHAR_UUID)
        if callback is not None:
            callback(bytes([STATUS_CONTROL_PERMISSION_LOST]))

    def _apply(self, opcode: int, params: bytes) -> int:
        if opcode == OP_REQUEST_CONTROL:
            self.control_granted = True
            return RESULT_SUCCESS
        if opcode in _CONTROLLED_OPCODES and not self.control_granted:
            return RESULT_CONTROL_NOT_PERMITTED
        if opcode == OP_RESET:
            self.control_granted = False
            self.running = False
            self.erg_engaged = False
            return RESULT_SUCCESS
        if opcode == OP_START_RESUME:
            self.running = True
            return RESULT_SUCCESS
        if opcode == OP_STOP_PAUSE:
            self.running = False
            self.erg_engaged = False
            return RESULT_SUCCESS
        if opcode == OP_SET_TARGET_POWER:
            if len(params) != 2:
                return RESULT_INVALID_PARAMETER
            if not self.target_settings & TARGET_SETTING_POWER:
                return RESULT_OP_CODE_NOT_SUPPORTED
            watts = struct.unpack("<h", params)[0]
            min_watts, max_watts, inc = self.power_range or (0, 2000, 1)
            self.target_watts = normalize_power_target(watts, min_watts, max_watts, inc)
            self.erg_engaged = True
            logger.debug(f"[SIM-HT] target request={watts}W applied={self.target_watts}W")
            return RESULT_SUCCESS
        if opcode == OP_SET_TARGETED_CADENCE:
            if len(params) != 2:
                return RESULT_INVALID_PARAMETER
            if not self.target_settings & TARGET_SETTING_CADENCE:
                return RESULT_OP_CODE_NOT_SUPPORTED
            self.target_cadence = struct.unpack("<H", params)[0] / 2.0
            return RESULT_SUCCESS
        return RESULT_OP_CODE_NOT_SUPPORTED

    def _indicate(self, connection: SimulatedConnection, response: bytes) -> None:
        if not connection.is_connected:
            return
        callback = connection.subscriptions.get(FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID)
        if callback is not None:
            callback(response)

    async def _stop_telemetry(self) -> None:
        task = self._telemetry_task
        self._telemetry_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _telemetry_loop(self, connection: SimulatedConnection) -> None:
        interval = self.telemetry_interval or 1.0
        while connection.is_connected:
            self._step_physics()
            callback = connection.subscriptions.get(INDOOR_BIKE_DATA_CHAR_UUID)
            if callback is not None:
                callback(
                    encode_indoor_bike_data(
                        power=int(round(self._power)),
                        cadence=round(self._cadence, 1),
                        speed_kmh=round(self._speed, 1),
                    )
                )
            await asyncio.sleep(interval)

    def _step_physics(self) -> None:
        self._tick += 1
        if self._mode_remaining <= 0:
            roll = self._rng.random()
            if roll < 0.12:
                self._mode = "surge"
                self._mode_remaining = self._rng.randint(8, 20)
            elif roll < 0.24:
                self._mode = "recovery"
                self._mode_remaining = self._rng.randint(8, 18)
            else:
                self._mode = "steady"
                self._mode_remaining = self._rng.randint(18, 45)
        self._mode_remaining -= 1

        mode_offset = 0.0
        cadence_mode_offset = 0.0
        if self._mode == "surge":
            mode_offset = self._rng.uniform(20.0, 55.0)
            cadence_mode_offset = self._rng.uniform(4.0, 11.0)
        elif self._mode == "recovery":
            mode_offset = -self._rng.uniform(15.0, 40.0)
            cadence_mode_offset = -self._rng.uniform(5.0, 12.0)

        # In ERG the trainer holds power; only noise and mode drift remain.
        base_watts = FREE_RIDE_WATTS
        if self.erg_engaged:
            base_watts = float(self.target_watts)
            mode_offset *= 0.2
        periodic = 10.0 * math.sin(self._tick / 5.0) + 6.0 * math.sin(self._tick / 11.0)
        noise = self._rng.uniform(-6.0, 6.0)
        dynamic_target = max(
            50.0, min(1200.0, base_watts + mode_offset + periodic + noise)
        )

        step = max(-30.0, min(30.0, (dynamic_target - self._power) * 0.30))
        self._power += step

        cadence_goal = (
            self.target_cadence
            if self.target_cadence is not None
            else 70.0 + (self._power / 8.8) + cadence_mode_offset
        )
        cadence_goal += 5.0 * math.sin(self._tick / 3.8) + self._rng.uniform(-4.0, 4.0)
        speed_goal = 14.0 + (self._power / 11.0) + self._rng.uniform(-2.2, 2.2)
        self._cadence += max(-5.5, min(5.5, (cadence_goal - self._cadence) * 0.55))
        self._speed += max(-2.8, min(2.8, (speed_goal - self._speed) * 0.40))
        self._cadence = max(45.0, min(128.0, self._cadence))
        self._speed = max(7.0, min(78.0, self._speed))

    @staticmethod
    def _require_connected(connection: SimulatedConnection) -> None:
        if not connection.is_connected:
            raise ConnectionLost("Simulated trainer link is down")
