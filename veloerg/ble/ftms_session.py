"""FTMS control session: capability negotiation, control-point handshake, telemetry."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from veloerg.ble.constants import (
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
    RESULT_OPERATION_FAILED,
    RESULT_SUCCESS,
    STATUS_CONTROL_PERMISSION_LOST,
    STATUS_RESET,
    SUPPORTED_POWER_RANGE_CHAR_UUID,
    opcode_name,
    result_name,
)
from veloerg.ble.protocol import (
    ControlPointResponse,
    FitnessMachineFeatures,
    SupportedPowerRange,
    encode_request_control,
    encode_reset,
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
from veloerg.ble.transport import BleCapability, DeviceFilter, wait_bounded
from veloerg.core.config import SessionConfig
from veloerg.core.errors import (
    CommandTimeout,
    ConnectionLost,
    ControlPointBusy,
    ControlRejected,
    DeviceUnavailable,
    ProtocolError,
)
from veloerg.core.state import TelemetrySample


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    REQUESTING_CONTROL = "requesting_control"
    CONTROL_GRANTED = "control_granted"
    EXECUTING = "executing"


class ControlPermission(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    GRANTED = "granted"
    REVOKED = "revoked"


@dataclass(frozen=True)
class ControlCommand:
    opcode: int
    payload: bytes

    @property
    def name(self) -> str:
        return opcode_name(self.opcode)


@dataclass(frozen=True)
class ControlSessionState:
    connection_state: SessionState
    control_permission: ControlPermission
    last_acked_command: ControlCommand | None
    pending_command: ControlCommand | None


@dataclass
class _PendingRequest:
    command: ControlCommand
    future: asyncio.Future[ControlPointResponse]


def _encode_target(opcode: int, encoder: Callable[[Any], bytes], value: float) -> bytes:
    # Out-of-range values never reach the trainer; report them like its own refusal.
    try:
        return encoder(value)
    except (ValueError, OverflowError) as exc:
        raise ControlRejected(opcode, RESULT_INVALID_PARAMETER, str(exc)) from exc


TelemetryCallback = Callable[[TelemetrySample], None]
ConnectionLostCallback = Callable[[ConnectionLost], None]


class FTMSSession:
    """Drives one FTMS trainer over an explicit BLE capability.

    The control point accepts one request at a time: every write occupies the
    pending slot until the matching indication arrives, the timeout fires, or
    stop() aborts it. Telemetry notifications bypass the slot entirely.
    """

    def __init__(
        self,
        capability: BleCapability,
        config: SessionConfig | None = None,
        *,
        on_telemetry: TelemetryCallback | None = None,
        on_connection_lost: ConnectionLostCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capability = capability
        self._config = config or SessionConfig()
        self.on_telemetry = on_telemetry
        self.on_connection_lost = on_connection_lost
        self._clock = clock
        self._connection: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = SessionState.DISCONNECTED
        self._permission = ControlPermission.NONE
        self._pending: Optional[_PendingRequest] = None
        self._last_acked: Optional[ControlCommand] = None
        self._consecutive_timeouts = 0
        self._closing = False
        self._device_label: str | None = None
        self._features: FitnessMachineFeatures | None = None
        self._power_range: SupportedPowerRange | None = None
        self.malformed_notifications = 0

    @property
    def connection_state(self) -> SessionState:
        return self._state

    @property
    def control_permission(self) -> ControlPermission:
        return self._permission

    @property
    def is_connected(self) -> bool:
        return self._state is not SessionState.DISCONNECTED and self._connection is not None

    @property
    def has_control(self) -> bool:
        return self._permission is ControlPermission.GRANTED

    @property
    def device_label(self) -> str | None:
        return self._device_label

    @property
    def features(self) -> FitnessMachineFeatures | None:
        return self._features

    @property
    def power_range(self) -> SupportedPowerRange | None:
        return self._power_range

    @property
    def snapshot(self) -> ControlSessionState:
        return ControlSessionState(
            connection_state=self._state,
            control_permission=self._permission,
            last_acked_command=self._last_acked,
            pending_command=self._pending.command if self._pending else None,
        )

    async def connect(self, target: Optional[str] = None) -> str:
        """Connect to a BLE address/name, or the first FTMS advertiser."""
        if self.is_connected:
            return self._device_label or "connected"

        self._loop = asyncio.get_running_loop()
        self._state = SessionState.CONNECTING
        self._closing = False
        try:
            device = await self._capability.scan_for_device(
                DeviceFilter(target=target), timeout=self._config.scan_timeout_sec
            )
            if device is None:
                raise DeviceUnavailable("No FTMS device found")

            logger.info(f"Connecting to {device.label}")
            self._connection = await self._capability.connect(
                device,
                on_disconnect=self._handle_disconnect,
                timeout=self._config.connect_timeout_sec,
            )
            await self._read_capabilities()
            await self._capability.subscribe(
                self._connection,
                FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
                self._handle_control_point_indication,
            )
            await self._capability.subscribe(
                self._connection,
                INDOOR_BIKE_DATA_CHAR_UUID,
                self._handle_indoor_bike_data,
            )
            try:
                await self._capability.subscribe(
                    self._connection,
                    FITNESS_MACHINE_STATUS_CHAR_UUID,
                    self._handle_machine_status,
                )
            except Exception as exc:  # pragma: no cover - optional BLE characteristic
                logger.debug(f"[FTMS] machine status unavailable: {exc}")
        except Exception as exc:
            await self._abandon_connection()
            if isinstance(exc, DeviceUnavailable):
                raise
            raise DeviceUnavailable(f"Unable to set up FTMS session: {exc}") from exc

        self._device_label = device.label
        self._state = SessionState.IDLE
        self._consecutive_timeouts = 0
        logger.info(f"Connected to {device.label}")
        return device.label

    async def request_control(self) -> None:
        self._check_slot(OP_REQUEST_CONTROL)
        if not self.is_connected:
            raise ConnectionLost("Not connected")
        self._state = SessionState.REQUESTING_CONTROL
        self._permission = ControlPermission.REQUESTED
        try:
            await self._execute(ControlCommand(OP_REQUEST_CONTROL, encode_request_control()))
        except ProtocolError:
            if self.is_connected:
                self._state = SessionState.IDLE
                self._permission = ControlPermission.NONE
            raise
        self._permission = ControlPermission.GRANTED
        self._state = SessionState.CONTROL_GRANTED
        logger.info("Trainer granted control")

    async def start_or_resume(self) -> None:
        await self._execute_controlled(ControlCommand(OP_START_RESUME, encode_start_resume()))
        self._state = SessionState.EXECUTING

    async def stop_or_pause(self, stop: bool = True) -> None:
        await self._execute_controlled(ControlCommand(OP_STOP_PAUSE, encode_stop_pause(stop)))
        self._state = SessionState.CONTROL_GRANTED

    async def reset(self) -> None:
        await self._execute_controlled(ControlCommand(OP_RESET, encode_reset()))
        # The trainer drops control permission after a reset.
        self._permission = ControlPermission.NONE
        self._state = SessionState.IDLE

    async def set_target_power(self, watts: int) -> int:
        """Set the ERG target; returns the watts actually sent after range alignment."""
        if self._features is not None and not self._features.supports_power_target:
            raise ControlRejected(
                OP_SET_TARGET_POWER,
                RESULT_OP_CODE_NOT_SUPPORTED,
                "trainer does not advertise power target setting",
            )
        applied = watts
        if self._power_range is not None:
            applied = normalize_power_target(
                watts,
                self._power_range.min_watts,
                self._power_range.max_watts,
                self._power_range.increment_watts,
            )
            if applied != watts:
                logger.debug(
                    f"[FTMS] adjusted ERG target {watts}W -> {applied}W "
                    f"(range {self._power_range.min_watts}-{self._power_range.max_watts}W, "
                    f"step {self._power_range.increment_watts}W)"
                )
        payload = _encode_target(OP_SET_TARGET_POWER, encode_set_target_power, applied)
        await self._execute_controlled(ControlCommand(OP_SET_TARGET_POWER, payload))
        self._state = SessionState.EXECUTING
        return applied

    async def set_target_cadence(self, rpm: float) -> float:
        if self._features is not None and not self._features.supports_cadence_target:
            raise ControlRejected(
                OP_SET_TARGETED_CADENCE,
                RESULT_OP_CODE_NOT_SUPPORTED,
                "trainer does not advertise cadence target setting",
            )
        payload = _encode_target(OP_SET_TARGETED_CADENCE, encode_set_targeted_cadence, rpm)
        await self._execute_controlled(ControlCommand(OP_SET_TARGETED_CADENCE, payload))
        self._state = SessionState.EXECUTING
        return round(rpm * 2) / 2.0

    async def stop(self) -> None:
        """Best-effort Stop then disconnect, bounded by stop_timeout_sec.

        Safe at any time: an in-flight request is aborted with ConnectionLost
        so its waiter returns immediately.
        """
        self._closing = True
        self._abort_pending(ConnectionLost("Session stopped"))
        connection = self._connection
        if connection is None:
            self._reset_to_disconnected()
            return

        timeout = self._config.stop_timeout_sec
        try:
            await wait_bounded(self._stop_sequence(connection), timeout, "FTMS stop sequence")
        finally:
            self._reset_to_disconnected()
            logger.info("FTMS session closed")

    async def _stop_sequence(self, connection: Any) -> None:
        if self.has_control:
            try:
                await self._execute(
                    ControlCommand(OP_STOP_PAUSE, encode_stop_pause(True)), escalate=False
                )
            except (ProtocolError, ConnectionLost) as exc:
                logger.warning(f"Trainer did not acknowledge Stop ({exc}), disconnecting anyway")
        try:
            await self._capability.disconnect(connection)
        except Exception as exc:  # pragma: no cover - BLE runtime variability
            logger.warning(f"Disconnect failed: {exc}")

    async def _execute_controlled(self, command: ControlCommand) -> ControlPointResponse:
        self._check_slot(command.opcode)
        if not self.has_control:
            raise ControlRejected(
                command.opcode,
                RESULT_CONTROL_NOT_PERMITTED,
                "control has not been granted",
            )
        return await self._execute(command)

    def _check_slot(self, opcode: int) -> None:
        if self._pending is not None:
            raise ControlPointBusy(opcode, self._pending.command.opcode)

    async def _execute(
        self, command: ControlCommand, *, escalate: bool = True
    ) -> ControlPointResponse:
        self._check_slot(command.opcode)
        connection = self._connection
        if connection is None or self._state is SessionState.DISCONNECTED:
            raise ConnectionLost("Not connected")

        loop = asyncio.get_running_loop()
        self._loop = loop
        pending = _PendingRequest(command=command, future=loop.create_future())
        self._pending = pending
        timeout = self._config.command_timeout_sec
        logger.debug(f"[FTMS-CP] -> {command.name} payload={command.payload.hex(' ')}")
        try:
            try:
                await self._capability.write(
                    connection, FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, command.payload
                )
            except ConnectionLost:
                raise
            except Exception as exc:  # pragma: no cover - BLE runtime variability
                raise ControlRejected(
                    command.opcode, RESULT_OPERATION_FAILED, f"write failed: {exc}"
                ) from exc

            try:
                response = await asyncio.wait_for(pending.future, timeout=timeout)
            except TimeoutError:
                self._consecutive_timeouts += 1
                failure = CommandTimeout(command.opcode, timeout)
                logger.warning(
                    f"[FTMS-CP] {failure} "
                    f"({self._consecutive_timeouts}/{self._config.max_command_timeouts})"
                )
                if escalate and self._consecutive_timeouts >= self._config.max_command_timeouts:
                    lost = ConnectionLost(
                        f"{self._consecutive_timeouts} consecutive control point timeouts"
                    )
                    await self._escalate(lost)
                    raise lost from failure
                raise failure from None
        finally:
            if self._pending is pending:
                self._pending = None

        self._consecutive_timeouts = 0
        if response.result_code != RESULT_SUCCESS:
            logger.warning(
                f"[FTMS-CP] {command.name} answered {result_name(response.result_code)}"
            )
            raise ControlRejected(
                command.opcode, response.result_code, result_name(response.result_code)
            )
        self._last_acked = command
        logger.debug(f"[FTMS-CP] <- {command.name} Success")
        return response

    async def _escalate(self, exc: ConnectionLost) -> None:
        connection = self._connection
        self._closing = True
        self._mark_connection_lost(exc)
        if connection is not None:
            with contextlib.suppress(Exception):
                await wait_bounded(
                    self._capability.disconnect(connection),
                    self._config.stop_timeout_sec,
                    "disconnect after escalation",
                )

    def _abort_pending(self, exc: Exception) -> None:
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.future.done():
            logger.debug(f"[FTMS-CP] aborting pending {pending.command.name}")
            pending.future.set_exception(exc)

    async def _read_capabilities(self) -> None:
        try:
            raw = await self._capability.read(
                self._connection, FITNESS_MACHINE_FEATURE_CHAR_UUID
            )
            self._features = parse_fitness_machine_feature(raw)
            logger.info(
                "Trainer target settings: "
                f"power={'yes' if self._features.supports_power_target else 'no'} "
                f"cadence={'yes' if self._features.supports_cadence_target else 'no'}"
            )
        except Exception as exc:  # pragma: no cover - BLE runtime variability
            self._features = None
            logger.warning(f"[FTMS] feature characteristic unreadable ({exc}); targets unverified")

        try:
            raw = await self._capability.read(self._connection, SUPPORTED_POWER_RANGE_CHAR_UUID)
            self._power_range = parse_supported_power_range(raw)
            logger.debug(
                f"[FTMS] supported power range: min={self._power_range.min_watts}W "
                f"max={self._power_range.max_watts}W step={self._power_range.increment_watts}W"
            )
        except Exception as exc:  # pragma: no cover - optional BLE characteristic
            self._power_range = None
            logger.debug(f"[FTMS] supported power range unavailable: {exc}")

    async def _abandon_connection(self) -> None:
        connection = self._connection
        self._closing = True
        if connection is not None:
            with contextlib.suppress(Exception):
                await self._capability.disconnect(connection)
        self._reset_to_disconnected()

    def _reset_to_disconnected(self) -> None:
        self._connection = None
        self._state = SessionState.DISCONNECTED
        self._permission = ControlPermission.NONE
        self._pending = None

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        # Notifications may arrive on a backend thread; state lives on the loop.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _handle_disconnect(self) -> None:
        if self._closing:
            return
        self._call_in_loop(self._mark_connection_lost, ConnectionLost("Trainer disconnected"))

    def _mark_connection_lost(self, exc: ConnectionLost) -> None:
        if self._state is SessionState.DISCONNECTED:
            return
        logger.error(f"FTMS connection lost: {exc}")
        self._abort_pending(exc)
        self._reset_to_disconnected()
        if self.on_connection_lost is not None:
            self.on_connection_lost(exc)

    def _handle_control_point_indication(self, data: bytes) -> None:
        try:
            response = parse_control_point_response(data)
        except ValueError as exc:
            self.malformed_notifications += 1
            logger.warning(f"[FTMS-CP] {exc}")
            return
        self._call_in_loop(self._resolve_pending, response)

    def _resolve_pending(self, response: ControlPointResponse) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            logger.warning(
                f"[FTMS-CP] unsolicited response for {opcode_name(response.request_opcode)}"
            )
            return
        if response.request_opcode != pending.command.opcode:
            logger.warning(
                f"[FTMS-CP] response for {opcode_name(response.request_opcode)} "
                f"while waiting for {pending.command.name}"
            )
            return
        pending.future.set_result(response)

    def _handle_indoor_bike_data(self, data: bytes) -> None:
        try:
            metrics = parse_indoor_bike_data(data)
        except ValueError as exc:
            self.malformed_notifications += 1
            logger.warning(f"[FTMS] {exc} payload={data.hex(' ')}")
            return
        sample = TelemetrySample(
            power=metrics.instantaneous_power,
            cadence=metrics.instantaneous_cadence,
            speed_kmh=metrics.instantaneous_speed_kmh,
            timestamp=self._clock(),
        )
        logger.trace(f"[FTMS] payload={data.hex(' ')} sample={sample}")
        if self.on_telemetry is not None:
            self.on_telemetry(sample)

    def _handle_machine_status(self, data: bytes) -> None:
        try:
            opcode, _params = parse_machine_status(data)
        except ValueError as exc:
            self.malformed_notifications += 1
            logger.warning(f"[FTMS] {exc}")
            return
        if opcode in (STATUS_CONTROL_PERMISSION_LOST, STATUS_RESET):
            self._call_in_loop(self._revoke_control, opcode)
        else:
            logger.debug(f"[FTMS] machine status 0x{opcode:02X}")

    def _revoke_control(self, opcode: int) -> None:
        if self._state is SessionState.DISCONNECTED:
            return
        logger.warning(f"Trainer revoked control permission (status 0x{opcode:02X})")
        self._permission = ControlPermission.REVOKED
        if self._state in (SessionState.CONTROL_GRANTED, SessionState.EXECUTING):
            self._state = SessionState.IDLE
