from __future__ import annotations

import asyncio
import struct
import time

import pytest

from veloerg.ble.constants import (
    OP_REQUEST_CONTROL,
    OP_SET_TARGET_POWER,
    OP_SET_TARGETED_CADENCE,
    OP_START_RESUME,
    OP_STOP_PAUSE,
    RESULT_CONTROL_NOT_PERMITTED,
    RESULT_INVALID_PARAMETER,
    RESULT_OPERATION_FAILED,
    TARGET_SETTING_POWER,
)
from veloerg.ble.ftms_session import FTMSSession, SessionState
from veloerg.ble.simulator import SimulatedTrainer
from veloerg.core.config import ControlLoopConfig, SessionConfig
from veloerg.core.control_loop import ControlEvent, ControlLoop, EventKind, LoopStatus
from veloerg.core.errors import (
    CommandTimeout,
    ControlDenied,
    ControlRejected,
    DeviceUnavailable,
    InvalidElapsed,
    InvalidSegment,
    SessionDegraded,
)
from veloerg.core.state import TelemetrySample
from veloerg.workout.model import FreeRide, IntervalsRepeat, Ramp, SteadyState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _power_writes(trainer: SimulatedTrainer) -> list[int]:
    return [
        struct.unpack("<h", payload[1:3])[0]
        for payload in trainer.writes
        if payload[0] == OP_SET_TARGET_POWER
    ]


def _build(
    trainer: SimulatedTrainer,
    *,
    session_config: SessionConfig | None = None,
    loop_config: ControlLoopConfig | None = None,
) -> tuple[ControlLoop, FakeClock, list[ControlEvent]]:
    clock = FakeClock()
    events: list[ControlEvent] = []
    session = FTMSSession(
        trainer, session_config or SessionConfig(command_timeout_sec=0.2, stop_timeout_sec=0.5)
    )
    loop = ControlLoop(
        session,
        loop_config or ControlLoopConfig(start_retry_delay_sec=0.0),
        clock=clock,
        on_event=events.append,
    )
    return loop, clock, events


def _kinds(events: list[ControlEvent]) -> list[EventKind]:
    return [event.kind for event in events]


def test_steady_then_ramp_targets_and_completion() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, events = _build(trainer)
        await loop.start(
            [SteadyState(60, 150), Ramp(30, 150, 250)], autotick=False
        )
        assert trainer.written_opcodes == [OP_REQUEST_CONTROL, OP_START_RESUME]

        progress = await loop.tick()
        assert progress.target_power_watts == 150
        assert progress.status is LoopStatus.RUNNING

        clock.advance(59)
        progress = await loop.tick()
        assert progress.target_power_watts == 150

        clock.advance(16)
        progress = await loop.tick()
        assert progress.elapsed_sec == 75
        assert progress.target_power_watts == 200

        clock.advance(15)
        progress = await loop.tick()
        assert progress.target_power_watts == 250
        assert progress.status is LoopStatus.WORKOUT_COMPLETE
        assert _power_writes(trainer) == [150, 200]
        assert trainer.written_opcodes[-1] == OP_STOP_PAUSE
        assert EventKind.WORKOUT_COMPLETE in _kinds(events)

        writes = len(trainer.writes)
        clock.advance(30)
        progress = await loop.tick()
        assert progress.elapsed_sec == 90
        assert len(trainer.writes) == writes

    asyncio.run(_run())


def test_interval_targets_follow_on_off_phases() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, _events = _build(trainer)
        await loop.start(
            [IntervalsRepeat(3, 30, 300, 30, 100)], autotick=False
        )

        await loop.tick()
        clock.advance(45)
        progress = await loop.tick()
        assert progress.target_power_watts == 100
        assert progress.phase_label.endswith("1/3 off")

        clock.advance(20)
        progress = await loop.tick()
        assert progress.target_power_watts == 300
        assert progress.phase_index == 2

        assert _power_writes(trainer) == [300, 100, 300]
        await loop.stop()

    asyncio.run(_run())


def test_deadband_suppresses_redundant_writes() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, _events = _build(
            trainer,
            loop_config=ControlLoopConfig(power_deadband_watts=3.0, start_retry_delay_sec=0.0),
        )
        await loop.start([Ramp(60, 200, 230)], autotick=False)

        for _ in range(20):
            await loop.tick()
            clock.advance(1)

        writes = _power_writes(trainer)
        assert writes[0] == 200
        assert len(writes) < 20
        assert all(b - a > 3 for a, b in zip(writes, writes[1:]))
        await loop.stop()

    asyncio.run(_run())


def test_rejected_target_is_retried_then_degrades() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(
            telemetry_interval=None,
            forced_results={OP_SET_TARGET_POWER: RESULT_OPERATION_FAILED},
        )
        loop, clock, events = _build(
            trainer,
            loop_config=ControlLoopConfig(
                max_consecutive_failures=2,
                retry_backoff_sec=1.0,
                start_retry_delay_sec=0.0,
            ),
        )
        await loop.start([SteadyState(600, 200)], autotick=False)

        await loop.tick()
        assert isinstance(loop.last_error, ControlRejected)
        assert loop.status is LoopStatus.RUNNING

        clock.advance(1)
        await loop.tick()
        assert len(_power_writes(trainer)) == 2

        # Backoff doubled to 2s, so this tick is not eligible.
        clock.advance(1)
        await loop.tick()
        assert len(_power_writes(trainer)) == 2

        clock.advance(1)
        progress = await loop.tick()
        assert progress.status is LoopStatus.SESSION_DEGRADED
        assert isinstance(progress.last_error, SessionDegraded)
        assert isinstance(progress.last_error.__cause__, ControlRejected)
        assert _power_writes(trainer) == [200, 200, 200]
        assert _kinds(events).count(EventKind.COMMAND_FAILED) == 2
        assert EventKind.SESSION_DEGRADED in _kinds(events)

        clock.advance(10)
        await loop.tick()
        assert len(_power_writes(trainer)) == 3
        assert loop._session.is_connected

        await loop.stop()
        assert loop.status is LoopStatus.SESSION_DEGRADED
        assert loop._session.connection_state is SessionState.DISCONNECTED

    asyncio.run(_run())


def test_timeouts_are_retried_then_degrade_without_disconnect() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None, silent_opcodes={OP_SET_TARGET_POWER})
        loop, clock, events = _build(
            trainer,
            session_config=SessionConfig(command_timeout_sec=0.05, stop_timeout_sec=0.3),
            loop_config=ControlLoopConfig(max_consecutive_failures=3, start_retry_delay_sec=0.0),
        )
        await loop.start([SteadyState(600, 180)], autotick=False)

        for _ in range(4):
            await loop.tick()
            clock.advance(10)

        assert loop.status is LoopStatus.SESSION_DEGRADED
        assert isinstance(loop.last_error.__cause__, CommandTimeout)
        assert _power_writes(trainer) == [180, 180, 180, 180]
        assert loop._session.is_connected
        assert EventKind.CONNECTION_LOST not in _kinds(events)
        await loop.stop()

    asyncio.run(_run())


def test_successful_write_clears_failure_count() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(
            telemetry_interval=None,
            forced_results={OP_SET_TARGET_POWER: RESULT_OPERATION_FAILED},
        )
        loop, clock, _events = _build(
            trainer,
            loop_config=ControlLoopConfig(max_consecutive_failures=1, start_retry_delay_sec=0.0),
        )
        await loop.start([SteadyState(600, 200)], autotick=False)

        await loop.tick()
        trainer.forced_results.clear()
        clock.advance(5)
        progress = await loop.tick()

        assert progress.status is LoopStatus.RUNNING
        assert progress.acked_power_watts == 200
        await loop.stop()

    asyncio.run(_run())


def test_unsupported_cadence_is_reported_and_dropped() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None, target_settings=TARGET_SETTING_POWER)
        loop, clock, events = _build(trainer)
        await loop.start([SteadyState(120, 200, cadence=90)], autotick=False)

        progress = await loop.tick()
        assert progress.status is LoopStatus.RUNNING
        assert progress.acked_power_watts == 200
        assert progress.target_cadence_rpm is None
        assert EventKind.CADENCE_UNSUPPORTED in _kinds(events)

        clock.advance(5)
        await loop.tick()
        assert _kinds(events).count(EventKind.CADENCE_UNSUPPORTED) == 1
        assert OP_SET_TARGETED_CADENCE not in trainer.written_opcodes
        await loop.stop()

    asyncio.run(_run())


def test_cadence_targets_are_sent_when_supported() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, _events = _build(trainer)
        await loop.start(
            [IntervalsRepeat(2, 30, 300, 30, 120, cadence=100, off_cadence=85)],
            autotick=False,
        )

        await loop.tick()
        assert trainer.target_cadence == 100
        clock.advance(30)
        progress = await loop.tick()
        assert trainer.target_cadence == 85
        assert progress.acked_cadence_rpm == 85
        await loop.stop()

    asyncio.run(_run())


def test_free_ride_releases_erg_and_next_phase_resumes() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, events = _build(trainer)
        await loop.start(
            [SteadyState(10, 300), FreeRide(60), SteadyState(10, 200)], autotick=False
        )

        await loop.tick()
        assert trainer.held_watts == 300

        clock.advance(20)
        progress = await loop.tick()
        assert progress.target_power_watts is None
        assert progress.acked_power_watts is None
        assert trainer.held_watts is None
        assert trainer.writes[-1] == bytes([OP_STOP_PAUSE, 0x02])
        assert EventKind.ERG_RELEASED in _kinds(events)

        writes = len(trainer.writes)
        clock.advance(5)
        await loop.tick()
        assert len(trainer.writes) == writes

        clock.advance(50)
        progress = await loop.tick()
        assert trainer.written_opcodes[-2:] == [OP_START_RESUME, OP_SET_TARGET_POWER]
        assert trainer.held_watts == 200
        assert progress.acked_power_watts == 200
        assert _power_writes(trainer) == [300, 200]
        await loop.stop()

    asyncio.run(_run())


def test_failing_cadence_degrades_while_power_keeps_succeeding() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(
            telemetry_interval=None,
            forced_results={OP_SET_TARGETED_CADENCE: RESULT_INVALID_PARAMETER},
        )
        loop, clock, events = _build(
            trainer,
            loop_config=ControlLoopConfig(max_consecutive_failures=3, start_retry_delay_sec=0.0),
        )
        await loop.start([Ramp(600, 100, 700, cadence=90)], autotick=False)

        for _ in range(40):
            await loop.tick()
            clock.advance(2)

        cadence_writes = trainer.written_opcodes.count(OP_SET_TARGETED_CADENCE)
        assert loop.status is LoopStatus.SESSION_DEGRADED
        assert cadence_writes == 4
        assert len(_power_writes(trainer)) > cadence_writes
        assert isinstance(loop.last_error.__cause__, ControlRejected)
        assert _kinds(events).count(EventKind.COMMAND_FAILED) == 3
        await loop.stop()

    asyncio.run(_run())


def test_unencodable_power_is_reported_not_raised() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None, power_range=None)
        loop, _clock, events = _build(trainer)
        await loop.start([SteadyState(600, 40000)], autotick=False)

        progress = await loop.tick()

        assert progress.status is LoopStatus.RUNNING
        assert isinstance(progress.last_error, ControlRejected)
        assert progress.last_error.result_code == RESULT_INVALID_PARAMETER
        assert _power_writes(trainer) == []
        assert EventKind.COMMAND_FAILED in _kinds(events)
        await loop.stop()

    asyncio.run(_run())


def test_stop_while_write_in_flight_returns_promptly() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None, silent_opcodes={OP_SET_TARGET_POWER})
        loop, _clock, events = _build(
            trainer,
            session_config=SessionConfig(command_timeout_sec=5.0, stop_timeout_sec=0.5),
        )
        await loop.start([SteadyState(600, 200)], autotick=False)

        tick = asyncio.create_task(loop.tick())
        for _ in range(100):
            if loop._session.snapshot.pending_command is not None:
                break
            await asyncio.sleep(0)

        started = time.monotonic()
        progress = await loop.stop()
        assert time.monotonic() - started < 1.0
        await tick

        assert progress.status is LoopStatus.STOPPED
        assert loop._session.connection_state is SessionState.DISCONNECTED
        assert EventKind.CONNECTION_LOST not in _kinds(events)
        assert _kinds(events)[-1] is EventKind.STOPPED

    asyncio.run(_run())


def test_connection_lost_then_resume_from_elapsed() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, events = _build(trainer)
        workout = [SteadyState(60, 150), SteadyState(60, 250)]
        await loop.start(workout, autotick=False)
        await loop.tick()
        clock.advance(70)
        await loop.tick()

        await trainer.drop_connection()
        await asyncio.sleep(0)
        assert loop.status is LoopStatus.CONNECTION_LOST
        assert EventKind.CONNECTION_LOST in _kinds(events)

        writes = len(trainer.writes)
        clock.advance(5)
        await loop.tick()
        assert len(trainer.writes) == writes

        resume_at = loop.elapsed
        await loop.start(workout, initial_elapsed=resume_at, autotick=False)
        progress = await loop.tick()
        assert progress.status is LoopStatus.RUNNING
        assert progress.elapsed_sec == 70
        assert progress.target_power_watts == 250
        assert trainer.connect_count == 2
        await loop.stop()

    asyncio.run(_run())


def test_control_permission_lost_is_requested_again() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, clock, events = _build(trainer)
        await loop.start([SteadyState(600, 200)], autotick=False)
        await loop.tick()

        trainer.revoke_control()
        await asyncio.sleep(0)
        clock.advance(1)
        progress = await loop.tick()

        assert progress.status is LoopStatus.RUNNING
        assert trainer.written_opcodes.count(OP_REQUEST_CONTROL) == 2
        assert _power_writes(trainer) == [200, 200]
        assert EventKind.CONTROL_REGAINED in _kinds(events)
        await loop.stop()

    asyncio.run(_run())


def test_skip_phase_jumps_to_next_phase() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, _clock, _events = _build(trainer)
        await loop.start([SteadyState(60, 150), SteadyState(60, 250)], autotick=False)
        await loop.tick()

        progress = await loop.skip_phase()

        assert progress.elapsed_sec == 60
        assert progress.target_power_watts == 250
        assert _power_writes(trainer) == [150, 250]
        await loop.stop()

    asyncio.run(_run())


def test_concurrent_ticks_never_overlap_writes() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None, indication_delay=0.02)
        loop, clock, events = _build(trainer)
        await loop.start([Ramp(120, 100, 340)], autotick=False)

        clock.advance(1)
        await asyncio.gather(*(loop.tick() for _ in range(5)))

        assert EventKind.COMMAND_FAILED not in _kinds(events)
        assert loop.last_error is None
        await loop.stop()

    asyncio.run(_run())


def test_start_raises_device_unavailable_after_attempts() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None, refuse_connects=5)
        loop, _clock, events = _build(
            trainer,
            loop_config=ControlLoopConfig(connect_attempts=2, start_retry_delay_sec=0.0),
        )

        with pytest.raises(DeviceUnavailable):
            await loop.start([SteadyState(60, 150)], autotick=False)
        assert trainer.connect_count == 2
        assert loop.status is LoopStatus.DEVICE_UNAVAILABLE
        assert _kinds(events) == [EventKind.DEVICE_UNAVAILABLE]

    asyncio.run(_run())


def test_start_raises_control_denied_after_attempts() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(
            telemetry_interval=None,
            forced_results={OP_REQUEST_CONTROL: RESULT_CONTROL_NOT_PERMITTED},
        )
        loop, _clock, _events = _build(
            trainer,
            loop_config=ControlLoopConfig(control_attempts=2, start_retry_delay_sec=0.0),
        )

        with pytest.raises(ControlDenied):
            await loop.start([SteadyState(60, 150)], autotick=False)
        assert trainer.written_opcodes.count(OP_REQUEST_CONTROL) == 2
        assert loop.status is LoopStatus.CONTROL_DENIED
        assert loop._session.connection_state is SessionState.DISCONNECTED

    asyncio.run(_run())


def test_start_validates_before_touching_the_device() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        loop, _clock, _events = _build(trainer)

        with pytest.raises(InvalidSegment):
            await loop.start([], autotick=False)
        with pytest.raises(InvalidSegment):
            await loop.start([SteadyState(0, 150)], autotick=False)
        with pytest.raises(InvalidElapsed):
            await loop.start([SteadyState(60, 150)], initial_elapsed=-1, autotick=False)
        assert trainer.connect_count == 0

    asyncio.run(_run())


def test_telemetry_returns_latest_sample() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=0.02)
        loop, _clock, _events = _build(trainer)
        assert loop.telemetry() is None

        await loop.start([SteadyState(600, 200)], autotick=False)
        await asyncio.sleep(0.15)

        sample = loop.telemetry()
        assert sample is not None
        assert sample.power is not None
        assert loop.dropped_samples > 0
        await loop.stop()

    asyncio.run(_run())


def test_progress_does_not_consume_telemetry() -> None:
    trainer = SimulatedTrainer(telemetry_interval=None)
    loop, _clock, _events = _build(trainer)
    publish = loop._session.on_telemetry
    first = TelemetrySample(power=150, cadence=88.0, speed_kmh=30.0, timestamp=1.0)
    second = TelemetrySample(power=155, cadence=89.0, speed_kmh=30.5, timestamp=2.0)

    publish(first)
    assert loop.progress().telemetry == first
    publish(second)

    assert loop.dropped_samples == 1
    assert loop.telemetry() == second
    publish(first)
    assert loop.dropped_samples == 1


def test_autotick_runs_workout_to_completion() -> None:
    async def _run() -> None:
        trainer = SimulatedTrainer(telemetry_interval=None)
        session = FTMSSession(trainer, SessionConfig(command_timeout_sec=0.5))
        loop = ControlLoop(session, ControlLoopConfig(tick_interval_sec=0.05))
        seen: list[LoopStatus] = []

        await loop.start(
            [SteadyState(1, 150)], on_progress=lambda progress: seen.append(progress.status)
        )
        status = await asyncio.wait_for(loop.wait(), timeout=5.0)

        assert status is LoopStatus.WORKOUT_COMPLETE
        assert seen[0] is LoopStatus.RUNNING
        assert seen[-1] is LoopStatus.WORKOUT_COMPLETE
        assert _power_writes(trainer) == [150]
        assert session.connection_state is SessionState.DISCONNECTED

    asyncio.run(_run())
