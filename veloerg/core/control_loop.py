"""Workout execution against an FTMS trainer in ERG mode."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Union

from loguru import logger

from veloerg.ble.constants import RESULT_OP_CODE_NOT_SUPPORTED
from veloerg.ble.ftms_session import FTMSSession
from veloerg.core.config import ControlLoopConfig
from veloerg.core.errors import (
    ConnectionLost,
    ControlDenied,
    ControlRejected,
    DeviceUnavailable,
    InvalidElapsed,
    ProtocolError,
    SessionDegraded,
    TransportError,
    VeloErgError,
)
from veloerg.core.state import LatestSample, TelemetrySample
from veloerg.workout.model import Segment, Workout
from veloerg.workout.timeline import TargetPoint, Timeline


class LoopStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WORKOUT_COMPLETE = "workout_complete"
    STOPPED = "stopped"
    CONNECTION_LOST = "connection_lost"
    DEVICE_UNAVAILABLE = "device_unavailable"
    CONTROL_DENIED = "control_denied"
    SESSION_DEGRADED = "session_degraded"

    @property
    def is_terminal(self) -> bool:
        return self not in (LoopStatus.IDLE, LoopStatus.RUNNING)


class EventKind(str, Enum):
    STARTED = "started"
    PHASE_CHANGED = "phase_changed"
    TARGET_APPLIED = "target_applied"
    ERG_RELEASED = "erg_released"
    COMMAND_FAILED = "command_failed"
    CADENCE_UNSUPPORTED = "cadence_unsupported"
    CONTROL_REGAINED = "control_regained"
    SESSION_DEGRADED = "session_degraded"
    CONNECTION_LOST = "connection_lost"
    DEVICE_UNAVAILABLE = "device_unavailable"
    CONTROL_DENIED = "control_denied"
    WORKOUT_COMPLETE = "workout_complete"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ControlEvent:
    kind: EventKind
    message: str
    elapsed_sec: float
    error: VeloErgError | None = None


@dataclass(frozen=True)
class WorkoutProgress:
    status: LoopStatus
    elapsed_sec: float
    total_duration_sec: int
    remaining_sec: float
    phase_index: int
    phase_total: int
    phase_label: str
    phase_elapsed_sec: float
    phase_remaining_sec: float
    target_power_watts: int | None
    target_cadence_rpm: float | None
    acked_power_watts: int | None
    acked_cadence_rpm: float | None
    telemetry: TelemetrySample | None
    last_error: VeloErgError | None


@dataclass
class _RetryState:
    """Consecutive failures and backoff for one target stream."""

    failures: int = 0
    retry_at: float | None = None

    def is_due(self, now: float) -> bool:
        return self.retry_at is None or now >= self.retry_at

    def clear(self) -> None:
        self.failures = 0
        self.retry_at = None


ProgressCallback = Callable[[WorkoutProgress], None]
EventCallback = Callable[[ControlEvent], None]
WorkoutInput = Union[Workout, Iterable[Segment]]

_WARNING_EVENTS = frozenset(
    {
        EventKind.COMMAND_FAILED,
        EventKind.CADENCE_UNSUPPORTED,
        EventKind.SESSION_DEGRADED,
        EventKind.CONNECTION_LOST,
        EventKind.DEVICE_UNAVAILABLE,
        EventKind.CONTROL_DENIED,
    }
)


class ControlLoop:
    """Owns the logical workout clock and drives targets through an FTMS session.

    Only one desired target is held at a time: a target superseded before it
    could be sent is dropped, never queued. Device faults during a tick do not
    raise; they are reported through ``status``, ``last_error`` and
    ``on_event``.
    """

    def __init__(
        self,
        session: FTMSSession,
        config: ControlLoopConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_event: EventCallback | None = None,
    ) -> None:
        self._session = session
        self._config = config or ControlLoopConfig()
        self._clock = clock
        self._on_event = on_event
        self._on_progress: ProgressCallback | None = None
        self._samples = LatestSample()
        self._session.on_telemetry = self._samples.put
        self._session.on_connection_lost = self._handle_connection_lost
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._timeline: Timeline | None = None
        self._status = LoopStatus.IDLE
        self._last_error: VeloErgError | None = None
        self._stopping = False
        self._reset_clock_state(0.0)

    def _reset_clock_state(self, initial_elapsed: float) -> None:
        self._elapsed = float(initial_elapsed)
        self._last_clock: float | None = None
        self._phase_index: int | None = None
        self._desired_power: int | None = None
        self._desired_cadence: float | None = None
        self._acked_power: int | None = None
        self._applied_power: int | None = None
        self._acked_cadence: float | None = None
        self._cadence_enabled = True
        self._erg_released = False
        self._power_retry = _RetryState()
        self._cadence_retry = _RetryState()

    @property
    def status(self) -> LoopStatus:
        return self._status

    @property
    def last_error(self) -> VeloErgError | None:
        return self._last_error

    @property
    def elapsed(self) -> float:
        return self._elapsed

    @property
    def timeline(self) -> Timeline | None:
        return self._timeline

    @property
    def is_running(self) -> bool:
        return self._status is LoopStatus.RUNNING

    @property
    def dropped_samples(self) -> int:
        return self._samples.dropped

    async def start(
        self,
        workout: WorkoutInput,
        *,
        target: Optional[str] = None,
        initial_elapsed: float = 0.0,
        on_progress: ProgressCallback | None = None,
        autotick: bool = True,
    ) -> None:
        """Connect, take control and begin ticking.

        ``initial_elapsed`` resumes a ride after a dropped connection. Raises
        DeviceUnavailable or ControlDenied when the trainer cannot be driven.
        """
        if self.is_running:
            raise RuntimeError("Workout already running")
        if self._task is not None and not self._task.done():
            await self._task

        if not isinstance(workout, Workout):
            workout = Workout(workout)
        if initial_elapsed < 0:
            raise InvalidElapsed(f"Initial elapsed time must be >= 0, got {initial_elapsed}")

        self._timeline = Timeline(workout)
        self._on_progress = on_progress
        self._reset_clock_state(initial_elapsed)
        self._samples.clear()
        self._status = LoopStatus.IDLE
        self._last_error = None
        self._stopping = False
        self._stop_event = asyncio.Event()

        await self._connect_with_retries(target)
        await self._request_control_with_retries()
        try:
            await self._session.start_or_resume()
        except ProtocolError as exc:
            # Several trainers reject Start in ERG mode yet honour targets.
            logger.warning(f"Trainer did not accept Start/Resume: {exc}")

        self._status = LoopStatus.RUNNING
        self._last_clock = self._clock()
        self._emit(
            EventKind.STARTED,
            f"Riding '{workout.name}' ({self._timeline.total_duration()}s) "
            f"from {self._elapsed:.0f}s",
        )
        if autotick:
            self._task = asyncio.create_task(self._run())

    async def _connect_with_retries(self, target: Optional[str]) -> None:
        attempts = max(1, self._config.connect_attempts)
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._session.connect(target)
                return
            except TransportError as exc:
                last_exc = exc
                logger.warning(f"Connect attempt {attempt}/{attempts} failed: {exc}")
            if attempt < attempts:
                await asyncio.sleep(self._config.start_retry_delay_sec)

        error = DeviceUnavailable(f"Trainer unavailable after {attempts} connect attempts")
        error.__cause__ = last_exc
        self._fail_start(LoopStatus.DEVICE_UNAVAILABLE, EventKind.DEVICE_UNAVAILABLE, error)
        raise error

    async def _request_control_with_retries(self) -> None:
        attempts = max(1, self._config.control_attempts)
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._session.request_control()
                return
            except ProtocolError as exc:
                last_exc = exc
                logger.warning(f"Control request {attempt}/{attempts} failed: {exc}")
            except ConnectionLost as exc:
                error = DeviceUnavailable(f"Trainer dropped while requesting control: {exc}")
                error.__cause__ = exc
                self._fail_start(
                    LoopStatus.DEVICE_UNAVAILABLE, EventKind.DEVICE_UNAVAILABLE, error
                )
                raise error
            if attempt < attempts:
                await asyncio.sleep(self._config.start_retry_delay_sec)

        await self._session.stop()
        error = ControlDenied(f"Trainer refused control after {attempts} requests")
        error.__cause__ = last_exc
        self._fail_start(LoopStatus.CONTROL_DENIED, EventKind.CONTROL_DENIED, error)
        raise error

    def _fail_start(self, status: LoopStatus, kind: EventKind, error: VeloErgError) -> None:
        self._status = status
        self._last_error = error
        self._emit(kind, str(error), error)

    async def tick(self) -> WorkoutProgress:
        """Advance the clock by the real time since the last tick and push targets."""
        async with self._tick_lock:
            if self._status is not LoopStatus.RUNNING or self._timeline is None:
                return self.progress()

            now = self._clock()
            if self._last_clock is not None:
                self._elapsed += max(0.0, now - self._last_clock)
            self._last_clock = now

            point = self._timeline.target_at(self._elapsed)
            phase_changed = point.phase_index != self._phase_index
            if phase_changed:
                self._phase_index = point.phase_index
                phase = self._timeline.phases[point.phase_index]
                self._emit(
                    EventKind.PHASE_CHANGED,
                    f"{phase.label} ({phase.duration}s)",
                )

            self._desired_power = None if point.power is None else int(round(point.power))
            self._desired_cadence = point.cadence if self._cadence_enabled else None
            if point.complete:
                await self._finish(
                    LoopStatus.WORKOUT_COMPLETE,
                    EventKind.WORKOUT_COMPLETE,
                    "Workout complete",
                )
                return self._publish_progress()

            try:
                await self._apply_targets(point, now, phase_changed)
            except TransportError as exc:
                if not self._stopping:
                    self._handle_connection_lost(exc)
            return self._publish_progress()

    async def _apply_targets(self, point: TargetPoint, now: float, phase_changed: bool) -> None:
        if not self._session.has_control:
            # Control requests share the power stream's retry budget.
            if not self._power_retry.is_due(now):
                return
            try:
                await self._session.request_control()
            except ProtocolError as exc:
                self._record_failure(self._power_retry, exc, now)
                return
            self._acked_power = None
            self._acked_cadence = None
            self._erg_released = False
            self._emit(EventKind.CONTROL_REGAINED, "Control permission regained")

        if self._power_retry.is_due(now):
            if point.power is None:
                await self._release_erg(now)
            else:
                await self._apply_power(now, phase_changed)

        if self._status is LoopStatus.RUNNING and self._cadence_retry.is_due(now):
            await self._apply_cadence(now, phase_changed)

    async def _release_erg(self, now: float) -> None:
        """Pause the trainer so the rider sets the power during a free ride."""
        if self._erg_released:
            return
        try:
            await self._session.stop_or_pause(stop=False)
        except ProtocolError as exc:
            self._record_failure(self._power_retry, exc, now)
            return
        self._erg_released = True
        self._acked_power = None
        self._applied_power = None
        self._power_retry.clear()
        self._emit(EventKind.ERG_RELEASED, "ERG released for free ride")

    async def _apply_power(self, now: float, phase_changed: bool) -> None:
        power = self._desired_power
        if power is None:
            return
        if self._erg_released:
            try:
                await self._session.start_or_resume()
            except ControlRejected as exc:
                logger.warning(f"Trainer did not accept Resume after free ride: {exc}")
            except ProtocolError as exc:
                self._record_failure(self._power_retry, exc, now)
                return
            self._erg_released = False
        if not self._power_needs_update(power, phase_changed):
            return
        try:
            applied = await self._session.set_target_power(power)
        except ProtocolError as exc:
            self._record_failure(self._power_retry, exc, now)
            return
        self._acked_power = power
        self._applied_power = applied
        self._power_retry.clear()
        self._emit(EventKind.TARGET_APPLIED, f"ERG target {applied}W")

    async def _apply_cadence(self, now: float, phase_changed: bool) -> None:
        cadence = self._desired_cadence
        if cadence is None or not self._cadence_needs_update(cadence, phase_changed):
            return
        try:
            applied_rpm = await self._session.set_target_cadence(cadence)
        except ControlRejected as exc:
            if exc.result_code == RESULT_OP_CODE_NOT_SUPPORTED:
                self._cadence_enabled = False
                self._desired_cadence = None
                self._cadence_retry.clear()
                self._emit(
                    EventKind.CADENCE_UNSUPPORTED,
                    "Trainer does not support cadence targets; continuing with power only",
                    exc,
                )
                return
            self._record_failure(self._cadence_retry, exc, now)
            return
        except ProtocolError as exc:
            self._record_failure(self._cadence_retry, exc, now)
            return
        self._acked_cadence = applied_rpm
        self._cadence_retry.clear()
        self._emit(EventKind.TARGET_APPLIED, f"Cadence target {applied_rpm:g}rpm")

    def _power_needs_update(self, power: int, phase_changed: bool) -> bool:
        if self._acked_power is None:
            return True
        delta = abs(power - self._acked_power)
        if phase_changed:
            return delta > 0
        return delta > self._config.power_deadband_watts

    def _cadence_needs_update(self, cadence: float, phase_changed: bool) -> bool:
        if self._acked_cadence is None:
            return True
        delta = abs(cadence - self._acked_cadence)
        if phase_changed:
            return delta > 0
        return delta > self._config.cadence_deadband_rpm

    def _record_failure(self, retry: _RetryState, exc: ProtocolError, now: float) -> None:
        retry.failures += 1
        self._last_error = exc
        limit = self._config.max_consecutive_failures
        if retry.failures > limit:
            degraded = SessionDegraded(
                f"Giving up on target updates after {retry.failures} consecutive failures"
            )
            degraded.__cause__ = exc
            self._status = LoopStatus.SESSION_DEGRADED
            self._last_error = degraded
            self._stop_event.set()
            self._emit(EventKind.SESSION_DEGRADED, str(degraded), degraded)
            return

        backoff = min(
            self._config.retry_backoff_sec * (2 ** (retry.failures - 1)),
            self._config.retry_backoff_max_sec,
        )
        retry.retry_at = now + backoff
        self._emit(
            EventKind.COMMAND_FAILED,
            f"{exc} (attempt {retry.failures}/{limit + 1}, retry in {backoff:.1f}s)",
            exc,
        )

    def _handle_connection_lost(self, exc: Exception) -> None:
        if self._stopping or self._status is not LoopStatus.RUNNING:
            return
        error = exc if isinstance(exc, VeloErgError) else ConnectionLost(str(exc))
        self._status = LoopStatus.CONNECTION_LOST
        self._last_error = error
        self._stop_event.set()
        self._emit(
            EventKind.CONNECTION_LOST,
            f"{error}; start again with initial_elapsed={self._elapsed:.0f} to resume",
            error,
        )

    async def skip_phase(self) -> WorkoutProgress:
        """Jump the logical clock to the start of the next phase."""
        async with self._tick_lock:
            if self._status is LoopStatus.RUNNING and self._timeline is not None:
                phase = self._timeline.phase_at(self._elapsed)
                logger.info(f"Skipping '{phase.label}'")
                self._elapsed = max(self._elapsed, float(phase.end))
        return await self.tick()

    def telemetry(self) -> TelemetrySample | None:
        return self._samples.latest()

    def progress(self) -> WorkoutProgress:
        timeline = self._timeline
        if timeline is None:
            return WorkoutProgress(
                status=self._status,
                elapsed_sec=0.0,
                total_duration_sec=0,
                remaining_sec=0.0,
                phase_index=0,
                phase_total=0,
                phase_label="",
                phase_elapsed_sec=0.0,
                phase_remaining_sec=0.0,
                target_power_watts=None,
                target_cadence_rpm=None,
                acked_power_watts=None,
                acked_cadence_rpm=None,
                telemetry=self._samples.peek(),
                last_error=self._last_error,
            )

        total = timeline.total_duration()
        elapsed = min(self._elapsed, float(total))
        index = timeline.phase_index_at(elapsed)
        phase = timeline.phases[index]
        phase_elapsed = elapsed - phase.start
        return WorkoutProgress(
            status=self._status,
            elapsed_sec=elapsed,
            total_duration_sec=total,
            remaining_sec=timeline.remaining(elapsed),
            phase_index=index,
            phase_total=len(timeline.phases),
            phase_label=phase.label,
            phase_elapsed_sec=phase_elapsed,
            phase_remaining_sec=max(0.0, phase.duration - phase_elapsed),
            target_power_watts=self._desired_power,
            target_cadence_rpm=self._desired_cadence,
            acked_power_watts=self._applied_power,
            acked_cadence_rpm=self._acked_cadence,
            telemetry=self._samples.peek(),
            last_error=self._last_error,
        )

    def _publish_progress(self) -> WorkoutProgress:
        progress = self.progress()
        if self._on_progress is not None:
            self._on_progress(progress)
        return progress

    async def stop(self) -> WorkoutProgress:
        """Stop the trainer and release it. Safe to call at any time."""
        if self._status.is_terminal and self._stopping:
            await self._join_task()
            return self.progress()

        self._stopping = True
        self._stop_event.set()
        # Preempts any in-flight control-point wait; the tick then returns.
        await self._session.stop()
        await self._join_task()
        if not self._status.is_terminal:
            self._status = LoopStatus.STOPPED
            self._emit(EventKind.STOPPED, "Workout stopped")
        return self.progress()

    async def wait(self) -> LoopStatus:
        """Wait for the autotick task to end and return the final status."""
        await self._join_task()
        return self._status

    async def _join_task(self) -> None:
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await task
        self._task = None

    async def _finish(self, status: LoopStatus, kind: EventKind, message: str) -> None:
        self._status = status
        self._stopping = True
        self._stop_event.set()
        await self._session.stop()
        self._emit(kind, message)

    async def _run(self) -> None:
        interval = self._config.tick_interval_sec
        while self._status is LoopStatus.RUNNING:
            await self.tick()
            if self._status is not LoopStatus.RUNNING:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)

    def _emit(self, kind: EventKind, message: str, error: VeloErgError | None = None) -> None:
        event = ControlEvent(
            kind=kind, message=message, elapsed_sec=self._elapsed, error=error
        )
        if kind in _WARNING_EVENTS:
            logger.warning(f"[{kind.value}] t={self._elapsed:.1f}s {message}")
        elif kind is EventKind.TARGET_APPLIED:
            logger.debug(f"[{kind.value}] t={self._elapsed:.1f}s {message}")
        else:
            logger.info(f"[{kind.value}] t={self._elapsed:.1f}s {message}")
        if self._on_event is not None:
            self._on_event(event)
