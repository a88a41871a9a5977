"""Tunables for the FTMS session and the control loop."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SessionConfig:
    scan_timeout_sec: float = 10.0
    connect_timeout_sec: float = 25.0
    command_timeout_sec: float = 3.0
    # Consecutive command timeouts before the link is declared lost. Kept above
    # ControlLoopConfig.max_consecutive_failures so the loop degrades first.
    max_command_timeouts: int = 5
    stop_timeout_sec: float = 5.0
    ble_pair: bool = True


@dataclass(frozen=True)
class ControlLoopConfig:
    tick_interval_sec: float = 1.0
    power_deadband_watts: float = 1.0
    cadence_deadband_rpm: float = 1.0
    max_consecutive_failures: int = 3
    retry_backoff_sec: float = 1.0
    retry_backoff_max_sec: float = 8.0
    connect_attempts: int = 3
    control_attempts: int = 3
    # Pause between connect/control attempts during start().
    start_retry_delay_sec: float = 1.0
