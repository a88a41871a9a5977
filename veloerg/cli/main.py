"""Terminal CLI entrypoint for veloerg."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from loguru import logger

from veloerg.ble.ftms_session import FTMSSession
from veloerg.ble.simulator import SimulatedTrainer
from veloerg.ble.transport import BleakCapability, BleCapability
from veloerg.core.config import ControlLoopConfig, SessionConfig
from veloerg.core.control_loop import ControlLoop, LoopStatus, WorkoutProgress
from veloerg.core.errors import VeloErgError
from veloerg.core.logger import setup_logger
from veloerg.workout.model import SteadyState, Workout
from veloerg.workout.parser import WorkoutParseError, load_workout


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="veloerg: ride structured workouts in ERG mode")
    parser.add_argument("--scan", action="store_true", help="Scan BLE devices")
    parser.add_argument(
        "--connect",
        nargs="?",
        const="auto",
        default=None,
        help="Connect to first FTMS device or the provided BLE address/name",
    )
    parser.add_argument(
        "--workout",
        type=Path,
        default=None,
        help="Workout file to ride (.json, .zwo or .csv)",
    )
    parser.add_argument(
        "--ftp",
        type=int,
        default=None,
        help="Functional threshold power in watts (required for .zwo workouts)",
    )
    parser.add_argument("--erg", type=int, default=None, help="Set fixed ERG target in watts")
    parser.add_argument(
        "--duration",
        type=int,
        default=3600,
        help="Duration in seconds of the fixed --erg ride",
    )
    parser.add_argument(
        "--start-offset",
        type=float,
        default=0.0,
        help="Resume the workout this many seconds in",
    )
    parser.add_argument(
        "--tick-interval",
        type=float,
        default=ControlLoopConfig.tick_interval_sec,
        help="Seconds between control loop ticks",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=SessionConfig.command_timeout_sec,
        help="Seconds to wait for a control point indication",
    )
    parser.add_argument(
        "--no-pair",
        action="store_true",
        help="Connect without requesting BLE pairing",
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    parser.add_argument(
        "--debug-ftms",
        action="store_true",
        help="Log raw FTMS control point and notification traffic",
    )
    parser.add_argument(
        "--debug-sim-ht",
        action="store_true",
        help="Simulate a home trainer (no BLE required) for debug/testing",
    )
    return parser


def build_capability(simulate_ht: bool, ble_pair: bool = True) -> BleCapability:
    if simulate_ht:
        return SimulatedTrainer()
    return BleakCapability(ble_pair=ble_pair)


async def run_scan(simulate_ht: bool = False) -> int:
    capability = build_capability(simulate_ht)
    devices = await capability.scan(timeout=5.0)

    if not devices:
        print("No BLE devices found")
        return 0

    for device in devices:
        ftms_flag = "FTMS" if device.has_ftms else "-"
        brand = device.manufacturer or ""
        print(
            f"{device.name:<24} {device.address} RSSI={device.rssi:>4} [{ftms_flag}] {brand}"
        )
    return 0


def _format_clock(seconds: float) -> str:
    whole = int(seconds)
    return f"{whole // 60:02d}:{whole % 60:02d}"


def format_progress(progress: WorkoutProgress) -> str:
    target = (
        f"{progress.target_power_watts} W"
        if progress.target_power_watts is not None
        else "free"
    )
    telemetry = progress.telemetry
    power = f"{telemetry.power} W" if telemetry and telemetry.power is not None else "N/A"
    cadence = (
        f"{telemetry.cadence:.1f} rpm"
        if telemetry and telemetry.cadence is not None
        else "N/A"
    )
    line = (
        f"{_format_clock(progress.elapsed_sec)}/{_format_clock(progress.total_duration_sec)} "
        f"| {progress.phase_label} ({_format_clock(progress.phase_remaining_sec)} left) "
        f"| Target: {target} | Power: {power} | Cadence: {cadence}"
    )
    if progress.target_cadence_rpm is not None:
        line += f" (target {progress.target_cadence_rpm:.0f} rpm)"
    return line


async def run_workout(
    workout: Workout,
    *,
    connect_target: str | None,
    simulate_ht: bool,
    start_offset: float,
    session_config: SessionConfig,
    loop_config: ControlLoopConfig,
) -> int:
    session = FTMSSession(
        build_capability(simulate_ht, session_config.ble_pair), session_config
    )
    control = ControlLoop(session, loop_config)

    try:
        await control.start(
            workout,
            target=connect_target,
            initial_elapsed=start_offset,
            on_progress=lambda progress: print(format_progress(progress)),
        )
    except VeloErgError as exc:
        print(f"Error: {exc}")
        await session.stop()
        return 1

    try:
        status = await control.wait()
    finally:
        await control.stop()

    final = control.progress()
    print(f"Finished: {final.status.value} at {_format_clock(final.elapsed_sec)}")
    if status is LoopStatus.CONNECTION_LOST:
        print(f"Resume with: --start-offset {int(final.elapsed_sec)}")
    return 0 if final.status in (LoopStatus.WORKOUT_COMPLETE, LoopStatus.STOPPED) else 1


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    setup_logger(level="DEBUG" if args.debug_ftms else "INFO", log_file=args.log_file)

    if args.scan:
        return asyncio.run(run_scan(args.debug_sim_ht))

    try:
        if args.workout is not None:
            workout = load_workout(args.workout, ftp_watts=args.ftp)
        elif args.erg is not None:
            workout = Workout(
                [SteadyState(duration=args.duration, power=args.erg, label=f"ERG {args.erg}W")],
                name="Fixed ERG",
            )
        else:
            parser.print_help()
            return 1
    except (WorkoutParseError, VeloErgError) as exc:
        print(f"Error: {exc}")
        return 1

    connect_target = args.connect or "auto"
    session_config = SessionConfig(
        command_timeout_sec=args.command_timeout,
        ble_pair=not args.no_pair,
    )
    loop_config = ControlLoopConfig(tick_interval_sec=args.tick_interval)
    logger.debug(f"Session config: {session_config}")
    logger.debug(f"Control loop config: {loop_config}")

    try:
        return asyncio.run(
            run_workout(
                workout,
                connect_target=connect_target,
                simulate_ht=args.debug_sim_ht,
                start_offset=max(0.0, args.start_offset),
                session_config=session_config,
                loop_config=loop_config,
            )
        )
    except KeyboardInterrupt:
        print("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
