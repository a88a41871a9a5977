"""Error taxonomy shared by the workout, FTMS and control loop layers."""

from __future__ import annotations


class VeloErgError(Exception):
    """Base class for every error raised by veloerg."""


class ValidationError(VeloErgError, ValueError):
    """Caller error detected before any device interaction."""


class InvalidSegment(ValidationError):
    pass


class InvalidElapsed(ValidationError):
    pass


class ProtocolError(VeloErgError):
    """Recoverable control-point failure; the connection stays open."""


class ControlPointBusy(ProtocolError):
    def __init__(self, opcode: int, pending_opcode: int) -> None:
        super().__init__(
            f"Control point busy: 0x{opcode:02X} refused while "
            f"0x{pending_opcode:02X} is pending"
        )
        self.opcode = opcode
        self.pending_opcode = pending_opcode


class ControlRejected(ProtocolError):
    def __init__(self, opcode: int, result_code: int, detail: str | None = None) -> None:
        message = f"Trainer rejected opcode 0x{opcode:02X} (result 0x{result_code:02X})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.opcode = opcode
        self.result_code = result_code


class CommandTimeout(ProtocolError):
    def __init__(self, opcode: int, timeout_sec: float) -> None:
        super().__init__(
            f"No indication for opcode 0x{opcode:02X} within {timeout_sec:.1f}s"
        )
        self.opcode = opcode
        self.timeout_sec = timeout_sec


class TransportError(VeloErgError):
    """Fatal to the current session; the caller must start again."""


class ConnectionLost(TransportError):
    pass


class DeviceUnavailable(TransportError):
    pass


class ControlDenied(TransportError):
    pass


class SessionDegraded(VeloErgError):
    """Protocol errors exceeded the retry ceiling without a disconnect."""
