"""Error taxonomy for the Modbus master.

Every public operation either returns a complete value or raises exactly one
of the exceptions below:

- InvalidArgument: a parameter is outside its protocol range. Raised before
  any I/O and never worth retrying.
- TransportError: the link is unhealthy (timeout, busy device, reset,
  unreachable peer). Surfaced as-is; retry policy belongs to the caller.
- ProtocolError: the bytes on the wire could not be turned into a valid
  answer. Fatal to the current round trip only.
- DeviceException: the device understood the request and rejected it with a
  standard Modbus exception code.
"""

from __future__ import annotations

from enum import Enum

from mbmaster.protocol.constants import ExceptionCode, parse_exception_code


class ModbusError(Exception):
    """Base class for all errors raised by mbmaster."""

    pass


class InvalidArgument(ModbusError, ValueError):
    """A request parameter is outside its protocol-defined range."""

    pass


# -----------------------------------------------------------------------------
# Transport errors
# -----------------------------------------------------------------------------


class TransportErrorKind(str, Enum):
    TIMEOUT = "timeout"
    BUSY = "busy"
    CONNECTION_RESET = "connection_reset"
    UNREACHABLE = "unreachable"
    OTHER = "other"


class TransportError(ModbusError):
    """The byte stream to a device failed."""

    kind: TransportErrorKind = TransportErrorKind.OTHER

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.detail = detail


class TransportTimeout(TransportError):
    """No complete response arrived before the deadline."""

    kind = TransportErrorKind.TIMEOUT


class DeviceBusy(TransportError):
    """The device (or its shared connection) stayed locked for the whole timeout."""

    kind = TransportErrorKind.BUSY


class ConnectionReset(TransportError):
    """The peer closed or reset the connection."""

    kind = TransportErrorKind.CONNECTION_RESET


class Unreachable(TransportError):
    """The device could not be connected to."""

    kind = TransportErrorKind.UNREACHABLE


# -----------------------------------------------------------------------------
# Protocol errors
# -----------------------------------------------------------------------------


class ProtocolErrorKind(str, Enum):
    SHORT_FRAME = "short_frame"
    INCOMPLETE = "incomplete"
    ECHO_MISMATCH = "echo_mismatch"
    MALFORMED_PAYLOAD = "malformed_payload"


class ProtocolError(ModbusError):
    """A frame or PDU did not follow the Modbus rules."""

    kind: ProtocolErrorKind = ProtocolErrorKind.MALFORMED_PAYLOAD


class ShortFrame(ProtocolError):
    """Fewer bytes than an MBAP header."""

    kind = ProtocolErrorKind.SHORT_FRAME


class IncompleteFrame(ProtocolError):
    """The MBAP length field announces more bytes than are available."""

    kind = ProtocolErrorKind.INCOMPLETE

    def __init__(self, message: str, missing: int):
        super().__init__(message)
        self.missing = missing


class EchoMismatch(ProtocolError):
    """A write response did not echo the request."""

    kind = ProtocolErrorKind.ECHO_MISMATCH


class MalformedPayload(ProtocolError):
    """The frame or payload structure is invalid."""

    kind = ProtocolErrorKind.MALFORMED_PAYLOAD


# -----------------------------------------------------------------------------
# Device exceptions
# -----------------------------------------------------------------------------


class DeviceException(ModbusError):
    """A well-formed Modbus exception response from the device.

    ``code`` is an ExceptionCode member for the standard codes, or the raw
    integer for codes this library does not know.
    """

    def __init__(self, code: ExceptionCode | int, function_code: int | None = None):
        self.code = parse_exception_code(int(code))
        self.function_code = function_code
        super().__init__(self._describe())

    @property
    def is_known(self) -> bool:
        return isinstance(self.code, ExceptionCode)

    def _describe(self) -> str:
        if isinstance(self.code, ExceptionCode):
            text = f"{self.code.description} (0x{self.code.value:02X})"
        else:
            text = f"Unknown(0x{self.code:02X})"
        if self.function_code is not None:
            return f"Device rejected function 0x{self.function_code:02X}: {text}"
        return f"Device exception: {text}"
