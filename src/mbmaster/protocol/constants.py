"""Modbus function codes, exception codes and protocol limits."""

from __future__ import annotations

from enum import IntEnum
from typing import Final

# MBAP framing
MBAP_HEADER_SIZE: Final[int] = 7
PROTOCOL_ID: Final[int] = 0
MAX_PDU_SIZE: Final[int] = 253
MAX_FRAME_SIZE: Final[int] = MBAP_HEADER_SIZE - 1 + MAX_PDU_SIZE

DEFAULT_PORT: Final[int] = 502
DEFAULT_UNIT_ID: Final[int] = 255

# High bit of the function code marks an exception response
EXCEPTION_FLAG: Final[int] = 0x80

# Quantity limits per request
MAX_READ_BITS: Final[int] = 0x7D0
MAX_READ_REGISTERS: Final[int] = 0x7D

MAX_ADDRESS: Final[int] = 0xFFFF
MAX_REGISTER_VALUE: Final[int] = 0xFFFF

COIL_ON: Final[int] = 0xFF00
COIL_OFF: Final[int] = 0x0000


class FunctionCode(IntEnum):
    """Public Modbus function codes."""

    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    READ_EXCEPTION_STATUS = 0x07
    DIAGNOSTICS = 0x08
    GET_COMM_EVENT_COUNTER = 0x0B
    GET_COMM_EVENT_LOG = 0x0C
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10
    REPORT_SERVER_ID = 0x11
    READ_FILE_RECORD = 0x14
    WRITE_FILE_RECORD = 0x15
    MASK_WRITE_REGISTER = 0x16
    READ_WRITE_MULTIPLE_REGISTERS = 0x17
    READ_FIFO_QUEUE = 0x18
    READ_DEVICE_IDENTIFICATION = 0x2B

    @property
    def exception_code(self) -> int:
        """Function code a device answers with when it rejects this request."""
        return self.value | EXCEPTION_FLAG


class ExceptionCode(IntEnum):
    """Exception codes carried by a Modbus exception response."""

    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    DEVICE_BUSY = 0x06
    MEMORY_PARITY_ERROR = 0x07
    GATEWAY_PATH_UNAVAILABLE = 0x0A
    GATEWAY_TARGET_FAILED_TO_RESPOND = 0x0B

    @property
    def description(self) -> str:
        return EXCEPTION_DESCRIPTIONS[self]


EXCEPTION_DESCRIPTIONS: Final[dict[ExceptionCode, str]] = {
    ExceptionCode.ILLEGAL_FUNCTION: "Illegal Function",
    ExceptionCode.ILLEGAL_DATA_ADDRESS: "Illegal Data Address",
    ExceptionCode.ILLEGAL_DATA_VALUE: "Illegal Data Value",
    ExceptionCode.DEVICE_FAILURE: "Device Failure",
    ExceptionCode.ACKNOWLEDGE: "Acknowledge",
    ExceptionCode.DEVICE_BUSY: "Device Busy",
    ExceptionCode.MEMORY_PARITY_ERROR: "Memory Parity Error",
    ExceptionCode.GATEWAY_PATH_UNAVAILABLE: "Gateway Path Unavailable",
    ExceptionCode.GATEWAY_TARGET_FAILED_TO_RESPOND: "Gateway Target Failed to Respond",
}


def parse_exception_code(code: int) -> ExceptionCode | int:
    """Map a raw exception byte to an ExceptionCode, or return it unchanged."""
    try:
        return ExceptionCode(code)
    except ValueError:
        return code
