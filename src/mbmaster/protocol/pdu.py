"""PDU builders and response normalizers for the supported function codes.

Pure helpers, no I/O. Builders validate their arguments and return the payload
that follows the function code; normalizers turn a response payload into host
values.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence

from mbmaster.errors import DeviceException, EchoMismatch, InvalidArgument, MalformedPayload
from mbmaster.protocol.constants import (
    COIL_OFF,
    COIL_ON,
    MAX_ADDRESS,
    MAX_READ_BITS,
    MAX_READ_REGISTERS,
    MAX_REGISTER_VALUE,
    FunctionCode,
)
from mbmaster.protocol.frame import DecodedFrame

_ADDRESS_QUANTITY = struct.Struct(">HH")

READ_LIMITS: dict[FunctionCode, int] = {
    FunctionCode.READ_COILS: MAX_READ_BITS,
    FunctionCode.READ_DISCRETE_INPUTS: MAX_READ_BITS,
    FunctionCode.READ_HOLDING_REGISTERS: MAX_READ_REGISTERS,
    FunctionCode.READ_INPUT_REGISTERS: MAX_READ_REGISTERS,
}


# -----------------------------------------------------------------------------
# Word and bit conversion
# -----------------------------------------------------------------------------


def words_to_wire(values: Sequence[int]) -> bytes:
    """Serialize 16-bit register values in big-endian order."""
    for value in values:
        validate_register_value(value)
    return struct.pack(f">{len(values)}H", *values)


def words_from_wire(data: bytes | bytearray) -> list[int]:
    """Convert big-endian register words to host integers."""
    if len(data) % 2:
        raise MalformedPayload(f"Register data has odd length {len(data)}")
    return list(struct.unpack(f">{len(data) // 2}H", data))


def pack_bits(bits: Sequence[bool]) -> bytes:
    """Pack booleans LSB first, eight per byte."""
    packed = bytearray((len(bits) + 7) // 8)
    for index, bit in enumerate(bits):
        if bit:
            packed[index // 8] |= 1 << (index % 8)
    return bytes(packed)


def unpack_bits(data: bytes | bytearray, count: int) -> list[bool]:
    """Unpack ``count`` booleans from LSB-first packed bytes."""
    if count > len(data) * 8:
        raise MalformedPayload(f"{len(data)} bytes cannot hold {count} bits")
    return [bool((data[i // 8] >> (i % 8)) & 1) for i in range(count)]


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def require_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer, got {value!r}")


def validate_address(address: int) -> None:
    require_int("Address", address)
    if not 0 <= address <= MAX_ADDRESS:
        raise InvalidArgument(f"Address must be 0-{MAX_ADDRESS}, got {address}")


def validate_register_value(value: int) -> None:
    require_int("Register value", value)
    if not 0 <= value <= MAX_REGISTER_VALUE:
        raise InvalidArgument(f"Register value must be 0-{MAX_REGISTER_VALUE}, got {value}")


def validate_read(function_code: FunctionCode, address: int, count: int) -> None:
    """Check a read request against the limits of its function code."""
    validate_address(address)
    limit = READ_LIMITS[function_code]
    require_int("Count", count)
    if not 1 <= count <= limit:
        raise InvalidArgument(
            f"{function_code.name} count must be 1-{limit}, got {count}"
        )
    if address + count > MAX_ADDRESS + 1:
        raise InvalidArgument(
            f"Reading {count} items from address {address} runs past {MAX_ADDRESS}"
        )


# -----------------------------------------------------------------------------
# Request builders
# -----------------------------------------------------------------------------


def build_read_request(function_code: FunctionCode, address: int, count: int) -> bytes:
    """Payload for function codes 0x01-0x04: start address and quantity."""
    validate_read(function_code, address, count)
    return _ADDRESS_QUANTITY.pack(address, count)


def build_write_single_register(address: int, value: int) -> bytes:
    validate_address(address)
    validate_register_value(value)
    return _ADDRESS_QUANTITY.pack(address, value)


def build_write_single_coil(address: int, value: bool) -> bytes:
    validate_address(address)
    return _ADDRESS_QUANTITY.pack(address, COIL_ON if value else COIL_OFF)


# -----------------------------------------------------------------------------
# Response normalizers
# -----------------------------------------------------------------------------


def check_exception(frame: DecodedFrame, function_code: FunctionCode) -> None:
    """Raise DeviceException if ``frame`` is the exception answer to ``function_code``."""
    if frame.function_code == function_code.exception_code:
        raise DeviceException(frame.exception_code or 0, function_code=function_code.value)
    if frame.function_code != function_code:
        raise MalformedPayload(
            f"Expected function 0x{function_code:02X}, got 0x{frame.function_code:02X}"
        )


def _byte_counted_data(payload: bytes, expected: int) -> bytes:
    if not payload:
        raise MalformedPayload("Read response has no byte count")
    byte_count = payload[0]
    data = payload[1:]
    if byte_count != len(data):
        raise MalformedPayload(
            f"Byte count {byte_count} disagrees with {len(data)} data bytes"
        )
    if byte_count != expected:
        raise MalformedPayload(f"Expected {expected} data bytes, got {byte_count}")
    return data


def parse_bits_response(frame: DecodedFrame, function_code: FunctionCode, count: int) -> list[bool]:
    """Normalize a read coils / read discrete inputs response."""
    check_exception(frame, function_code)
    data = _byte_counted_data(frame.payload, (count + 7) // 8)
    return unpack_bits(data, count)


def parse_registers_response(
    frame: DecodedFrame, function_code: FunctionCode, count: int
) -> list[int]:
    """Normalize a read holding / read input registers response."""
    check_exception(frame, function_code)
    data = _byte_counted_data(frame.payload, count * 2)
    return words_from_wire(data)


def verify_echo(frame: DecodedFrame, function_code: FunctionCode, request: bytes) -> None:
    """Single writes answer with a copy of the request payload."""
    check_exception(frame, function_code)
    if frame.payload != request:
        raise EchoMismatch(
            f"Write echo {frame.payload.hex(' ')} does not match request {request.hex(' ')}"
        )
