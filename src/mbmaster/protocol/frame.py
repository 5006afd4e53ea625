"""MBAP frame codec.

Frames are serialized field by field with ``struct`` in network byte order:

    transaction id  u16
    protocol id     u16  (always 0)
    length          u16  (unit id + PDU)
    unit id         u8
    function code   u8   (0x80 set => exception response)
    payload         length - 2 bytes

The codec does not look inside the payload; register words stay in wire order
until a normalizer in ``mbmaster.protocol.pdu`` converts them.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from mbmaster.errors import IncompleteFrame, InvalidArgument, MalformedPayload, ShortFrame
from mbmaster.protocol.constants import (
    DEFAULT_UNIT_ID,
    EXCEPTION_FLAG,
    MAX_PDU_SIZE,
    MBAP_HEADER_SIZE,
    PROTOCOL_ID,
)

_MBAP = struct.Struct(">HHHB")


@dataclass(frozen=True)
class MBAPHeader:
    transaction_id: int
    protocol_id: int
    length: int
    unit_id: int

    @property
    def pdu_length(self) -> int:
        return self.length - 1

    @property
    def frame_length(self) -> int:
        return MBAP_HEADER_SIZE + self.pdu_length

    def pack(self) -> bytes:
        return _MBAP.pack(self.transaction_id, self.protocol_id, self.length, self.unit_id)

    @classmethod
    def unpack(cls, buffer: bytes | bytearray | memoryview) -> MBAPHeader:
        if len(buffer) < MBAP_HEADER_SIZE:
            raise ShortFrame(
                f"Frame has {len(buffer)} bytes, MBAP header needs {MBAP_HEADER_SIZE}"
            )
        return cls(*_MBAP.unpack_from(buffer, 0))


@dataclass(frozen=True)
class DecodedFrame:
    """One complete frame taken off the wire."""

    transaction_id: int
    unit_id: int
    function_code: int
    payload: bytes
    frame_length: int

    @property
    def is_exception(self) -> bool:
        return bool(self.function_code & EXCEPTION_FLAG)

    @property
    def request_function_code(self) -> int:
        """Function code of the request this frame answers."""
        return self.function_code & ~EXCEPTION_FLAG

    @property
    def exception_code(self) -> int | None:
        if not self.is_exception:
            return None
        # An empty exception payload still reports as an exception, with code 0
        return self.payload[0] if self.payload else 0


class FrameCodec:
    """Encodes PDUs into MBAP frames and decodes frames from a byte buffer."""

    def __init__(self, unit_id: int = DEFAULT_UNIT_ID):
        _check_u8("unit_id", unit_id)
        self.unit_id = unit_id

    def encode(
        self,
        function_code: int,
        payload: bytes | bytearray | None,
        transaction_id: int,
        unit_id: int | None = None,
    ) -> bytes:
        """Build an MBAP frame around a function code and its payload.

        Args:
            function_code: Modbus function code (1-127 for requests)
            payload: Function-specific bytes following the function code
            transaction_id: Id allocated by the TransactionCorrelator
            unit_id: Unit id override, defaults to the codec's unit id

        Returns:
            The complete frame, header included

        Raises:
            InvalidArgument: If a field does not fit or the PDU is too large
        """
        if payload is None:
            raise InvalidArgument("Payload must not be None")
        _check_u8("function_code", function_code)
        _check_u16("transaction_id", transaction_id)
        unit = self.unit_id if unit_id is None else unit_id
        _check_u8("unit_id", unit)

        pdu_length = 1 + len(payload)
        if pdu_length > MAX_PDU_SIZE:
            raise InvalidArgument(
                f"PDU of {pdu_length} bytes exceeds the Modbus maximum of {MAX_PDU_SIZE}"
            )

        header = MBAPHeader(
            transaction_id=transaction_id,
            protocol_id=PROTOCOL_ID,
            length=pdu_length + 1,
            unit_id=unit,
        )
        return header.pack() + bytes((function_code,)) + bytes(payload)

    def decode(self, buffer: bytes | bytearray | memoryview) -> DecodedFrame:
        """Decode the first frame in ``buffer``.

        Trailing bytes beyond ``frame_length`` are left for the caller.

        Raises:
            ShortFrame: Fewer than 7 bytes are available
            IncompleteFrame: The length field announces more bytes than available
            MalformedPayload: The header cannot belong to a Modbus TCP frame
        """
        header = MBAPHeader.unpack(buffer)

        if header.protocol_id != PROTOCOL_ID:
            raise MalformedPayload(f"Unexpected protocol id {header.protocol_id}")
        if header.length < 2:
            raise MalformedPayload(f"Length field {header.length} leaves no room for a PDU")
        if header.pdu_length > MAX_PDU_SIZE:
            raise MalformedPayload(
                f"Length field announces a {header.pdu_length} byte PDU, "
                f"maximum is {MAX_PDU_SIZE}"
            )

        available = len(buffer)
        if available < header.frame_length:
            missing = header.frame_length - available
            raise IncompleteFrame(
                f"Frame needs {header.frame_length} bytes, {available} available",
                missing=missing,
            )

        function_code = buffer[MBAP_HEADER_SIZE]
        payload = bytes(buffer[MBAP_HEADER_SIZE + 1 : header.frame_length])
        return DecodedFrame(
            transaction_id=header.transaction_id,
            unit_id=header.unit_id,
            function_code=function_code,
            payload=payload,
            frame_length=header.frame_length,
        )


def _check_u8(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise InvalidArgument(f"{name} must be 0-255, got {value}")


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise InvalidArgument(f"{name} must be 0-65535, got {value}")
