"""Modbus TCP wire protocol: MBAP framing, PDU builders, constants."""

from mbmaster.protocol.constants import ExceptionCode, FunctionCode

__all__ = ["ExceptionCode", "FunctionCode"]
