"""mbmaster - Modbus TCP master core.

Reads and writes coils and registers on Modbus TCP devices with strict
framing, transaction matching and a typed error taxonomy.
"""

from mbmaster.aio import AsyncDevice, AsyncModbusMaster
from mbmaster.client import ModbusMaster
from mbmaster.config import Settings
from mbmaster.errors import (
    ConnectionReset,
    DeviceBusy,
    DeviceException,
    EchoMismatch,
    IncompleteFrame,
    InvalidArgument,
    MalformedPayload,
    ModbusError,
    ProtocolError,
    ShortFrame,
    TransportError,
    TransportTimeout,
    Unreachable,
)
from mbmaster.protocol.constants import ExceptionCode, FunctionCode
from mbmaster.session import Device

__version__ = "0.1.0"

__all__ = [
    # Masters
    "ModbusMaster",
    "AsyncModbusMaster",
    "Device",
    "AsyncDevice",
    "Settings",
    # Protocol
    "FunctionCode",
    "ExceptionCode",
    # Errors
    "ModbusError",
    "InvalidArgument",
    "TransportError",
    "TransportTimeout",
    "DeviceBusy",
    "ConnectionReset",
    "Unreachable",
    "ProtocolError",
    "ShortFrame",
    "IncompleteFrame",
    "EchoMismatch",
    "MalformedPayload",
    "DeviceException",
]
