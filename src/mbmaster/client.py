"""Synchronous Modbus TCP master.

Public entry point for hosts: register devices, then read and write their
coils and registers. Every operation validates its arguments before touching
the network and either returns a complete value or raises one error from
``mbmaster.errors``.

Usage:
    from mbmaster import ModbusMaster

    with ModbusMaster() as master:
        plc = master.create_device("192.168.1.10", unit_id=1)
        values = master.read_holding_registers(plc, address=0, count=2)
        master.write_single_register(plc, address=1, value=0x00FF)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from typing import Any

from mbmaster.config import Settings
from mbmaster.config import settings as default_settings
from mbmaster.errors import InvalidArgument
from mbmaster.observability.metrics import record_device_exception
from mbmaster.protocol import pdu
from mbmaster.protocol.constants import FunctionCode
from mbmaster.protocol.frame import DecodedFrame
from mbmaster.session import Device, DeviceSession
from mbmaster.transport import Transport, TransportFactory, TransportManager

logger = logging.getLogger(__name__)


class ModbusMaster:
    """Blocking Modbus TCP master.

    Each call occupies the calling thread until the response arrives, the
    timeout elapses or the transport fails. Calls for the same device are
    serialized; calls for different devices run in parallel when each device
    has its own connection.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport_manager: TransportManager | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        """Initialize the master.

        Args:
            settings: Settings to use, defaults to the module-level settings
            transport_manager: Existing manager to share between masters
            transport_factory: Opens a transport for (host, port, timeout);
                defaults to a plain TCP connection
        """
        self.settings = settings or default_settings
        self.transport_manager = transport_manager or TransportManager(
            self.settings, transport_factory
        )
        self.session = DeviceSession(self.transport_manager, settings=self.settings)
        self._devices: dict[Hashable, Device] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> ModbusMaster:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def devices(self) -> list[Device]:
        with self._lock:
            return list(self._devices.values())

    # -------------------------------------------------------------------------
    # Device lifecycle
    # -------------------------------------------------------------------------

    def create_device(
        self,
        host: str,
        port: int | None = None,
        unit_id: int | None = None,
        device_id: Hashable | None = None,
        transport: Transport | None = None,
    ) -> Device:
        """Register a remote device.

        Args:
            host: IP address or hostname
            port: TCP port, defaults to 502
            unit_id: Unit id put in every frame, defaults to 255
            device_id: Unique handle, defaults to "host:port/unit"
            transport: Ready-made transport; the master connects itself when omitted

        Returns:
            The device handle to pass to the read/write operations

        Raises:
            InvalidArgument: If the address is invalid or the id is taken
        """
        device = Device(
            host=host,
            port=self.settings.default_port if port is None else port,
            unit_id=self.settings.default_unit_id if unit_id is None else unit_id,
            device_id=device_id,
        )
        with self._lock:
            if device.device_id in self._devices:
                raise InvalidArgument(f"Device {device.device_id} already exists")
            self._devices[device.device_id] = device

        if transport is not None:
            self.transport_manager.attach(device, transport)

        logger.info(f"Created device {device.device_id}")
        return device

    def destroy_device(self, device: Device) -> None:
        """Release a device; waits for its in-flight round trip to finish."""
        with device.lock:
            device.released = True
        with self._lock:
            self._devices.pop(device.device_id, None)
        self.transport_manager.release(device)
        logger.info(f"Destroyed device {device.device_id}")

    def close(self) -> None:
        """Release every device and close all connections.

        Waits for each device's in-flight round trip to finish first.
        """
        for device in self.devices:
            with device.lock:
                device.released = True
        with self._lock:
            self._devices.clear()
        self.transport_manager.close()

    def health_check(self) -> dict[str, Any]:
        """Return device and connection health status."""
        return {
            "devices": len(self._devices),
            "transport": self.transport_manager.health_check(),
        }

    # -------------------------------------------------------------------------
    # Register operations
    # -------------------------------------------------------------------------

    def read_coils(
        self, device: Device, address: int, count: int, timeout: float | None = None
    ) -> list[bool]:
        """Read coil values (function code 01).

        Args:
            device: Target device
            address: Starting coil address (0-based)
            count: Number of coils to read (1-2000)
            timeout: Seconds for the round trip, defaults to settings.request_timeout

        Returns:
            List of ``count`` boolean values
        """
        return self._read_bits(FunctionCode.READ_COILS, device, address, count, timeout)

    def read_discrete_inputs(
        self, device: Device, address: int, count: int, timeout: float | None = None
    ) -> list[bool]:
        """Read discrete input values (function code 02).

        Args:
            device: Target device
            address: Starting input address (0-based)
            count: Number of inputs to read (1-2000)
            timeout: Seconds for the round trip

        Returns:
            List of ``count`` boolean values
        """
        return self._read_bits(FunctionCode.READ_DISCRETE_INPUTS, device, address, count, timeout)

    def read_holding_registers(
        self, device: Device, address: int, count: int, timeout: float | None = None
    ) -> list[int]:
        """Read holding register values (function code 03).

        Args:
            device: Target device
            address: Starting register address (0-based)
            count: Number of registers to read (1-125)
            timeout: Seconds for the round trip

        Returns:
            List of integer values (16-bit unsigned)
        """
        return self._read_registers(
            FunctionCode.READ_HOLDING_REGISTERS, device, address, count, timeout
        )

    def read_input_registers(
        self, device: Device, address: int, count: int, timeout: float | None = None
    ) -> list[int]:
        """Read input register values (function code 04).

        Args:
            device: Target device
            address: Starting register address (0-based)
            count: Number of registers to read (1-125)
            timeout: Seconds for the round trip

        Returns:
            List of integer values (16-bit unsigned)
        """
        return self._read_registers(
            FunctionCode.READ_INPUT_REGISTERS, device, address, count, timeout
        )

    def write_single_register(
        self, device: Device, address: int, value: int, timeout: float | None = None
    ) -> None:
        """Write single holding register value (function code 06).

        Args:
            device: Target device
            address: Register address (0-based)
            value: Integer value to write (0-65535)
            timeout: Seconds for the round trip

        Raises:
            EchoMismatch: If the device echoes a different address or value
        """
        function_code = FunctionCode.WRITE_SINGLE_REGISTER
        payload = pdu.build_write_single_register(address, value)
        frame = self._execute(device, function_code, payload, timeout)
        pdu.verify_echo(frame, function_code, payload)
        logger.debug(f"Wrote register {address}: value={value}")

    def write_single_coil(
        self, device: Device, address: int, value: bool, timeout: float | None = None
    ) -> None:
        """Write single coil value (function code 05).

        Args:
            device: Target device
            address: Coil address (0-based)
            value: Boolean value to write
            timeout: Seconds for the round trip
        """
        function_code = FunctionCode.WRITE_SINGLE_COIL
        payload = pdu.build_write_single_coil(address, value)
        frame = self._execute(device, function_code, payload, timeout)
        pdu.verify_echo(frame, function_code, payload)
        logger.debug(f"Wrote coil {address}: value={value}")

    def _read_bits(
        self,
        function_code: FunctionCode,
        device: Device,
        address: int,
        count: int,
        timeout: float | None,
    ) -> list[bool]:
        payload = pdu.build_read_request(function_code, address, count)
        frame = self._execute(device, function_code, payload, timeout)
        return pdu.parse_bits_response(frame, function_code, count)

    def _read_registers(
        self,
        function_code: FunctionCode,
        device: Device,
        address: int,
        count: int,
        timeout: float | None,
    ) -> list[int]:
        payload = pdu.build_read_request(function_code, address, count)
        frame = self._execute(device, function_code, payload, timeout)
        return pdu.parse_registers_response(frame, function_code, count)

    def _execute(
        self,
        device: Device,
        function_code: FunctionCode,
        payload: bytes,
        timeout: float | None,
    ) -> DecodedFrame:
        frame = self.session.round_trip(device, function_code, payload, timeout)
        if frame.is_exception:
            log_device_exception(device, function_code, frame)
        return frame


def log_device_exception(device: Device, function_code: FunctionCode, frame: DecodedFrame) -> None:
    code = frame.exception_code or 0
    record_device_exception(function_code, code)
    logger.warning(
        f"Device {device.device_id} rejected {function_code.name} "
        f"with exception code 0x{code:02X}"
    )
