"""Asynchronous Modbus TCP master on asyncio streams.

Same operations, errors and lock discipline as ``mbmaster.client``, but each
round trip suspends the calling task instead of blocking a thread. Framing,
transaction matching and response parsing are shared with the blocking
master.

Usage:
    from mbmaster.aio import AsyncModbusMaster

    async with AsyncModbusMaster() as master:
        plc = master.create_device("192.168.1.10", unit_id=1)
        values = await master.read_holding_registers(plc, address=0, count=2)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, cast

from mbmaster.client import log_device_exception
from mbmaster.config import Settings
from mbmaster.config import settings as default_settings
from mbmaster.errors import (
    ConnectionReset,
    DeviceBusy,
    InvalidArgument,
    MalformedPayload,
    TransportError,
    TransportTimeout,
    Unreachable,
)
from mbmaster.observability.logging import LogContext
from mbmaster.observability.metrics import record_request
from mbmaster.protocol import pdu
from mbmaster.protocol.constants import FunctionCode
from mbmaster.protocol.frame import DecodedFrame, FrameCodec
from mbmaster.session import (
    _STREAM_INTACT,
    Device,
    claim_response,
    expire_transaction,
    next_frame,
    outcome_label,
)
from mbmaster.transport import Channel, ConnectionState, TransportManager, map_os_error

logger = logging.getLogger(__name__)


class AsyncTransport(Protocol):
    """Non-blocking byte stream to one remote endpoint."""

    async def write_all(self, data: bytes) -> None: ...

    async def read_some(self, max_bytes: int) -> bytes: ...

    def close(self) -> None: ...


AsyncTransportFactory = Callable[[str, int, float], Awaitable[AsyncTransport]]


class AsyncTcpTransport:
    """Modbus TCP connection over an asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        port: int,
    ):
        self._reader = reader
        self._writer: asyncio.StreamWriter | None = writer
        self.host = host
        self.port = port

    @classmethod
    async def connect(cls, host: str, port: int, timeout: float) -> AsyncTcpTransport:
        """Open a TCP connection.

        Raises:
            Unreachable: If the connection cannot be established
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except TimeoutError as e:
            raise Unreachable(f"Timed out connecting to {host}:{port}", detail=str(e)) from e
        except OSError as e:
            raise map_os_error(e, f"connecting to {host}:{port}") from e
        return cls(reader, writer, host, port)

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    def _stream(self) -> asyncio.StreamWriter:
        if self._writer is None:
            raise ConnectionReset(f"Connection to {self.host}:{self.port} is closed")
        return self._writer

    async def write_all(self, data: bytes) -> None:
        writer = self._stream()
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            raise map_os_error(e, "writing") from e

    async def read_some(self, max_bytes: int) -> bytes:
        self._stream()
        try:
            return await self._reader.read(max_bytes)
        except OSError as e:
            raise map_os_error(e, "reading") from e

    def close(self) -> None:
        if self._writer is None:
            return
        try:
            self._writer.close()
        finally:
            self._writer = None


# -----------------------------------------------------------------------------
# Channels and devices
# -----------------------------------------------------------------------------


@dataclass
class AsyncChannel(Channel):
    """Channel whose stream access is serialized by an asyncio lock."""

    transport: AsyncTransport | None = None  # type: ignore[assignment]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)  # type: ignore[assignment]


@dataclass(eq=False)
class AsyncDevice(Device):
    """Device whose round trips are serialized by an asyncio lock."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)  # type: ignore[assignment]


class AsyncTransportManager(TransportManager):
    """TransportManager that opens connections with an awaitable factory.

    Channel bookkeeping is inherited; only connecting is asynchronous.
    """

    channel_class = AsyncChannel

    def __init__(
        self,
        settings: Settings | None = None,
        transport_factory: AsyncTransportFactory | None = None,
    ):
        super().__init__(settings)
        self._async_factory: AsyncTransportFactory = (
            transport_factory or AsyncTcpTransport.connect
        )

    def channel_for(self, device: Device) -> AsyncChannel:
        # channel_class and attach() only ever create AsyncChannel instances
        return cast(AsyncChannel, super().channel_for(device))

    async def connect(self, channel: AsyncChannel) -> AsyncTransport:
        """Connect a channel if needed. Caller must hold ``channel.lock``.

        Raises:
            Unreachable: If the connection cannot be established
        """
        if channel.transport is not None:
            return channel.transport
        if channel.attached or self.is_closed:
            raise ConnectionReset(f"Connection to {channel.host}:{channel.port} is closed")

        logger.debug(f"Connecting to {channel.host}:{channel.port}")
        try:
            transport = await self._async_factory(
                channel.host, channel.port, self.settings.connect_timeout
            )
        except TransportError as e:
            logger.error(f"Failed to connect to {channel.host}:{channel.port}: {e}")
            raise

        channel.transport = transport
        channel.buffer.clear()
        channel.state = ConnectionState.CONNECTED
        channel.stats.connects += 1
        logger.info(f"Connected to Modbus device at {channel.host}:{channel.port}")
        self._publish_connection_count()
        return transport

    def _close_released(self, channel: Channel) -> None:
        # The device lock already waited out any exchange on a dedicated
        # channel, and a shared one only closes once its last device is gone
        self._close_channel(channel)


@asynccontextmanager
async def hold(lock: asyncio.Lock, timeout: float, message: str) -> AsyncIterator[None]:
    """Acquire ``lock`` within ``timeout`` seconds or raise DeviceBusy."""
    try:
        await asyncio.wait_for(lock.acquire(), timeout=max(timeout, 0.0))
    except TimeoutError:
        raise DeviceBusy(message) from None
    try:
        yield
    finally:
        lock.release()


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


class AsyncDeviceSession:
    """Drives send -> receive -> decode round trips on asyncio streams."""

    def __init__(
        self,
        transport_manager: AsyncTransportManager,
        codec: FrameCodec | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or transport_manager.settings or default_settings
        self.manager = transport_manager
        self.codec = codec or FrameCodec(unit_id=self.settings.default_unit_id)

    async def round_trip(
        self,
        device: AsyncDevice,
        function_code: int,
        payload: bytes,
        timeout: float | None = None,
    ) -> DecodedFrame:
        """Send one request and wait for the response that matches it.

        See DeviceSession.round_trip() for arguments and errors.
        """
        if device.released:
            raise InvalidArgument(f"Device {device.device_id} has been destroyed")
        if timeout is None:
            timeout = self.settings.request_timeout
        if timeout <= 0:
            raise InvalidArgument(f"Timeout must be positive, got {timeout}")

        started = time.monotonic()
        deadline = started + timeout
        outcome = "ok"

        with LogContext(device_id=device.device_id):
            try:
                async with hold(device.lock, timeout, f"Device {device.device_id} is busy"):
                    # destroy_device may have run while we waited for the lock
                    if device.released:
                        raise InvalidArgument(f"Device {device.device_id} has been destroyed")
                    channel = self.manager.channel_for(device)
                    async with hold(
                        channel.lock,
                        deadline - time.monotonic(),
                        f"Connection to {channel.host}:{channel.port} is busy",
                    ):
                        return await self._exchange(
                            device, channel, function_code, payload, deadline
                        )
            except Exception as e:
                outcome = outcome_label(e)
                raise
            finally:
                record_request(function_code, outcome, time.monotonic() - started)

    async def _exchange(
        self,
        device: AsyncDevice,
        channel: AsyncChannel,
        function_code: int,
        payload: bytes,
        deadline: float,
    ) -> DecodedFrame:
        try:
            transport = await self.manager.connect(channel)
        except TransportError:
            channel.stats.errors += 1
            raise

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransportTimeout(f"No time left to send to device {device.device_id}")

        transaction_id = channel.correlator.register(device.device_id, function_code, remaining)
        channel.stats.requests += 1
        with LogContext(transaction_id=transaction_id):
            try:
                frame = self.codec.encode(
                    function_code, payload, transaction_id, unit_id=device.unit_id
                )
                logger.debug(f"Sending frame {frame.hex(' ')}")
                try:
                    await asyncio.wait_for(transport.write_all(frame), timeout=remaining)
                except TimeoutError:
                    # A half-written frame would corrupt the next request on this stream
                    self.manager.invalidate(channel, "write timed out")
                    raise TransportTimeout(
                        f"Timed out writing transaction {transaction_id}"
                    ) from None
                try:
                    return await asyncio.wait_for(
                        self._receive(channel, transport),
                        timeout=max(deadline - time.monotonic(), 0.0),
                    )
                except TimeoutError:
                    raise expire_transaction(channel, transaction_id) from None
            except TransportError as e:
                channel.stats.errors += 1
                if not isinstance(e, _STREAM_INTACT):
                    self.manager.invalidate(channel, str(e))
                raise
            except MalformedPayload:
                channel.stats.errors += 1
                raise
            finally:
                channel.correlator.discard(transaction_id)

    async def _receive(self, channel: AsyncChannel, transport: AsyncTransport) -> DecodedFrame:
        while True:
            try:
                frame = next_frame(self.codec, channel.buffer)
            except MalformedPayload as e:
                self.manager.invalidate(channel, str(e))
                raise
            if frame is not None:
                response = claim_response(channel, frame)
                if response is not None:
                    return response
                continue

            chunk = await transport.read_some(self.settings.read_chunk_size)
            if not chunk:
                raise ConnectionReset(
                    f"Connection to {channel.host}:{channel.port} closed by peer"
                )
            channel.buffer.extend(chunk)


# -----------------------------------------------------------------------------
# Master
# -----------------------------------------------------------------------------


class AsyncModbusMaster:
    """Asyncio Modbus TCP master.

    Tasks calling the same device queue on its lock; different devices
    proceed concurrently when each has its own connection.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport_manager: AsyncTransportManager | None = None,
        transport_factory: AsyncTransportFactory | None = None,
    ):
        self.settings = settings or default_settings
        self.transport_manager = transport_manager or AsyncTransportManager(
            self.settings, transport_factory
        )
        self.session = AsyncDeviceSession(self.transport_manager, settings=self.settings)
        self._devices: dict[Hashable, AsyncDevice] = {}

    async def __aenter__(self) -> AsyncModbusMaster:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def devices(self) -> list[AsyncDevice]:
        return list(self._devices.values())

    def create_device(
        self,
        host: str,
        port: int | None = None,
        unit_id: int | None = None,
        device_id: Hashable | None = None,
        transport: AsyncTransport | None = None,
    ) -> AsyncDevice:
        """Register a remote device. See ModbusMaster.create_device()."""
        device = AsyncDevice(
            host=host,
            port=self.settings.default_port if port is None else port,
            unit_id=self.settings.default_unit_id if unit_id is None else unit_id,
            device_id=device_id,
        )
        if device.device_id in self._devices:
            raise InvalidArgument(f"Device {device.device_id} already exists")
        self._devices[device.device_id] = device

        if transport is not None:
            self.transport_manager.attach(device, transport)  # type: ignore[arg-type]

        logger.info(f"Created device {device.device_id}")
        return device

    async def destroy_device(self, device: AsyncDevice) -> None:
        """Release a device; waits for its in-flight round trip to finish."""
        async with device.lock:
            device.released = True
        self._devices.pop(device.device_id, None)
        self.transport_manager.release(device)
        logger.info(f"Destroyed device {device.device_id}")

    async def close(self) -> None:
        """Release every device and close all connections.

        Waits for each device's in-flight round trip to finish first.
        """
        for device in self.devices:
            async with device.lock:
                device.released = True
        self._devices.clear()
        self.transport_manager.close()

    def health_check(self) -> dict[str, Any]:
        return {
            "devices": len(self._devices),
            "transport": self.transport_manager.health_check(),
        }

    async def read_coils(
        self, device: AsyncDevice, address: int, count: int, timeout: float | None = None
    ) -> list[bool]:
        """Read coil values (function code 01)."""
        return await self._read_bits(FunctionCode.READ_COILS, device, address, count, timeout)

    async def read_discrete_inputs(
        self, device: AsyncDevice, address: int, count: int, timeout: float | None = None
    ) -> list[bool]:
        """Read discrete input values (function code 02)."""
        return await self._read_bits(
            FunctionCode.READ_DISCRETE_INPUTS, device, address, count, timeout
        )

    async def read_holding_registers(
        self, device: AsyncDevice, address: int, count: int, timeout: float | None = None
    ) -> list[int]:
        """Read holding register values (function code 03)."""
        return await self._read_registers(
            FunctionCode.READ_HOLDING_REGISTERS, device, address, count, timeout
        )

    async def read_input_registers(
        self, device: AsyncDevice, address: int, count: int, timeout: float | None = None
    ) -> list[int]:
        """Read input register values (function code 04)."""
        return await self._read_registers(
            FunctionCode.READ_INPUT_REGISTERS, device, address, count, timeout
        )

    async def write_single_register(
        self, device: AsyncDevice, address: int, value: int, timeout: float | None = None
    ) -> None:
        """Write single holding register value (function code 06)."""
        function_code = FunctionCode.WRITE_SINGLE_REGISTER
        payload = pdu.build_write_single_register(address, value)
        frame = await self._execute(device, function_code, payload, timeout)
        pdu.verify_echo(frame, function_code, payload)

    async def write_single_coil(
        self, device: AsyncDevice, address: int, value: bool, timeout: float | None = None
    ) -> None:
        """Write single coil value (function code 05)."""
        function_code = FunctionCode.WRITE_SINGLE_COIL
        payload = pdu.build_write_single_coil(address, value)
        frame = await self._execute(device, function_code, payload, timeout)
        pdu.verify_echo(frame, function_code, payload)

    async def _read_bits(
        self,
        function_code: FunctionCode,
        device: AsyncDevice,
        address: int,
        count: int,
        timeout: float | None,
    ) -> list[bool]:
        payload = pdu.build_read_request(function_code, address, count)
        frame = await self._execute(device, function_code, payload, timeout)
        return pdu.parse_bits_response(frame, function_code, count)

    async def _read_registers(
        self,
        function_code: FunctionCode,
        device: AsyncDevice,
        address: int,
        count: int,
        timeout: float | None,
    ) -> list[int]:
        payload = pdu.build_read_request(function_code, address, count)
        frame = await self._execute(device, function_code, payload, timeout)
        return pdu.parse_registers_response(frame, function_code, count)

    async def _execute(
        self,
        device: AsyncDevice,
        function_code: FunctionCode,
        payload: bytes,
        timeout: float | None,
    ) -> DecodedFrame:
        frame = await self.session.round_trip(device, function_code, payload, timeout)
        if frame.is_exception:
            log_device_exception(device, function_code, frame)
        return frame
