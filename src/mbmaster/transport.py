"""Byte-stream transports and their lifecycle.

A Channel is one connected stream plus the TransactionCorrelator and lock
that go with it. The TransportManager owns every channel: with
``shared_transport`` off each device gets its own connection; with it on,
devices at the same host:port (typically units behind one gateway)
multiplex a single connection and serialize on its channel lock.
"""

from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from mbmaster.config import Settings
from mbmaster.config import settings as default_settings
from mbmaster.errors import (
    ConnectionReset,
    TransportError,
    TransportTimeout,
    Unreachable,
)
from mbmaster.observability.metrics import set_connections_open
from mbmaster.transaction import TransactionCorrelator

if TYPE_CHECKING:
    from mbmaster.session import Device

logger = logging.getLogger(__name__)

_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN}


class Transport(Protocol):
    """Blocking byte stream to one remote endpoint."""

    def write_all(self, data: bytes, timeout: float) -> None: ...

    def read_some(self, max_bytes: int, timeout: float) -> bytes: ...

    def close(self) -> None: ...


TransportFactory = Callable[[str, int, float], Transport]


def map_os_error(exc: OSError, action: str) -> TransportError:
    """Translate a socket error into the transport error taxonomy."""
    if isinstance(exc, TimeoutError):
        return TransportTimeout(f"Timed out while {action}", detail=str(exc))
    if isinstance(exc, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return ConnectionReset(f"Connection lost while {action}", detail=str(exc))
    if isinstance(exc, (ConnectionRefusedError, socket.gaierror)):
        return Unreachable(f"Peer unreachable while {action}", detail=str(exc))
    if exc.errno in _UNREACHABLE_ERRNOS:
        return Unreachable(f"Peer unreachable while {action}", detail=str(exc))
    return TransportError(f"Transport failure while {action}: {exc}", detail=str(exc))


class TcpTransport:
    """Modbus TCP connection: connect once, then stream writes and reads."""

    def __init__(self, sock: socket.socket, host: str, port: int):
        self._sock: socket.socket | None = sock
        self.host = host
        self.port = port

    @classmethod
    def connect(cls, host: str, port: int, timeout: float) -> TcpTransport:
        """Open a TCP connection.

        Raises:
            Unreachable: If the connection cannot be established
        """
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            error = map_os_error(e, f"connecting to {host}:{port}")
            if isinstance(error, TransportTimeout):
                error = Unreachable(f"Timed out connecting to {host}:{port}", detail=str(e))
            raise error from e
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(sock, host, port)

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise ConnectionReset(f"Connection to {self.host}:{self.port} is closed")
        return self._sock

    def write_all(self, data: bytes, timeout: float) -> None:
        """Write every byte of ``data``, continuing after partial sends."""
        sock = self._socket()
        view = memoryview(data)
        deadline = time.monotonic() + timeout
        sent = 0
        while sent < len(view):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportTimeout(
                    f"Timed out after writing {sent} of {len(view)} bytes"
                )
            sock.settimeout(remaining)
            try:
                written = sock.send(view[sent:])
            except OSError as e:
                raise map_os_error(e, "writing") from e
            if written == 0:
                raise ConnectionReset("Peer stopped accepting data")
            sent += written

    def read_some(self, max_bytes: int, timeout: float) -> bytes:
        """Read up to ``max_bytes``; an empty result means the peer closed."""
        sock = self._socket()
        sock.settimeout(timeout)
        try:
            return sock.recv(max_bytes)
        except OSError as e:
            raise map_os_error(e, "reading") from e

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Connection state of a channel."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class ChannelStats:
    """Counters for one channel."""

    connects: int = 0
    requests: int = 0
    errors: int = 0
    foreign_frames: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "connects": self.connects,
            "requests": self.requests,
            "errors": self.errors,
            "foreign_frames": self.foreign_frames,
        }


@dataclass
class Channel:
    """A transport, its correlator, and the lock serializing stream access."""

    key: Hashable
    host: str
    port: int
    transport: Transport | None = None
    correlator: TransactionCorrelator = field(default_factory=TransactionCorrelator)
    lock: threading.Lock = field(default_factory=threading.Lock)
    buffer: bytearray = field(default_factory=bytearray)
    state: ConnectionState = ConnectionState.DISCONNECTED
    devices: set[Hashable] = field(default_factory=set)
    stats: ChannelStats = field(default_factory=ChannelStats)
    # Attached transports came from the host and are not reopened by us
    attached: bool = False


class TransportManager:
    """Owns transport connections for a set of devices.

    Features:
    - One connection per device, or one per host:port when shared
    - Lazy connect on first use, reconnect on the next use after a failure
    - Explicit open/close lifecycle, usable as a context manager
    - Health check support
    """

    channel_class: type[Channel] = Channel

    def __init__(
        self,
        settings: Settings | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        self.settings = settings or default_settings
        self._factory: TransportFactory = transport_factory or TcpTransport.connect
        self._channels: dict[Hashable, Channel] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def shared(self) -> bool:
        return self.settings.shared_transport

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self) -> TransportManager:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def channel_key(self, device: Device) -> Hashable:
        if self.shared:
            return (device.host, device.port)
        return device.device_id

    def channel_for(self, device: Device) -> Channel:
        """Return the channel a device talks through, creating it if needed.

        The channel is not connected here; see ensure_connected().
        """
        with self._lock:
            if self._closed:
                raise TransportError("Transport manager is closed")
            if device.channel is not None and device.channel.attached:
                return device.channel
            key = self.channel_key(device)
            channel = self._channels.get(key)
            if channel is None:
                channel = self.channel_class(key=key, host=device.host, port=device.port)
                self._channels[key] = channel
            channel.devices.add(device.device_id)
        device.channel = channel
        return channel

    def attach(self, device: Device, transport: Transport) -> Channel:
        """Give a device a ready-made transport supplied by the host."""
        with self._lock:
            if self._closed:
                raise TransportError("Transport manager is closed")
            key = device.device_id
            channel = self.channel_class(
                key=key,
                host=device.host,
                port=device.port,
                transport=transport,
                state=ConnectionState.CONNECTED,
                attached=True,
            )
            channel.devices.add(device.device_id)
            self._channels[key] = channel
        device.channel = channel
        self._publish_connection_count()
        return channel

    def ensure_connected(self, channel: Channel) -> Transport:
        """Connect a channel if needed. Caller must hold ``channel.lock``.

        Raises:
            Unreachable: If the connection cannot be established
        """
        if channel.transport is not None:
            return channel.transport
        if channel.attached or self._closed:
            raise ConnectionReset(f"Connection to {channel.host}:{channel.port} is closed")

        logger.debug(f"Connecting to {channel.host}:{channel.port}")
        try:
            transport = self._factory(channel.host, channel.port, self.settings.connect_timeout)
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

    def invalidate(self, channel: Channel, reason: str) -> None:
        """Drop a channel's connection after a failure; the next use reconnects."""
        if channel.transport is not None:
            try:
                channel.transport.close()
            except OSError as e:
                logger.warning(f"Error closing connection to {channel.host}:{channel.port}: {e}")
            channel.transport = None
            logger.warning(
                f"Dropped connection to {channel.host}:{channel.port}: {reason}"
            )
        channel.buffer.clear()
        channel.state = ConnectionState.DISCONNECTED
        self._publish_connection_count()

    def release(self, device: Device) -> None:
        """Forget a device; its channel closes once no device uses it."""
        channel = device.channel
        device.channel = None
        if channel is None:
            return
        with self._lock:
            channel.devices.discard(device.device_id)
            if channel.devices:
                return
            self._channels.pop(channel.key, None)
        self._close_released(channel)
        self._publish_connection_count()

    def _close_released(self, channel: Channel) -> None:
        # Wait for an exchange still running on the channel
        with channel.lock:
            self._close_channel(channel)

    def close(self) -> None:
        """Close every connection. The manager cannot be used afterwards."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            self._close_channel(channel)
        self._publish_connection_count()
        logger.info("Transport manager closed")

    def _close_channel(self, channel: Channel) -> None:
        if channel.transport is not None:
            try:
                channel.transport.close()
            except OSError as e:
                logger.warning(f"Error closing connection to {channel.host}:{channel.port}: {e}")
            channel.transport = None
            logger.info(f"Disconnected from {channel.host}:{channel.port}")
        channel.buffer.clear()
        channel.state = ConnectionState.CLOSED

    def _publish_connection_count(self) -> None:
        with self._lock:
            count = sum(1 for c in self._channels.values() if c.transport is not None)
        set_connections_open(count)

    def health_check(self) -> dict[str, Any]:
        """Return connection health status."""
        with self._lock:
            channels = list(self._channels.values())
        return {
            "closed": self._closed,
            "shared_transport": self.shared,
            "channels": [
                {
                    "host": c.host,
                    "port": c.port,
                    "state": c.state.value,
                    "devices": len(c.devices),
                    "pending_transactions": len(c.correlator),
                    "stats": c.stats.to_dict(),
                }
                for c in channels
            ],
        }