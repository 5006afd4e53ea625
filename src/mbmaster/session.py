"""Device sessions: one complete request/response exchange at a time.

A round trip holds the device lock for its whole duration, so a device never
has more than one transaction in flight. The channel lock is taken inside the
device lock; on a shared connection it serializes every device that uses it.
Both locks are released on every exit path.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from mbmaster.config import Settings
from mbmaster.config import settings as default_settings
from mbmaster.errors import (
    ConnectionReset,
    DeviceBusy,
    IncompleteFrame,
    InvalidArgument,
    MalformedPayload,
    ShortFrame,
    TransportError,
    TransportTimeout,
)
from mbmaster.observability.logging import LogContext
from mbmaster.observability.metrics import record_foreign_frame, record_request
from mbmaster.protocol.constants import DEFAULT_PORT, DEFAULT_UNIT_ID
from mbmaster.protocol.frame import DecodedFrame, FrameCodec
from mbmaster.transport import Channel, Transport, TransportManager

logger = logging.getLogger(__name__)

# Transport errors that leave the byte stream in sync
_STREAM_INTACT = (TransportTimeout, DeviceBusy)


@dataclass(eq=False)
class Device:
    """A remote Modbus TCP endpoint."""

    host: str
    port: int = DEFAULT_PORT
    unit_id: int = DEFAULT_UNIT_ID
    device_id: Hashable | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    channel: Channel | None = field(default=None, repr=False)
    released: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if not self.host:
            raise InvalidArgument("Device host must not be empty")
        if not 1 <= self.port <= 65535:
            raise InvalidArgument(f"Port must be 1-65535, got {self.port}")
        if not 0 <= self.unit_id <= 255:
            raise InvalidArgument(f"Unit id must be 0-255, got {self.unit_id}")
        if self.device_id is None:
            self.device_id = f"{self.host}:{self.port}/{self.unit_id}"


@contextmanager
def hold(lock: threading.Lock, timeout: float, message: str) -> Iterator[None]:
    """Acquire ``lock`` within ``timeout`` seconds or raise DeviceBusy."""
    if not lock.acquire(timeout=max(timeout, 0.0)):
        raise DeviceBusy(message)
    try:
        yield
    finally:
        lock.release()


def outcome_label(error: Exception) -> str:
    kind = getattr(error, "kind", None)
    if kind is not None:
        return str(kind.value)
    return type(error).__name__


class DeviceSession:
    """Drives send -> receive -> decode round trips for devices."""

    def __init__(
        self,
        transport_manager: TransportManager,
        codec: FrameCodec | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or transport_manager.settings or default_settings
        self.manager = transport_manager
        self.codec = codec or FrameCodec(unit_id=self.settings.default_unit_id)

    def round_trip(
        self,
        device: Device,
        function_code: int,
        payload: bytes,
        timeout: float | None = None,
    ) -> DecodedFrame:
        """Send one request and wait for the response that matches it.

        Args:
            device: Target device
            function_code: Request function code
            payload: Request bytes following the function code
            timeout: Seconds for the whole exchange, lock wait included

        Returns:
            The decoded response frame, possibly an exception response

        Raises:
            InvalidArgument: If the device was destroyed or the frame cannot be built
            TransportError: On busy device, timeout or connection failure
            ProtocolError: If the response cannot be decoded
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
                with hold(device.lock, timeout, f"Device {device.device_id} is busy"):
                    # destroy_device may have run while we waited for the lock
                    if device.released:
                        raise InvalidArgument(f"Device {device.device_id} has been destroyed")
                    channel = self.manager.channel_for(device)
                    with hold(
                        channel.lock,
                        deadline - time.monotonic(),
                        f"Connection to {channel.host}:{channel.port} is busy",
                    ):
                        return self._exchange(device, channel, function_code, payload, deadline)
            except Exception as e:
                outcome = outcome_label(e)
                raise
            finally:
                record_request(function_code, outcome, time.monotonic() - started)

    def _exchange(
        self,
        device: Device,
        channel: Channel,
        function_code: int,
        payload: bytes,
        deadline: float,
    ) -> DecodedFrame:
        try:
            transport = self.manager.ensure_connected(channel)
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
                    transport.write_all(frame, remaining)
                except TransportTimeout as e:
                    # A half-written frame would corrupt the next request on this stream
                    self.manager.invalidate(channel, str(e))
                    raise
                return self._receive(channel, transport, transaction_id)
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

    def _receive(
        self,
        channel: Channel,
        transport: Transport,
        transaction_id: int,
    ) -> DecodedFrame:
        transaction = channel.correlator.pending(transaction_id)
        if transaction is None:
            raise TransportTimeout(f"Transaction {transaction_id} expired before sending")
        deadline = transaction.deadline

        while True:
            try:
                frame = next_frame(self.codec, channel.buffer)
            except MalformedPayload as e:
                # The stream is out of sync; drop it so the next call reconnects
                self.manager.invalidate(channel, str(e))
                raise
            if frame is not None:
                response = claim_response(channel, frame)
                if response is not None:
                    return response
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise expire_transaction(channel, transaction_id)

            chunk = transport.read_some(self.settings.read_chunk_size, remaining)
            if not chunk:
                raise ConnectionReset(
                    f"Connection to {channel.host}:{channel.port} closed by peer"
                )
            channel.buffer.extend(chunk)


def next_frame(codec: FrameCodec, buffer: bytearray) -> DecodedFrame | None:
    """Take one complete frame off the front of ``buffer``, if there is one.

    Raises:
        MalformedPayload: If the buffer does not start with a valid MBAP header
    """
    if not buffer:
        return None
    try:
        frame = codec.decode(buffer)
    except (ShortFrame, IncompleteFrame):
        return None
    del buffer[: frame.frame_length]
    return frame


def claim_response(channel: Channel, frame: DecodedFrame) -> DecodedFrame | None:
    """Match a frame to its pending transaction; None means it was foreign."""
    matched = channel.correlator.match(frame.transaction_id, frame)
    if matched is None:
        # Late answer to an expired request, or cross-talk on a shared link
        channel.stats.foreign_frames += 1
        record_foreign_frame()
        logger.debug(f"Discarding foreign frame for transaction {frame.transaction_id}")
        return None
    if frame.request_function_code != matched.expected_function_code:
        raise MalformedPayload(
            f"Response function 0x{frame.function_code:02X} does not answer "
            f"request 0x{matched.expected_function_code:02X}"
        )
    logger.debug(f"Received response for transaction {frame.transaction_id}")
    return frame


def expire_transaction(channel: Channel, transaction_id: int) -> TransportTimeout:
    """Expire overdue transactions and return the timeout error for ours."""
    for transaction in channel.correlator.expire():
        if transaction.transaction_id == transaction_id and isinstance(
            transaction.error, TransportTimeout
        ):
            return transaction.error
    channel.correlator.discard(transaction_id)
    return TransportTimeout(f"Transaction {transaction_id} timed out")
