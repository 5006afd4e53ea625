"""Tests for the blocking Modbus master."""

from __future__ import annotations

import threading
import time

import pytest
from modbus_fakes import ScriptedTransport, TransportFactory, build_frame, echo, reply, silence

from mbmaster.client import ModbusMaster
from mbmaster.config import Settings
from mbmaster.errors import (
    ConnectionReset,
    DeviceBusy,
    DeviceException,
    EchoMismatch,
    InvalidArgument,
    MalformedPayload,
    TransportError,
    TransportTimeout,
    Unreachable,
)
from mbmaster.protocol.constants import ExceptionCode
from mbmaster.session import Device


class TestDeviceLifecycle:
    """Test device creation and release."""

    @pytest.fixture
    def master(self, test_settings: Settings, factory: TransportFactory) -> ModbusMaster:
        return ModbusMaster(settings=test_settings, transport_factory=factory)

    def test_create_device_defaults(self, master: ModbusMaster) -> None:
        device = master.create_device("10.0.0.5")
        assert device.port == 502
        assert device.unit_id == 255
        assert device.device_id == "10.0.0.5:502/255"
        assert master.devices == [device]

    def test_create_device_with_id(self, master: ModbusMaster) -> None:
        device = master.create_device("10.0.0.5", port=5020, unit_id=3, device_id="boiler")
        assert device.device_id == "boiler"
        assert device.port == 5020
        assert device.unit_id == 3

    def test_create_duplicate_device(self, master: ModbusMaster) -> None:
        master.create_device("10.0.0.5", device_id="boiler")
        with pytest.raises(InvalidArgument):
            master.create_device("10.0.0.6", device_id="boiler")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"host": ""},
            {"host": "10.0.0.5", "port": 0},
            {"host": "10.0.0.5", "port": 70000},
            {"host": "10.0.0.5", "unit_id": 256},
        ],
    )
    def test_create_invalid_device(self, master: ModbusMaster, kwargs: dict) -> None:
        with pytest.raises(InvalidArgument):
            master.create_device(**kwargs)

    def test_create_does_not_connect(
        self, master: ModbusMaster, factory: TransportFactory
    ) -> None:
        master.create_device("10.0.0.5")
        assert factory.calls == []

    def test_destroyed_device_rejects_calls(
        self, master: ModbusMaster, factory: TransportFactory
    ) -> None:
        device = master.create_device("10.0.0.5")
        master.destroy_device(device)
        assert master.devices == []
        with pytest.raises(InvalidArgument):
            master.read_coils(device, 0, 1)
        assert factory.calls == []

    def test_destroy_closes_connection(
        self, master: ModbusMaster, transport: ScriptedTransport
    ) -> None:
        device = master.create_device("10.0.0.5", unit_id=1)
        transport.expect(reply(0x03, bytes.fromhex("02 0001")))
        master.read_holding_registers(device, 0, 1)

        master.destroy_device(device)
        assert transport.closed is True

    def test_destroy_while_call_waits_for_device(
        self, master: ModbusMaster, factory: TransportFactory, transport: ScriptedTransport
    ) -> None:
        device = master.create_device("10.0.0.5", unit_id=1)
        transport.expect(reply(0x03, bytes.fromhex("02 0001")))
        errors: list[Exception] = []

        def call() -> None:
            try:
                master.read_holding_registers(device, 0, 1, timeout=2.0)
            except InvalidArgument as e:
                errors.append(e)

        # Queue a call behind the device lock, then release the device under it
        device.lock.acquire()
        worker = threading.Thread(target=call)
        worker.start()
        time.sleep(0.05)
        device.released = True
        device.lock.release()
        worker.join(timeout=2.0)
        master.destroy_device(device)

        assert not worker.is_alive()
        assert len(errors) == 1
        assert transport.written == []
        assert factory.calls == []
        assert master.health_check()["transport"]["channels"] == []

    def test_close_waits_for_call_in_flight(
        self, master: ModbusMaster, transport: ScriptedTransport
    ) -> None:
        device = master.create_device("10.0.0.5", unit_id=1)
        transport.expect(reply(0x03, bytes.fromhex("02 0001")))
        master.read_holding_registers(device, 0, 1)

        device.lock.acquire()
        closer = threading.Thread(target=master.close)
        closer.start()
        time.sleep(0.05)
        assert closer.is_alive()
        assert transport.closed is False

        device.lock.release()
        closer.join(timeout=2.0)

        assert not closer.is_alive()
        assert transport.closed is True
        assert device.released is True

    def test_context_manager_closes(
        self, test_settings: Settings, factory: TransportFactory, transport: ScriptedTransport
    ) -> None:
        with ModbusMaster(settings=test_settings, transport_factory=factory) as master:
            device = master.create_device("10.0.0.5", unit_id=1)
            transport.expect(reply(0x03, bytes.fromhex("02 0001")))
            master.read_holding_registers(device, 0, 1)

        assert transport.closed is True
        assert master.transport_manager.is_closed is True
        with pytest.raises(InvalidArgument):
            master.read_holding_registers(device, 0, 1)

    def test_health_check(self, master: ModbusMaster, transport: ScriptedTransport) -> None:
        device = master.create_device("10.0.0.5", unit_id=1)
        transport.expect(reply(0x03, bytes.fromhex("02 0001")))
        master.read_holding_registers(device, 0, 1)

        health = master.health_check()
        assert health["devices"] == 1
        channel = health["transport"]["channels"][0]
        assert channel["state"] == "connected"
        assert channel["pending_transactions"] == 0
        assert channel["stats"]["requests"] == 1


class TestReadOperations:
    """Test read operations against a scripted device."""

    @pytest.fixture
    def master(self, test_settings: Settings, factory: TransportFactory) -> ModbusMaster:
        return ModbusMaster(settings=test_settings, transport_factory=factory)

    @pytest.fixture
    def device(self, master: ModbusMaster) -> Device:
        return master.create_device("10.0.0.5", unit_id=1)

    def test_read_holding_registers(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x03, bytes.fromhex("04 1234 5678")))

        assert master.read_holding_registers(device, 0, 2) == [0x1234, 0x5678]
        assert transport.written == [bytes.fromhex("0001 0000 0006 01 03 0000 0002")]

    def test_read_input_registers(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x04, bytes.fromhex("02 ffff")))

        assert master.read_input_registers(device, 10, 1) == [0xFFFF]
        assert transport.written[0][7:] == bytes.fromhex("04 000a 0001")

    def test_read_coils(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x01, bytes([0x02, 0xCD, 0x01])))

        bits = master.read_coils(device, 19, 10)
        assert bits == [True, False, True, True, False, False, True, True, True, False]
        assert transport.written[0][7:] == bytes.fromhex("01 0013 000a")

    def test_read_discrete_inputs(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x02, bytes([0x01, 0x05])))

        assert master.read_discrete_inputs(device, 0, 3) == [True, False, True]

    def test_transaction_ids_increase(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(
            reply(0x03, bytes.fromhex("02 0001")),
            reply(0x03, bytes.fromhex("02 0002")),
        )
        master.read_holding_registers(device, 0, 1)
        master.read_holding_registers(device, 0, 1)

        assert [frame[:2] for frame in transport.written] == [b"\x00\x01", b"\x00\x02"]

    def test_response_split_across_reads(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x03, bytes.fromhex("04 1234 5678"), splits=(3, 7, 9)))

        assert master.read_holding_registers(device, 0, 2) == [0x1234, 0x5678]

    def test_one_byte_reads(self, factory: TransportFactory, transport: ScriptedTransport) -> None:
        settings = Settings(request_timeout=0.5, read_chunk_size=1)
        master = ModbusMaster(settings=settings, transport_factory=factory)
        device = master.create_device("10.0.0.5", unit_id=1)
        transport.expect(reply(0x03, bytes.fromhex("04 1234 5678")))

        assert master.read_holding_registers(device, 0, 2) == [0x1234, 0x5678]

    @pytest.mark.parametrize(
        ("operation", "count"),
        [
            ("read_coils", 2001),
            ("read_discrete_inputs", 0),
            ("read_holding_registers", 126),
            ("read_input_registers", 0),
        ],
    )
    def test_invalid_count_sends_nothing(
        self,
        master: ModbusMaster,
        device: Device,
        factory: TransportFactory,
        operation: str,
        count: int,
    ) -> None:
        with pytest.raises(InvalidArgument):
            getattr(master, operation)(device, 0, count)
        assert factory.calls == []

    @pytest.mark.parametrize(("address", "count"), [(0, 1.5), (0.0, 1), ("0", 1), (0, None)])
    def test_non_integer_arguments_send_nothing(
        self,
        master: ModbusMaster,
        device: Device,
        factory: TransportFactory,
        address: object,
        count: object,
    ) -> None:
        with pytest.raises(InvalidArgument):
            master.read_holding_registers(device, address, count)  # type: ignore[arg-type]
        assert factory.calls == []

    def test_invalid_timeout(self, master: ModbusMaster, device: Device) -> None:
        with pytest.raises(InvalidArgument):
            master.read_coils(device, 0, 1, timeout=0)


class TestWriteOperations:
    """Test single write operations."""

    @pytest.fixture
    def master(self, test_settings: Settings, factory: TransportFactory) -> ModbusMaster:
        return ModbusMaster(settings=test_settings, transport_factory=factory)

    @pytest.fixture
    def device(self, master: ModbusMaster) -> Device:
        return master.create_device("10.0.0.5", unit_id=1)

    def test_write_single_register(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(echo())

        master.write_single_register(device, 1, 0x00FF)
        assert transport.written == [bytes.fromhex("0001 0000 0006 01 06 0001 00ff")]

    def test_write_single_register_echo_mismatch(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x06, bytes.fromhex("0001 00fe")))

        with pytest.raises(EchoMismatch):
            master.write_single_register(device, 1, 0x00FF)

    def test_write_single_register_invalid_value(
        self, master: ModbusMaster, device: Device, factory: TransportFactory
    ) -> None:
        with pytest.raises(InvalidArgument):
            master.write_single_register(device, 1, 0x10000)
        assert factory.calls == []

    def test_write_single_coil(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(echo(), echo())

        master.write_single_coil(device, 7, True)
        master.write_single_coil(device, 7, False)
        assert transport.written[0][7:] == bytes.fromhex("05 0007 ff00")
        assert transport.written[1][7:] == bytes.fromhex("05 0007 0000")


class TestDeviceExceptions:
    """Test Modbus exception responses."""

    @pytest.fixture
    def master(self, test_settings: Settings, factory: TransportFactory) -> ModbusMaster:
        return ModbusMaster(settings=test_settings, transport_factory=factory)

    @pytest.fixture
    def device(self, master: ModbusMaster) -> Device:
        return master.create_device("10.0.0.5", unit_id=1)

    def test_illegal_data_address(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x81, b"\x02"))

        with pytest.raises(DeviceException) as exc_info:
            master.read_coils(device, 0, 1)
        assert exc_info.value.code == ExceptionCode.ILLEGAL_DATA_ADDRESS
        assert "Illegal Data Address" in str(exc_info.value)

    def test_write_rejected(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x86, b"\x03"))

        with pytest.raises(DeviceException) as exc_info:
            master.write_single_register(device, 1, 2)
        assert exc_info.value.code == ExceptionCode.ILLEGAL_DATA_VALUE

    def test_exception_without_code(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x83, b""))

        with pytest.raises(DeviceException) as exc_info:
            master.read_holding_registers(device, 0, 1)
        assert exc_info.value.code == 0
        assert exc_info.value.is_known is False

    def test_exception_keeps_connection(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x83, b"\x02"), reply(0x03, bytes.fromhex("02 0001")))

        with pytest.raises(DeviceException):
            master.read_holding_registers(device, 0, 1)
        assert master.read_holding_registers(device, 0, 1) == [1]
        assert transport.closed is False


class TestTransportFailures:
    """Test timeouts, resets and malformed traffic."""

    @pytest.fixture
    def master(self, test_settings: Settings, factory: TransportFactory) -> ModbusMaster:
        return ModbusMaster(settings=test_settings, transport_factory=factory)

    @pytest.fixture
    def device(self, master: ModbusMaster) -> Device:
        return master.create_device("10.0.0.5", unit_id=1)

    def test_timeout_keeps_connection(
        self,
        master: ModbusMaster,
        device: Device,
        transport: ScriptedTransport,
        factory: TransportFactory,
    ) -> None:
        transport.expect(silence())

        with pytest.raises(TransportTimeout):
            master.read_holding_registers(device, 0, 1)
        assert transport.closed is False
        assert len(device.channel.correlator) == 0

        # The late answer to transaction 1 is discarded as foreign
        transport.feed(build_frame(1, 0x03, bytes.fromhex("02 dead")))
        transport.expect(reply(0x03, bytes.fromhex("02 0001")))
        assert master.read_holding_registers(device, 0, 1) == [1]
        assert device.channel.stats.foreign_frames == 1
        assert len(factory.calls) == 1

    def test_foreign_frame_before_response(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        def respond(request: bytes) -> list[bytes]:
            foreign = build_frame(999, 0x03, bytes.fromhex("02 ffff"))
            (ours,) = reply(0x03, bytes.fromhex("02 0001"))(request)
            return [foreign + ours]

        transport.expect(respond)

        assert master.read_holding_registers(device, 0, 1) == [1]
        assert device.channel.stats.foreign_frames == 1

    def test_connection_reset_reconnects(self, test_settings: Settings) -> None:
        first, second = ScriptedTransport(), ScriptedTransport()
        factory = TransportFactory(first, second)
        master = ModbusMaster(settings=test_settings, transport_factory=factory)
        device = master.create_device("10.0.0.5", unit_id=1)

        first.eof = True
        with pytest.raises(ConnectionReset):
            master.read_holding_registers(device, 0, 1)
        assert first.closed is True

        second.expect(reply(0x03, bytes.fromhex("02 0001")))
        assert master.read_holding_registers(device, 0, 1) == [1]
        assert len(factory.calls) == 2

    def test_write_failure_invalidates(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.write_error = ConnectionReset("broken pipe")

        with pytest.raises(ConnectionReset):
            master.write_single_register(device, 0, 1)
        assert transport.closed is True

    def test_unreachable(self, test_settings: Settings) -> None:
        factory = TransportFactory(error=Unreachable("Connection refused"))
        master = ModbusMaster(settings=test_settings, transport_factory=factory)
        device = master.create_device("10.0.0.5", unit_id=1)

        with pytest.raises(Unreachable):
            master.read_coils(device, 0, 1)
        with pytest.raises(Unreachable):
            master.read_coils(device, 0, 1)
        assert len(factory.calls) == 2

    def test_device_busy(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        device.lock.acquire()
        try:
            with pytest.raises(DeviceBusy):
                master.read_coils(device, 0, 1, timeout=0.05)
        finally:
            device.lock.release()
        assert transport.written == []

    def test_malformed_header_drops_connection(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        def respond(request: bytes) -> list[bytes]:
            return [build_frame(1, 0x03, bytes.fromhex("02 0001"), protocol_id=7)]

        transport.expect(respond)

        with pytest.raises(MalformedPayload):
            master.read_holding_registers(device, 0, 1)
        assert transport.closed is True

    def test_response_for_other_function(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x04, bytes.fromhex("02 0001")))

        with pytest.raises(MalformedPayload):
            master.read_holding_registers(device, 0, 1)

    def test_byte_count_mismatch(
        self, master: ModbusMaster, device: Device, transport: ScriptedTransport
    ) -> None:
        transport.expect(reply(0x03, bytes.fromhex("04 0001")))

        with pytest.raises(MalformedPayload):
            master.read_holding_registers(device, 0, 1)

    def test_attached_transport_is_not_reopened(
        self, test_settings: Settings, factory: TransportFactory
    ) -> None:
        master = ModbusMaster(settings=test_settings, transport_factory=factory)
        attached = ScriptedTransport()
        attached.eof = True
        device = master.create_device("10.0.0.5", unit_id=1, transport=attached)

        with pytest.raises(ConnectionReset):
            master.read_coils(device, 0, 1)
        with pytest.raises(ConnectionReset):
            master.read_coils(device, 0, 1)
        assert factory.calls == []

    def test_closed_master(self, master: ModbusMaster) -> None:
        master.close()
        device = Device(host="10.0.0.5")
        with pytest.raises(TransportError):
            master.read_coils(device, 0, 1)


class TestSharedTransport:
    """Test devices multiplexed over one connection."""

    def test_devices_share_connection(
        self, shared_settings: Settings, factory: TransportFactory, transport: ScriptedTransport
    ) -> None:
        master = ModbusMaster(settings=shared_settings, transport_factory=factory)
        first = master.create_device("10.0.0.5", unit_id=1)
        second = master.create_device("10.0.0.5", unit_id=2)
        transport.expect(
            reply(0x03, bytes.fromhex("02 0001")),
            reply(0x03, bytes.fromhex("02 0002")),
        )

        assert master.read_holding_registers(first, 0, 1) == [1]
        assert master.read_holding_registers(second, 0, 1) == [2]

        assert len(factory.calls) == 1
        assert first.channel is second.channel
        assert [frame[6] for frame in transport.written] == [1, 2]
        assert [frame[:2] for frame in transport.written] == [b"\x00\x01", b"\x00\x02"]

    def test_connection_outlives_one_device(
        self, shared_settings: Settings, factory: TransportFactory, transport: ScriptedTransport
    ) -> None:
        master = ModbusMaster(settings=shared_settings, transport_factory=factory)
        first = master.create_device("10.0.0.5", unit_id=1)
        second = master.create_device("10.0.0.5", unit_id=2)
        transport.expect(
            reply(0x03, bytes.fromhex("02 0001")),
            reply(0x03, bytes.fromhex("02 0002")),
        )
        master.read_holding_registers(first, 0, 1)
        master.read_holding_registers(second, 0, 1)

        master.destroy_device(first)
        assert transport.closed is False
        master.destroy_device(second)
        assert transport.closed is True

    def test_separate_connections_by_default(self, test_settings: Settings) -> None:
        first_transport, second_transport = ScriptedTransport(), ScriptedTransport()
        factory = TransportFactory(first_transport, second_transport)
        master = ModbusMaster(settings=test_settings, transport_factory=factory)
        first = master.create_device("10.0.0.5", unit_id=1)
        second = master.create_device("10.0.0.5", unit_id=2)
        first_transport.expect(reply(0x03, bytes.fromhex("02 0001")))
        second_transport.expect(reply(0x03, bytes.fromhex("02 0002")))

        assert master.read_holding_registers(first, 0, 1) == [1]
        assert master.read_holding_registers(second, 0, 1) == [2]
        assert len(factory.calls) == 2
        assert first.channel is not second.channel
