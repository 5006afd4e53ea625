"""Fixtures for unit tests."""

from __future__ import annotations

import pytest
from modbus_fakes import ScriptedTransport, TransportFactory

from mbmaster.config import Settings


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short timeouts and per-device connections."""
    return Settings(
        request_timeout=0.5,
        connect_timeout=0.5,
        shared_transport=False,
        default_unit_id=255,
    )


@pytest.fixture
def shared_settings() -> Settings:
    """Settings where devices at one host:port share a connection."""
    return Settings(request_timeout=0.5, connect_timeout=0.5, shared_transport=True)


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def factory(transport: ScriptedTransport) -> TransportFactory:
    return TransportFactory(transport)
