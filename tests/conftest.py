"""Global pytest configuration and fixtures.

Marks every test under tests/integration so the suite can be split with
``-m integration`` / ``-m "not integration"``.
"""

from __future__ import annotations

from pathlib import Path

import pytest

_INTEGRATION_DIR = Path(__file__).parent / "integration"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: test talks to a local Modbus TCP server"
    )


def pytest_collection_modifyitems(items):
    """Tag tests collected from the integration directory."""
    for item in items:
        if _INTEGRATION_DIR in Path(item.fspath).parents:
            item.add_marker(pytest.mark.integration)
