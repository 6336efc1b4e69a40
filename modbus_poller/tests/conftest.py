"""
Shared fixtures for the poller test suite
"""

import socket

import pytest

from modbus_poller.app.config import Settings
from modbus_poller.app.models.connection_config import ConnectionConfig, TcpConfig
from modbus_poller.app.utilities.logging_presets import setup_testing_logging
from modbus_poller.tools.tcp_simulator import ModbusTcpSimulator


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Keep the JSON console handler down to warnings while tests run"""
    setup_testing_logging()


@pytest.fixture
def fast_settings():
    """Settings with the scheduler delays shrunk to test scale"""
    return Settings(
        polling_interval_ms=1000,
        request_timeout_ms=500,
        retry_count=3,
        retry_interval_ms=1,
        request_delay_ms=0,
        scan_interval_ms=5,
        error_backoff_ms=10,
        stop_timeout_ms=1000,
        enable_data_storage=False,
    )


@pytest.fixture
async def simulator():
    """Modbus TCP simulator bound to a free local port"""
    sim = ModbusTcpSimulator(host="127.0.0.1", port=0)
    await sim.start()
    yield sim
    await sim.stop()


@pytest.fixture
def tcp_connection(simulator):
    return ConnectionConfig(
        connection_id="sim",
        name="Simulator",
        tcp=TcpConfig(host="127.0.0.1", port=simulator.port, connect_timeout_ms=1000)
    )


@pytest.fixture
def unused_port():
    """A local port nothing is listening on"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
