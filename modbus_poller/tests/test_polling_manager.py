"""
Tests for the polling scheduler: retry, interval gating, decoding and events
"""

import asyncio
import time
from typing import Any, List, Optional

import pytest

from modbus_poller.app.core.exceptions import FramingError, TransportError
from modbus_poller.app.core.modbus_client import ModbusClient
from modbus_poller.app.core.polling_manager import PollingManager
from modbus_poller.app.core.tcp_client import ModbusTcpClient
from modbus_poller.app.models.connection_config import ConnectionConfig, TcpConfig
from modbus_poller.app.models.connection_state import SchedulerState
from modbus_poller.app.models.packet_config import (
    ByteOrder, DataPointConfig, DataType, FunctionCode, PacketConfig
)
from modbus_poller.app.schemas.polling import DataQuality, PollingState


class ScriptedClient(ModbusClient):
    """Transport double: replays scripted replies and records every exchange"""

    component = "scripted_client"

    def __init__(self, connection_id: str = "plc1", replies: Optional[List[Any]] = None,
                 default: Any = None, connect_ok: bool = True, delay: float = 0.0):
        super().__init__(ConnectionConfig(connection_id, tcp=TcpConfig()), request_timeout_ms=500)
        self.replies = list(replies or [])
        self.default = default if default is not None else [0]
        self.connect_ok = connect_ok
        self.delay = delay
        self.connected = False
        self.calls = []
        self.active = 0
        self.max_active = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def _open(self):
        if not self.connect_ok:
            raise TransportError("connection refused")
        self.connected = True

    async def _close(self):
        self.connected = False

    def _build_request(self, function_code, unit_id, start_address, count):
        return bytes([unit_id, function_code.value, start_address & 0xFF, count & 0xFF])

    async def _exchange(self, request, function_code, unit_id, count):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        self.calls.append((function_code, unit_id, request[2], count))

        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            if isinstance(reply, TransportError):
                self.connected = False
            raise reply
        return reply, request


def holding_packet(packet_id: str = "pkt1", connection_id: str = "plc1", count: int = 2,
                   interval_ms: int = 0, points=None, **kwargs) -> PacketConfig:
    return PacketConfig(
        packet_id=packet_id,
        connection_id=connection_id,
        name=f"{packet_id} name",
        slave_id=1,
        function_code=kwargs.pop("function_code", FunctionCode.READ_HOLDING_REGISTERS),
        start_address=0,
        count=count,
        polling_interval_ms=interval_ms,
        data_points=points or [],
        **kwargs
    )


class TestRetry:
    @pytest.mark.asyncio
    async def test_gives_up_after_retry_count_plus_one_attempts(self, fast_settings):
        client = ScriptedClient(replies=[FramingError("bad frame")] * 10)
        manager = PollingManager({"plc1": client}, [holding_packet()], settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert not result.success
        assert result.attempts == 4
        assert len(client.calls) == 4
        assert result.error_type == "FramingError"
        assert result.error_message == "bad frame"
        assert manager.packet_states["pkt1"].failure_count == 1

    @pytest.mark.asyncio
    async def test_succeeds_on_a_later_attempt(self, fast_settings):
        client = ScriptedClient(replies=[FramingError("noise"), FramingError("noise"), [7, 8]])
        manager = PollingManager({"plc1": client}, [holding_packet()], settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert result.success
        assert result.attempts == 3
        assert result.raw_registers == [7, 8]
        assert manager.packet_states["pkt1"].success_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries_means_one_attempt(self, fast_settings):
        fast_settings.retry_count = 0
        client = ScriptedClient(replies=[FramingError("bad frame")] * 3)
        manager = PollingManager({"plc1": client}, [holding_packet()], settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert result.attempts == 1
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_unreachable_connection_fails_without_reading(self, fast_settings):
        client = ScriptedClient(connect_ok=False)
        manager = PollingManager({"plc1": client}, [holding_packet()], settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert not result.success
        assert result.error_type == "TransportError"
        assert "connection refused" in result.error_message
        assert client.calls == []


class TestDecoding:
    @pytest.mark.asyncio
    async def test_data_points_are_scaled(self, fast_settings):
        points = [
            DataPointConfig("temp", name="Temperature", offset=0, data_type=DataType.INT16,
                            scale=0.1, offset_value=-5.0, unit="C"),
            DataPointConfig("flow", name="Flow", offset=1, data_type=DataType.UINT32,
                            byte_order=ByteOrder.LITTLE_ENDIAN_BYTE_SWAP),
        ]
        client = ScriptedClient(default=[250, 0x86A0, 0x0001])
        manager = PollingManager({"plc1": client}, [holding_packet(count=3, points=points)],
                                 settings=fast_settings)

        result = await manager.poll_once("pkt1")

        temp, flow = result.data_point_values
        assert temp.raw_value == 250
        assert temp.scaled_value == pytest.approx(20.0)
        assert temp.unit == "C"
        assert flow.raw_value == 100000
        assert flow.scaled_value == 100000.0
        assert all(point.quality == DataQuality.GOOD for point in result.data_point_values)

    @pytest.mark.asyncio
    async def test_bad_point_does_not_spoil_the_others(self, fast_settings):
        points = [
            DataPointConfig("ok", offset=0, data_type=DataType.UINT16),
            DataPointConfig("broken", offset=1, data_type=DataType.FLOAT64),
            DataPointConfig("also_ok", offset=1, data_type=DataType.UINT16),
        ]
        client = ScriptedClient(default=[11, 22])
        manager = PollingManager({"plc1": client}, [holding_packet(points=points)], settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert result.success
        ok, broken, also_ok = result.data_point_values
        assert ok.quality == DataQuality.GOOD and ok.scaled_value == 11.0
        assert broken.quality == DataQuality.BAD
        assert broken.scaled_value is None
        assert broken.error_message
        assert also_ok.quality == DataQuality.GOOD and also_ok.scaled_value == 22.0

    @pytest.mark.asyncio
    async def test_bit_index_points(self, fast_settings):
        points = [
            DataPointConfig("running", offset=0, data_type=DataType.BOOLEAN, bit_index=0),
            DataPointConfig("fault", offset=0, data_type=DataType.BOOLEAN, bit_index=2),
        ]
        client = ScriptedClient(default=[0b0001])
        manager = PollingManager({"plc1": client}, [holding_packet(count=1, points=points)],
                                 settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert [point.scaled_value for point in result.data_point_values] == [True, False]

    @pytest.mark.asyncio
    async def test_coil_packet(self, fast_settings):
        points = [
            DataPointConfig("pump", offset=0, data_type=DataType.BOOLEAN),
            DataPointConfig("valve", offset=1, data_type=DataType.BOOLEAN),
            DataPointConfig("beyond", offset=9, data_type=DataType.BOOLEAN),
        ]
        client = ScriptedClient(default=[True, False, True])
        packet = holding_packet(count=3, points=points, function_code=FunctionCode.READ_COILS)
        manager = PollingManager({"plc1": client}, [packet], settings=fast_settings)

        result = await manager.poll_once("pkt1")

        assert result.raw_coils == [True, False, True]
        assert result.raw_registers is None
        pump, valve, beyond = result.data_point_values
        assert pump.scaled_value is True
        assert valve.scaled_value is False
        assert beyond.quality == DataQuality.BAD

    @pytest.mark.asyncio
    async def test_string_point_is_not_scaled(self, fast_settings):
        points = [DataPointConfig("tag", offset=0, data_type=DataType.STRING, string_length=2, scale=10.0)]
        client = ScriptedClient(default=[0x4142, 0x4300])
        manager = PollingManager({"plc1": client}, [holding_packet(points=points)], settings=fast_settings)

        result = await manager.poll_once("pkt1")
        assert result.data_point_values[0].scaled_value == "ABC"


class TestScheduling:
    def test_interval_gating(self):
        state = PollingState(packet=holding_packet(), interval_ms=100)
        assert state.is_due(time.monotonic_ns())

        state.last_poll_ns = 10_000_000_000
        assert not state.is_due(10_050_000_000)
        assert not state.is_due(10_099_999_999)
        assert state.is_due(10_100_000_000)
        assert state.is_due(10_250_000_000)

    def test_packet_interval_falls_back_to_default(self, fast_settings):
        client = ScriptedClient()
        packets = [holding_packet("fast", interval_ms=250), holding_packet("default")]
        manager = PollingManager({"plc1": client}, packets, settings=fast_settings)

        assert manager.packet_states["fast"].interval_ms == 250
        assert manager.packet_states["default"].interval_ms == fast_settings.polling_interval_ms

    def test_disabled_and_orphan_packets_are_not_scheduled(self, fast_settings):
        packets = [
            holding_packet("live"),
            holding_packet("off", enabled=False),
            holding_packet("orphan", connection_id="missing"),
        ]
        manager = PollingManager({"plc1": ScriptedClient()}, packets, settings=fast_settings)

        assert list(manager.packet_states) == ["live"]
        assert "orphan" in manager.skipped_packets
        assert "off" not in manager.skipped_packets

    @pytest.mark.asyncio
    async def test_unknown_packet_poll_returns_none(self, fast_settings):
        manager = PollingManager({"plc1": ScriptedClient()}, [holding_packet()], settings=fast_settings)
        assert await manager.poll_once("nope") is None

    @pytest.mark.asyncio
    async def test_loop_respects_each_packet_interval(self, fast_settings):
        client = ScriptedClient()
        packets = [holding_packet("fast", interval_ms=100), holding_packet("slow", interval_ms=10_000)]
        manager = PollingManager({"plc1": client}, packets, settings=fast_settings)

        await manager.start()
        await asyncio.sleep(0.35)
        await manager.stop()

        states = manager.get_packet_states()
        assert 2 <= states["fast"].success_count <= 5
        assert states["slow"].success_count == 1

    @pytest.mark.asyncio
    async def test_requests_on_one_connection_never_overlap(self, fast_settings):
        client = ScriptedClient(delay=0.01)
        packets = [holding_packet(f"p{i}", interval_ms=20) for i in range(4)]
        manager = PollingManager({"plc1": client}, packets, settings=fast_settings)

        await manager.start()
        manual = [manager.poll_once(f"p{i}") for i in range(4)]
        await asyncio.gather(*manual)
        await asyncio.sleep(0.1)
        await manager.stop()

        assert len(client.calls) > 4
        assert client.max_active == 1

    @pytest.mark.asyncio
    async def test_packet_states_are_snapshots(self, fast_settings):
        manager = PollingManager({"plc1": ScriptedClient()}, [holding_packet()], settings=fast_settings)
        await manager.poll_once("pkt1")

        snapshot = manager.get_packet_states()["pkt1"]
        snapshot.success_count = 99

        assert manager.packet_states["pkt1"].success_count == 1


class TestLifecycleAndEvents:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, fast_settings):
        client = ScriptedClient()
        manager = PollingManager({"plc1": client}, [holding_packet()], settings=fast_settings)

        await manager.start()
        assert manager.is_running
        assert client.is_connected
        assert manager.get_health_status()["status"] == "healthy"

        await manager.stop()
        assert manager.state == SchedulerState.STOPPED
        assert not client.is_connected
        assert manager.get_health_status()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_stop_without_start_is_a_no_op(self, fast_settings):
        manager = PollingManager({"plc1": ScriptedClient()}, [], settings=fast_settings)
        await manager.stop()
        assert manager.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_connection_status_events(self, fast_settings):
        events = []
        manager = PollingManager(
            {"plc1": ScriptedClient("plc1"), "plc2": ScriptedClient("plc2", connect_ok=False)},
            [], settings=fast_settings
        )
        manager.subscribe_connection_status(lambda connection_id, connected: events.append((connection_id, connected)))

        await manager.start()
        assert sorted(events) == [("plc1", True), ("plc2", False)]
        assert manager.get_health_status()["status"] == "degraded"

        events.clear()
        await manager.stop()
        assert sorted(events) == [("plc1", False), ("plc2", False)]

    @pytest.mark.asyncio
    async def test_dropped_connection_is_reported(self, fast_settings):
        fast_settings.retry_count = 0
        events = []
        client = ScriptedClient(replies=[TransportError("socket closed")])
        client.connected = True
        manager = PollingManager({"plc1": client}, [holding_packet()], settings=fast_settings)
        manager.subscribe_connection_status(lambda connection_id, connected: events.append(connected))

        await manager.poll_once("pkt1")
        assert events == [False]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_delivery(self, fast_settings):
        received = []

        def broken_handler(result):
            raise RuntimeError("subscriber bug")

        async def recording_handler(result):
            received.append(result.packet_id)

        manager = PollingManager({"plc1": ScriptedClient()}, [holding_packet()], settings=fast_settings)
        manager.subscribe_data_polled(broken_handler)
        manager.subscribe_data_polled(recording_handler)

        result = await manager.poll_once("pkt1")

        assert result.success
        assert received == ["pkt1"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, fast_settings):
        received = []
        handler = received.append
        manager = PollingManager({"plc1": ScriptedClient()}, [holding_packet()], settings=fast_settings)
        manager.subscribe_data_polled(handler)
        manager.unsubscribe_data_polled(handler)

        await manager.poll_once("pkt1")
        assert received == []

    @pytest.mark.asyncio
    async def test_failing_data_processor_is_contained(self, fast_settings):
        class ExplodingProcessor:
            async def process(self, result):
                raise RuntimeError("disk on fire")

        manager = PollingManager({"plc1": ScriptedClient()}, [holding_packet()], settings=fast_settings,
                                 data_processor=ExplodingProcessor())

        result = await manager.poll_once("pkt1")
        assert result.success

    def test_connection_status_lookup(self, fast_settings):
        manager = PollingManager({"plc1": ScriptedClient()}, [], settings=fast_settings)

        status = manager.get_connection_status("plc1")
        assert status["connection_id"] == "plc1"
        assert status["connected"] is False
        assert set(manager.get_connection_status()) == {"plc1"}

        with pytest.raises(ValueError):
            manager.get_connection_status("unknown")


class TestAgainstSimulator:
    @pytest.mark.asyncio
    async def test_end_to_end_poll(self, fast_settings, simulator, tcp_connection):
        points = [
            DataPointConfig("level", offset=0, data_type=DataType.UINT16, scale=0.5),
            DataPointConfig("total", offset=1, data_type=DataType.UINT32),
        ]
        packet = PacketConfig("tank", "sim", slave_id=1, start_address=4, count=3, data_points=points)
        client = ModbusTcpClient(tcp_connection, request_timeout_ms=500)
        manager = PollingManager({"sim": client}, [packet], settings=fast_settings)

        await manager.start()
        try:
            result = await manager.poll_once("tank")
        finally:
            await manager.stop()

        assert result.success
        assert result.raw_registers == [1234, 5678, 0x00FF]
        level, total = result.data_point_values
        assert level.scaled_value == 617.0
        assert total.raw_value == (5678 << 16) | 0x00FF
