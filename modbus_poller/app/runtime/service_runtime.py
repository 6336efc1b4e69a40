import asyncio
import signal
import sys
from typing import Dict, Optional

from modbus_poller.app.config import ConfigManager
from modbus_poller.app.core.modbus_client import ModbusClient
from modbus_poller.app.core.polling_manager import PollingManager
from modbus_poller.app.core.rtu_client import ModbusRtuClient
from modbus_poller.app.core.tcp_client import ModbusTcpClient
from modbus_poller.app.models.connection_config import ConnectionConfig, ConnectionType
from modbus_poller.app.processing.alarms import ThresholdAlarmHandler
from modbus_poller.app.processing.data_processor import DataProcessor
from modbus_poller.app.processing.display import ConsoleDataDisplay
from modbus_poller.app.processing.storage import JsonFileDataStorage
from modbus_poller.app.utilities.logging_presets import setup_service_logging
from modbus_poller.app.utilities.telemetry import logger


def build_client(connection: ConnectionConfig, request_timeout_ms: int) -> ModbusClient:
    if connection.type == ConnectionType.RTU:
        return ModbusRtuClient(connection, request_timeout_ms)
    return ModbusTcpClient(connection, request_timeout_ms)


class ServiceRuntime:
    """Wires configuration, clients, processor and scheduler together"""

    def __init__(self, config_path: Optional[str] = None, config_manager: Optional[ConfigManager] = None,
                 setup_logging: bool = True):
        self.config_manager = config_manager or ConfigManager().load(config_path)
        self.settings = self.config_manager.settings
        if setup_logging:
            setup_service_logging(self.settings)

        self.display = ConsoleDataDisplay()
        storage = JsonFileDataStorage(self.settings.data_storage_path) if self.settings.enable_data_storage else None
        self.data_processor = DataProcessor(storage, self.display, self.settings.enable_data_storage)

        self.alarm_handler = None
        if self.config_manager.thresholds:
            self.alarm_handler = ThresholdAlarmHandler()
            for point_id, (minimum, maximum) in self.config_manager.thresholds.items():
                self.alarm_handler.set_threshold(point_id, minimum, maximum)
            self.data_processor.register_handler(self.alarm_handler)

        self.clients: Dict[str, ModbusClient] = {
            connection.connection_id: build_client(connection, self.settings.request_timeout_ms)
            for connection in self.config_manager.enabled_connections()
        }
        self.polling_manager = PollingManager(
            self.clients,
            self.config_manager.enabled_packets(),
            settings=self.settings,
            data_processor=self.data_processor
        )
        self.polling_manager.subscribe_connection_status(self.display.display_connection_status)
        self._shutdown_event: Optional[asyncio.Event] = None

    def describe(self) -> str:
        lines = ["Connections:"]
        for connection in self.config_manager.connections.values():
            state = "enabled" if connection.enabled else "disabled"
            lines.append(f"  - {connection.connection_id}: {connection.describe()} ({state})")
        lines.append("Packets:")
        for packet in self.config_manager.packets.values():
            interval = packet.polling_interval_ms or self.settings.polling_interval_ms
            lines.append(
                f"  - {packet.packet_id} -> {packet.connection_id} slave {packet.slave_id} "
                f"fc 0x{packet.function_code.value:02X} @{packet.start_address} x{packet.count} every {interval} ms"
            )
        return "\n".join(lines)

    async def start(self):
        logger.info("Starting poller runtime", extra={
            "component": "service_runtime",
            "connections": len(self.clients),
            "packets": len(self.polling_manager.packet_states)
        })
        await self.polling_manager.start()

    async def stop(self):
        logger.info("Shutting down poller runtime", extra={
            "component": "service_runtime"
        })
        await self.polling_manager.stop()

    def request_shutdown(self):
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run_forever(self):
        """Run until SIGINT/SIGTERM or request_shutdown()"""
        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                pass

        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    runtime = ServiceRuntime(config_path=argv[0] if argv else None)
    print(runtime.describe())
    try:
        asyncio.run(runtime.run_forever())
    except KeyboardInterrupt:
        print("\nShutdown complete.")


if __name__ == "__main__":
    main()
