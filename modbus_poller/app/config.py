"""
Configuration management for the Modbus poller
"""

import yaml
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type
from pathlib import Path
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings

from modbus_poller.app.core.exceptions import ConfigurationError
from modbus_poller.app.models.connection_config import (
    ConnectionConfig, ConnectionType, Parity, RtuConfig, StopBits, TcpConfig
)
from modbus_poller.app.models.packet_config import (
    ByteOrder, DataPointConfig, DataType, FunctionCode, PacketConfig, READ_FUNCTION_CODES
)
from modbus_poller.app.utilities.converters import register_count
from modbus_poller.app.core.frame_codec import max_item_count
from modbus_poller.app.utilities.logging_config import LogFormat
from modbus_poller.app.utilities.telemetry import logger


class Settings(BaseSettings):
    """Application settings"""

    # Polling
    polling_interval_ms: int = 1000
    request_timeout_ms: int = 3000
    retry_count: int = 3
    retry_interval_ms: int = 500
    request_delay_ms: int = 50
    scan_interval_ms: int = 10
    error_backoff_ms: int = 1000
    stop_timeout_ms: int = 5000

    # Logging
    log_level: str = "INFO"
    log_file_path: str = "logs/modbus.log"
    log_format: str = "json_compact"
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5
    log_to_console: bool = True

    # Result storage
    enable_data_storage: bool = True
    data_storage_path: str = "data/"

    # Connection and packet definitions
    config_path: str = "config/modbus.yaml"

    @field_validator(
        "polling_interval_ms", "request_timeout_ms", "retry_count", "retry_interval_ms",
        "request_delay_ms", "scan_interval_ms", "error_backoff_ms", "stop_timeout_ms",
        "log_max_bytes", "log_backup_count"
    )
    @classmethod
    def non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("log_format")
    @classmethod
    def known_log_format(cls, value: str) -> str:
        if value.lower() not in {fmt.value for fmt in LogFormat}:
            raise ValueError(f"unknown log format {value!r}")
        return value

    class Config:
        env_file = ".env"


settings = Settings()


def _parse_enum(enum_cls: Type[Enum], value: Any, field_name: str, owner: str) -> Enum:
    """Accept an enum member, its value, or its name in any case"""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value.strip().lower() in (str(member.value).lower(), member.name.lower()):
                return member
    else:
        try:
            return enum_cls(value)
        except ValueError:
            pass
    allowed = [str(member.value) for member in enum_cls]
    raise ConfigurationError(f"{owner}: invalid {field_name} '{value}', expected one of {allowed}")


class ConfigManager:
    """Loads connection and packet definitions from YAML"""

    def __init__(self, base_settings: Optional[Settings] = None):
        self.settings: Settings = base_settings or settings
        self.connections: Dict[str, ConnectionConfig] = {}
        self.packets: Dict[str, PacketConfig] = {}
        self.thresholds: Dict[str, Tuple[float, float]] = {}
        self.config_errors: List[ConfigurationError] = []

    def load(self, config_path: Optional[str] = None) -> "ConfigManager":
        """Load a YAML file, or every *.yaml file of a directory"""
        path = Path(config_path or self.settings.config_path)
        if path.is_dir():
            files = sorted(path.glob("*.yaml"))
        elif path.exists():
            files = [path]
        else:
            raise ConfigurationError(f"Configuration path not found: {path}")

        for config_file in files:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            self.load_dict(data, source=str(config_file))

        logger.info("Configuration loaded", extra={
            "component": "config",
            "config_path": str(path),
            "connections": len(self.connections),
            "packets": len(self.packets),
            "errors": len(self.config_errors)
        })
        return self

    def load_dict(self, data: Dict[str, Any], source: str = "<dict>") -> "ConfigManager":
        """Merge one parsed document; bad entries are logged and skipped"""
        if not isinstance(data, dict):
            raise ConfigurationError(f"{source}: top level must be a mapping")

        overrides = data.get('settings') or {}
        if overrides:
            try:
                self.settings = Settings(**{**self.settings.model_dump(), **overrides})
            except ValidationError as e:
                raise ConfigurationError(f"{source}: invalid settings: {e}") from e

        for connection_id, connection_data in (data.get('connections') or {}).items():
            self._load_entry(self.parse_connection, self.connections, str(connection_id), connection_data, source)

        for packet_id, packet_data in (data.get('packets') or {}).items():
            self._load_entry(self.parse_packet, self.packets, str(packet_id), packet_data, source)

        for point_id, limits in (data.get('alarms') or {}).items():
            self._load_entry(self.parse_threshold, self.thresholds, str(point_id), limits, source)

        return self

    def _load_entry(self, parser, target: Dict[str, Any], entry_id: str, entry_data: Any, source: str):
        try:
            try:
                target[entry_id] = parser(entry_id, entry_data or {})
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"'{entry_id}': {e}") from e
        except ConfigurationError as e:
            self.config_errors.append(e)
            logger.error("Skipping invalid configuration entry", extra={
                "component": "config",
                "source": source,
                "entry_id": entry_id,
                "error": str(e)
            })

    def parse_connection(self, connection_id: str, data: Dict[str, Any]) -> ConnectionConfig:
        owner = f"Connection '{connection_id}'"
        if not isinstance(data, dict):
            raise ConfigurationError(f"{owner}: definition must be a mapping", connection_id=connection_id)

        connection_type = _parse_enum(ConnectionType, data.get('type', 'tcp'), 'type', owner)
        tcp_data = data.get('tcp')
        rtu_data = data.get('rtu')

        if connection_type == ConnectionType.TCP:
            if rtu_data is not None:
                raise ConfigurationError(f"{owner}: tcp connection must not carry an rtu block",
                                         connection_id=connection_id)
            if not tcp_data:
                raise ConfigurationError(f"{owner}: missing tcp block", connection_id=connection_id)
            tcp = self._build(TcpConfig, tcp_data, owner)
            if not 0 < tcp.port <= 0xFFFF:
                raise ConfigurationError(f"{owner}: invalid port {tcp.port}", connection_id=connection_id)
            rtu = None
        else:
            if tcp_data is not None:
                raise ConfigurationError(f"{owner}: rtu connection must not carry a tcp block",
                                         connection_id=connection_id)
            if not rtu_data:
                raise ConfigurationError(f"{owner}: missing rtu block", connection_id=connection_id)
            rtu_values = dict(rtu_data)
            if 'parity' in rtu_values:
                rtu_values['parity'] = _parse_enum(Parity, rtu_values['parity'], 'parity', owner)
            if 'stop_bits' in rtu_values:
                rtu_values['stop_bits'] = _parse_enum(StopBits, rtu_values['stop_bits'], 'stop_bits', owner)
            rtu = self._build(RtuConfig, rtu_values, owner)
            if rtu.data_bits not in (5, 6, 7, 8):
                raise ConfigurationError(f"{owner}: invalid data_bits {rtu.data_bits}", connection_id=connection_id)
            tcp = None

        return ConnectionConfig(
            connection_id=connection_id,
            name=data.get('name', ''),
            type=connection_type,
            enabled=bool(data.get('enabled', True)),
            tcp=tcp,
            rtu=rtu
        )

    def parse_packet(self, packet_id: str, data: Dict[str, Any]) -> PacketConfig:
        owner = f"Packet '{packet_id}'"
        if not isinstance(data, dict):
            raise ConfigurationError(f"{owner}: definition must be a mapping", packet_id=packet_id)
        if not data.get('connection_id'):
            raise ConfigurationError(f"{owner}: missing connection_id", packet_id=packet_id)

        function_code = _parse_enum(FunctionCode, data.get('function_code', 3), 'function_code', owner)
        points = [
            self.parse_data_point(packet_id, point_data, index)
            for index, point_data in enumerate(data.get('data_points') or [])
        ]

        packet = PacketConfig(
            packet_id=packet_id,
            connection_id=str(data['connection_id']),
            name=data.get('name', ''),
            enabled=bool(data.get('enabled', True)),
            slave_id=int(data.get('slave_id', 1)),
            function_code=function_code,
            start_address=int(data.get('start_address', 0)),
            count=int(data.get('count', data.get('register_count', 1))),
            polling_interval_ms=int(data.get('polling_interval_ms', 0)),
            data_points=points
        )
        self.validate_packet(packet)
        return packet

    def parse_data_point(self, packet_id: str, data: Dict[str, Any], index: int = 0) -> DataPointConfig:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Packet '{packet_id}': data point #{index} must be a mapping",
                                     packet_id=packet_id)
        point_id = str(data.get('point_id') or f"{packet_id}_{index}")
        owner = f"Data point '{point_id}'"

        try:
            byte_order = ByteOrder.parse(data.get('byte_order', 'ABCD'))
        except (KeyError, ValueError):
            raise ConfigurationError(f"{owner}: invalid byte_order '{data.get('byte_order')}'",
                                     packet_id=packet_id, point_id=point_id)

        return DataPointConfig(
            point_id=point_id,
            name=data.get('name', ''),
            offset=int(data.get('offset', 0)),
            data_type=_parse_enum(DataType, data.get('data_type', 'uint16'), 'data_type', owner),
            byte_order=byte_order,
            scale=float(data.get('scale', 1.0)),
            offset_value=float(data.get('offset_value', 0.0)),
            unit=data.get('unit', ''),
            description=data.get('description', ''),
            bit_index=int(data.get('bit_index', -1)),
            string_length=int(data.get('string_length', 0))
        )

    def parse_threshold(self, point_id: str, data: Dict[str, Any]) -> Tuple[float, float]:
        if not isinstance(data, dict) or 'min' not in data or 'max' not in data:
            raise ConfigurationError(f"Alarm '{point_id}': needs min and max", point_id=point_id)
        minimum, maximum = float(data['min']), float(data['max'])
        if minimum > maximum:
            raise ConfigurationError(f"Alarm '{point_id}': min {minimum} above max {maximum}", point_id=point_id)
        return minimum, maximum

    def validate_packet(self, packet: PacketConfig) -> None:
        owner = f"Packet '{packet.packet_id}'"

        if packet.function_code not in READ_FUNCTION_CODES:
            raise ConfigurationError(f"{owner}: function code 0x{packet.function_code.value:02X} is not a read",
                                     packet_id=packet.packet_id)
        if not 1 <= packet.slave_id <= 247:
            raise ConfigurationError(f"{owner}: slave_id {packet.slave_id} outside 1..247",
                                     packet_id=packet.packet_id)

        ceiling = max_item_count(packet.function_code)
        if not 1 <= packet.count <= ceiling:
            raise ConfigurationError(f"{owner}: count {packet.count} outside 1..{ceiling}",
                                     packet_id=packet.packet_id)
        if packet.start_address < 0 or packet.start_address + packet.count > 0x10000:
            raise ConfigurationError(f"{owner}: address range exceeds 0..65535", packet_id=packet.packet_id)
        if packet.polling_interval_ms < 0:
            raise ConfigurationError(f"{owner}: negative polling_interval_ms", packet_id=packet.packet_id)

        for point in packet.data_points:
            if point.bit_index != -1 and not 0 <= point.bit_index <= 15:
                raise ConfigurationError(f"{owner}: bit_index {point.bit_index} of '{point.point_id}' outside 0..15",
                                         packet_id=packet.packet_id, point_id=point.point_id)

            if packet.function_code.is_bit_read or point.has_bit_index:
                width = 1
            else:
                width = register_count(point.data_type, point.string_length)

            if point.offset < 0 or point.offset + width > packet.count:
                raise ConfigurationError(
                    f"{owner}: data point '{point.point_id}' needs items {point.offset}..{point.offset + width - 1} "
                    f"but the packet reads {packet.count}",
                    packet_id=packet.packet_id, point_id=point.point_id
                )

    def _build(self, cls, values: Dict[str, Any], owner: str):
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"{owner}: {e}")

    def get_connection(self, connection_id: str) -> ConnectionConfig:
        if connection_id not in self.connections:
            raise ConfigurationError(f"Connection {connection_id} not found", connection_id=connection_id)
        return self.connections[connection_id]

    def get_packet(self, packet_id: str) -> PacketConfig:
        if packet_id not in self.packets:
            raise ConfigurationError(f"Packet {packet_id} not found", packet_id=packet_id)
        return self.packets[packet_id]

    def enabled_connections(self) -> List[ConnectionConfig]:
        return [c for c in self.connections.values() if c.enabled]

    def enabled_packets(self) -> List[PacketConfig]:
        return [p for p in self.packets.values() if p.enabled]


# Global config manager instance
config_manager = ConfigManager()
