from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from modbus_poller.app.models.packet_config import DataType, FunctionCode, PacketConfig


# Enums
class DataQuality(Enum):
    GOOD = "good"
    BAD = "bad"
    UNKNOWN = "unknown"


ScalarValue = Union[int, float, bool, str]


def _hex(data: Optional[bytes]) -> Optional[str]:
    return data.hex() if data is not None else None


def _unhex(text: Optional[str]) -> Optional[bytes]:
    return bytes.fromhex(text) if text is not None else None


@dataclass
class ModbusResponse:
    """Outcome of one request/response exchange on a transport client"""
    success: bool
    data: Optional[List[Any]] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    exception_code: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)
    response_time_ms: float = 0.0
    raw_request: Optional[bytes] = None
    raw_response: Optional[bytes] = None

    @classmethod
    def ok(cls, data: List[Any], response_time_ms: float = 0.0,
           raw_request: Optional[bytes] = None, raw_response: Optional[bytes] = None) -> "ModbusResponse":
        return cls(success=True, data=data, response_time_ms=response_time_ms,
                   raw_request=raw_request, raw_response=raw_response)

    @classmethod
    def failure(cls, error_message: str, error_type: Optional[str] = None,
                exception_code: Optional[int] = None, response_time_ms: float = 0.0,
                raw_request: Optional[bytes] = None, raw_response: Optional[bytes] = None) -> "ModbusResponse":
        return cls(success=False, error_message=error_message, error_type=error_type,
                   exception_code=exception_code, response_time_ms=response_time_ms,
                   raw_request=raw_request, raw_response=raw_response)


@dataclass
class DataPointValue:
    point_id: str
    name: str
    data_type: DataType
    raw_value: Optional[ScalarValue] = None
    scaled_value: Optional[ScalarValue] = None
    unit: str = ""
    quality: DataQuality = DataQuality.GOOD
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "point_id": self.point_id,
            "name": self.name,
            "data_type": self.data_type.value,
            "raw_value": self.raw_value,
            "scaled_value": self.scaled_value,
            "unit": self.unit,
            "quality": self.quality.value,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataPointValue":
        return cls(
            point_id=data["point_id"],
            name=data.get("name", ""),
            data_type=DataType(data["data_type"]),
            raw_value=data.get("raw_value"),
            scaled_value=data.get("scaled_value"),
            unit=data.get("unit", ""),
            quality=DataQuality(data.get("quality", DataQuality.UNKNOWN.value)),
            error_message=data.get("error_message"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class PollResult:
    """Everything one poll of one packet produced"""
    packet_id: str
    packet_name: str
    connection_id: str
    success: bool
    slave_id: int
    function_code: FunctionCode
    start_address: int
    count: int
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    exception_code: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)
    response_time_ms: float = 0.0
    attempts: int = 0
    raw_registers: Optional[List[int]] = None
    raw_coils: Optional[List[bool]] = None
    data_point_values: List[DataPointValue] = field(default_factory=list)
    raw_request: Optional[bytes] = None
    raw_response: Optional[bytes] = None

    @classmethod
    def for_packet(cls, packet: PacketConfig, success: bool, **kwargs) -> "PollResult":
        return cls(
            packet_id=packet.packet_id,
            packet_name=packet.display_name,
            connection_id=packet.connection_id,
            success=success,
            slave_id=packet.slave_id,
            function_code=packet.function_code,
            start_address=packet.start_address,
            count=packet.count,
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packet_id": self.packet_id,
            "packet_name": self.packet_name,
            "connection_id": self.connection_id,
            "success": self.success,
            "slave_id": self.slave_id,
            "function_code": self.function_code.value,
            "start_address": self.start_address,
            "count": self.count,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "exception_code": self.exception_code,
            "timestamp": self.timestamp.isoformat(),
            "response_time_ms": self.response_time_ms,
            "attempts": self.attempts,
            "raw_registers": self.raw_registers,
            "raw_coils": self.raw_coils,
            "data_point_values": [value.to_dict() for value in self.data_point_values],
            "raw_request": _hex(self.raw_request),
            "raw_response": _hex(self.raw_response),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PollResult":
        return cls(
            packet_id=data["packet_id"],
            packet_name=data.get("packet_name", data["packet_id"]),
            connection_id=data["connection_id"],
            success=data["success"],
            slave_id=data["slave_id"],
            function_code=FunctionCode(data["function_code"]),
            start_address=data["start_address"],
            count=data["count"],
            error_message=data.get("error_message"),
            error_type=data.get("error_type"),
            exception_code=data.get("exception_code"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            response_time_ms=data.get("response_time_ms", 0.0),
            attempts=data.get("attempts", 0),
            raw_registers=data.get("raw_registers"),
            raw_coils=data.get("raw_coils"),
            data_point_values=[DataPointValue.from_dict(v) for v in data.get("data_point_values", [])],
            raw_request=_unhex(data.get("raw_request")),
            raw_response=_unhex(data.get("raw_response")),
        )


@dataclass
class PollingState:
    """Scheduler bookkeeping for one packet"""
    packet: PacketConfig
    interval_ms: int
    last_poll_time: Optional[datetime] = None
    last_poll_ns: Optional[int] = None
    last_result: Optional[PollResult] = None
    success_count: int = 0
    failure_count: int = 0

    def is_due(self, now_ns: int) -> bool:
        """`now_ns` is a `time.monotonic_ns()` reading"""
        if self.last_poll_ns is None:
            return True
        return now_ns - self.last_poll_ns >= self.interval_ms * 1_000_000

    def snapshot(self) -> "PollingState":
        return replace(self)
