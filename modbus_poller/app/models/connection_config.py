from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionType(Enum):
    TCP = "tcp"
    RTU = "rtu"


class Parity(Enum):
    NONE = "none"
    ODD = "odd"
    EVEN = "even"
    MARK = "mark"
    SPACE = "space"


class StopBits(Enum):
    ONE = "one"
    ONE_POINT_FIVE = "one_point_five"
    TWO = "two"


@dataclass()
class TcpConfig:
    """Modbus TCP endpoint"""
    host: str = "127.0.0.1"
    port: int = 502
    connect_timeout_ms: int = 5000
    keep_alive: bool = True


@dataclass()
class RtuConfig:
    """Serial line settings for Modbus RTU"""
    port_name: str = "/dev/ttyUSB0"
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: StopBits = StopBits.ONE
    parity: Parity = Parity.NONE
    read_timeout_ms: int = 1000
    write_timeout_ms: int = 1000
    frame_interval_ms: int = 50  # minimum gap between request and reading the reply


@dataclass()
class ConnectionConfig:
    """One physical connection; exactly one of `tcp` / `rtu` is set"""
    connection_id: str
    name: str = ""
    type: ConnectionType = ConnectionType.TCP
    enabled: bool = True
    tcp: Optional[TcpConfig] = None
    rtu: Optional[RtuConfig] = None

    @property
    def display_name(self) -> str:
        return self.name or self.connection_id

    def describe(self) -> str:
        """Short endpoint text for logs and the console"""
        if self.type == ConnectionType.TCP and self.tcp:
            return f"tcp://{self.tcp.host}:{self.tcp.port}"
        if self.type == ConnectionType.RTU and self.rtu:
            return f"rtu:{self.rtu.port_name}@{self.rtu.baud_rate}"
        return self.type.value
