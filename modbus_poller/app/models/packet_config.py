from dataclasses import dataclass, field
from enum import Enum
from typing import List


class FunctionCode(Enum):
    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10

    @property
    def is_bit_read(self) -> bool:
        return self in (FunctionCode.READ_COILS, FunctionCode.READ_DISCRETE_INPUTS)

    @property
    def is_register_read(self) -> bool:
        return self in (FunctionCode.READ_HOLDING_REGISTERS, FunctionCode.READ_INPUT_REGISTERS)


READ_FUNCTION_CODES = (
    FunctionCode.READ_COILS,
    FunctionCode.READ_DISCRETE_INPUTS,
    FunctionCode.READ_HOLDING_REGISTERS,
    FunctionCode.READ_INPUT_REGISTERS,
)


class DataType(Enum):
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"
    UINT64 = "uint64"
    INT64 = "int64"
    FLOAT64 = "float64"
    BOOLEAN = "boolean"
    STRING = "string"


class ByteOrder(Enum):
    """Byte layout of a multi-register value, named by where A (most significant) lands"""
    BIG_ENDIAN = "ABCD"
    LITTLE_ENDIAN = "DCBA"
    BIG_ENDIAN_BYTE_SWAP = "BADC"
    LITTLE_ENDIAN_BYTE_SWAP = "CDAB"

    @classmethod
    def parse(cls, value) -> "ByteOrder":
        """Accept 'ABCD' style tags or long names like 'big_endian'"""
        if isinstance(value, ByteOrder):
            return value
        text = str(value).strip()
        try:
            return cls(text.upper())
        except ValueError:
            return cls[text.upper()]


@dataclass()
class DataPointConfig:
    """One value carved out of a packet's register/coil window"""
    point_id: str
    name: str = ""
    offset: int = 0  # relative to the packet start address
    data_type: DataType = DataType.UINT16
    byte_order: ByteOrder = ByteOrder.BIG_ENDIAN
    scale: float = 1.0
    offset_value: float = 0.0  # additive offset: actual = raw * scale + offset_value
    unit: str = ""
    description: str = ""
    bit_index: int = -1  # 0..15 extracts a single bit from the register at offset
    string_length: int = 0  # registers, string type only

    @property
    def has_bit_index(self) -> bool:
        return self.bit_index >= 0


@dataclass()
class PacketConfig:
    """A logical read request scheduled against one connection"""
    packet_id: str
    connection_id: str
    name: str = ""
    enabled: bool = True
    slave_id: int = 1
    function_code: FunctionCode = FunctionCode.READ_HOLDING_REGISTERS
    start_address: int = 0
    count: int = 1
    polling_interval_ms: int = 0  # 0 = global default
    data_points: List[DataPointConfig] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.packet_id
