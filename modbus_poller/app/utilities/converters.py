import struct
from typing import List, Sequence, Union

from modbus_poller.app.core.exceptions import DecodeError
from modbus_poller.app.models.packet_config import ByteOrder, DataType

ScalarValue = Union[int, float, bool, str]

# struct format of the big-endian representation for each numeric type
NUMERIC_FORMATS = {
    DataType.UINT16: '>H',
    DataType.INT16: '>h',
    DataType.UINT32: '>I',
    DataType.INT32: '>i',
    DataType.FLOAT32: '>f',
    DataType.UINT64: '>Q',
    DataType.INT64: '>q',
    DataType.FLOAT64: '>d',
}

REGISTER_WIDTHS = {
    DataType.UINT16: 1,
    DataType.INT16: 1,
    DataType.UINT32: 2,
    DataType.INT32: 2,
    DataType.FLOAT32: 2,
    DataType.UINT64: 4,
    DataType.INT64: 4,
    DataType.FLOAT64: 4,
    DataType.BOOLEAN: 1,
}


def register_count(data_type: DataType, string_length: int = 0) -> int:
    """Number of registers a value of `data_type` occupies"""
    if data_type == DataType.STRING:
        return max(string_length, 1)
    return REGISTER_WIDTHS[data_type]


# Byte-order transforms

def _swap_register_bytes(data: bytes) -> bytes:
    swapped = bytearray(len(data))
    swapped[0::2] = data[1::2]
    swapped[1::2] = data[0::2]
    return bytes(swapped)


def _reverse_registers(data: bytes) -> bytes:
    words = [data[i:i + 2] for i in range(0, len(data), 2)]
    return b"".join(reversed(words))


def reorder_bytes(data: bytes, byte_order: ByteOrder) -> bytes:
    """Map between wire order (register high byte first) and big-endian numeric order.

    Every variant is its own inverse, so the same call serves decode and encode
    for 1, 2 and 4 register values.
    """
    if byte_order == ByteOrder.BIG_ENDIAN:
        return bytes(data)
    elif byte_order == ByteOrder.LITTLE_ENDIAN:
        return bytes(reversed(data))
    elif byte_order == ByteOrder.BIG_ENDIAN_BYTE_SWAP:
        return _swap_register_bytes(data)
    elif byte_order == ByteOrder.LITTLE_ENDIAN_BYTE_SWAP:
        return _reverse_registers(data)
    raise ValueError(f"Unknown byte order: {byte_order}")


def registers_to_bytes(registers: Sequence[int]) -> bytes:
    return b"".join(struct.pack('>H', register & 0xFFFF) for register in registers)


def bytes_to_registers(data: bytes) -> List[int]:
    return [struct.unpack('>H', data[i:i + 2])[0] for i in range(0, len(data), 2)]


def _window(registers: Sequence[int], offset: int, width: int) -> Sequence[int]:
    if offset < 0 or offset + width > len(registers):
        raise DecodeError(
            f"Register window {offset}..{offset + width - 1} outside {len(registers)} available registers"
        )
    return registers[offset:offset + width]


# Decoding

def registers_to_value(registers: Sequence[int], offset: int, data_type: DataType,
                       byte_order: ByteOrder = ByteOrder.BIG_ENDIAN, string_length: int = 0) -> ScalarValue:
    """Decode a typed value starting at `offset`"""
    if data_type == DataType.BOOLEAN:
        return _window(registers, offset, 1)[0] != 0
    if data_type == DataType.STRING:
        return registers_to_string(registers, offset, register_count(data_type, string_length))

    fmt = NUMERIC_FORMATS.get(data_type)
    if fmt is None:
        raise DecodeError(f"Unsupported data type: {data_type}")

    window = _window(registers, offset, REGISTER_WIDTHS[data_type])
    ordered = reorder_bytes(registers_to_bytes(window), byte_order)
    return struct.unpack(fmt, ordered)[0]


def registers_to_string(registers: Sequence[int], offset: int, length: int) -> str:
    """Two ASCII characters per register, high byte first, trailing NULs dropped"""
    window = _window(registers, offset, length)
    return registers_to_bytes(window).decode('ascii', errors='replace').rstrip('\x00')


# Encoding

def value_to_registers(value: ScalarValue, data_type: DataType,
                       byte_order: ByteOrder = ByteOrder.BIG_ENDIAN, string_length: int = 0) -> List[int]:
    """Inverse of registers_to_value"""
    if data_type == DataType.BOOLEAN:
        return [1 if value else 0]
    if data_type == DataType.STRING:
        return string_to_registers(str(value), string_length)

    fmt = NUMERIC_FORMATS.get(data_type)
    if fmt is None:
        raise ValueError(f"Unsupported data type: {data_type}")

    try:
        natural = struct.pack(fmt, value)
    except struct.error as e:
        raise ValueError(f"Cannot encode {value!r} as {data_type.value}: {e}") from e
    return bytes_to_registers(reorder_bytes(natural, byte_order))


def string_to_registers(text: str, register_count: int = 0) -> List[int]:
    """Pack ASCII text; pads with NUL, or truncates, to `register_count` registers"""
    data = text.encode('ascii')
    count = register_count if register_count > 0 else (len(data) + 1) // 2
    data = data[:count * 2].ljust(count * 2, b'\x00')
    return bytes_to_registers(data)


# Bit access

def _check_bit_index(bit_index: int) -> None:
    if not 0 <= bit_index <= 15:
        raise ValueError(f"Bit index must be between 0 and 15, got {bit_index}")


def get_bit(register: int, bit_index: int) -> bool:
    _check_bit_index(bit_index)
    return bool((register >> bit_index) & 1)


def set_bit(register: int, bit_index: int, value: bool) -> int:
    _check_bit_index(bit_index)
    if value:
        return (register | (1 << bit_index)) & 0xFFFF
    return register & ~(1 << bit_index) & 0xFFFF


# Scaling

def to_float(value: ScalarValue) -> float:
    """Numeric coercion used only for scale/offset arithmetic"""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    raise DecodeError(f"Value {value!r} is not numeric")


def apply_scaling(raw: ScalarValue, scale: float = 1.0, offset: float = 0.0) -> float:
    return to_float(raw) * scale + offset
