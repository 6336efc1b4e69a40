"""
Request builders and response parsers for Modbus TCP and Modbus RTU.

Both framings carry the same PDU for the read functions 0x01-0x04:

    [function][start hi][start lo][count hi][count lo]

TCP prefixes it with the 7-byte MBAP header (transaction id, protocol id,
length, unit id). RTU prefixes the unit id and appends a CRC16.

Parsers return a list of register values (0x03/0x04) or a list of bools
(0x01/0x02) and raise:

    FramingError             short frame, bad CRC, header or byte-count mismatch
    ModbusProtocolError      the device answered with an exception response
    UnsupportedFunctionError the caller asked for something other than 0x01-0x04
"""

import struct
from typing import Iterable, List, Optional, Tuple, Union

from modbus_poller.app.core.crc import append_crc, verify_crc
from modbus_poller.app.core.exceptions import (
    FramingError,
    ModbusProtocolError,
    UnsupportedFunctionError,
)
from modbus_poller.app.models.packet_config import FunctionCode, READ_FUNCTION_CODES
from modbus_poller.app.utilities.telemetry import logger

MBAP_HEADER_LENGTH = 7
MODBUS_PROTOCOL_ID = 0
RTU_EXCEPTION_FRAME_LENGTH = 5
RTU_MIN_HEADER_LENGTH = 3
EXCEPTION_FLAG = 0x80

MAX_BIT_READ_COUNT = 2000
MAX_REGISTER_READ_COUNT = 125

EXCEPTION_DESCRIPTIONS = {
    0x01: "illegal function",
    0x02: "illegal data address",
    0x03: "illegal data value",
    0x04: "slave device failure",
    0x05: "acknowledge",
    0x06: "slave device busy",
    0x08: "memory parity error",
    0x0A: "gateway path unavailable",
    0x0B: "gateway target device failed to respond",
}

ReadData = Union[List[int], List[bool]]


def exception_description(code: int) -> str:
    return EXCEPTION_DESCRIPTIONS.get(code, f"unknown exception code 0x{code:02X}")


def to_hex_string(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return " ".join(f"{byte:02X}" for byte in data)


def _as_function_code(function_code: Union[FunctionCode, int]) -> FunctionCode:
    try:
        fc = FunctionCode(function_code)
    except ValueError:
        raise UnsupportedFunctionError(f"Unsupported function code: 0x{int(function_code):02X}")
    if fc not in READ_FUNCTION_CODES:
        raise UnsupportedFunctionError(f"Unsupported function code for reading: 0x{fc.value:02X}")
    return fc


def max_item_count(function_code: Union[FunctionCode, int]) -> int:
    fc = _as_function_code(function_code)
    return MAX_BIT_READ_COUNT if fc.is_bit_read else MAX_REGISTER_READ_COUNT


def expected_payload_length(function_code: Union[FunctionCode, int], count: int) -> int:
    """Byte-count field a well-formed response carries for `count` items"""
    fc = _as_function_code(function_code)
    if fc.is_bit_read:
        return (count + 7) // 8
    return count * 2


def expected_rtu_response_length(function_code: Union[FunctionCode, int], count: int) -> int:
    # unit + function + byte count + payload + crc(2)
    return RTU_EXCEPTION_FRAME_LENGTH + expected_payload_length(function_code, count)


def build_read_pdu(function_code: Union[FunctionCode, int], start_address: int, count: int) -> bytes:
    fc = _as_function_code(function_code)
    if not 0 <= start_address <= 0xFFFF:
        raise ValueError(f"Start address out of range: {start_address}")
    if not 1 <= count <= max_item_count(fc):
        raise ValueError(f"Item count {count} outside 1..{max_item_count(fc)} for function 0x{fc.value:02X}")
    return struct.pack('>BHH', fc.value, start_address, count)


def build_tcp_request(transaction_id: int, unit_id: int, function_code: Union[FunctionCode, int],
                      start_address: int, count: int) -> bytes:
    pdu = build_read_pdu(function_code, start_address, count)
    header = struct.pack('>HHHB', transaction_id & 0xFFFF, MODBUS_PROTOCOL_ID, len(pdu) + 1, unit_id)
    return header + pdu


def build_rtu_request(unit_id: int, function_code: Union[FunctionCode, int],
                      start_address: int, count: int) -> bytes:
    return append_crc(bytes([unit_id]) + build_read_pdu(function_code, start_address, count))


def parse_mbap_header(header: bytes) -> Tuple[int, int, int, int]:
    """Return (transaction_id, protocol_id, length, unit_id)"""
    if len(header) < MBAP_HEADER_LENGTH:
        raise FramingError(f"Incomplete MBAP header: {len(header)} bytes")
    return struct.unpack('>HHHB', header[:MBAP_HEADER_LENGTH])


def parse_tcp_response(frame: bytes, function_code: Union[FunctionCode, int], count: int,
                       transaction_id: Optional[int] = None, unit_id: Optional[int] = None) -> ReadData:
    fc = _as_function_code(function_code)
    if len(frame) < MBAP_HEADER_LENGTH + 2:
        raise FramingError(f"Response too short: {len(frame)} bytes")

    rx_transaction_id, protocol_id, length, rx_unit_id = parse_mbap_header(frame)
    if protocol_id != MODBUS_PROTOCOL_ID:
        raise FramingError(f"Invalid protocol id: 0x{protocol_id:04X}")
    if transaction_id is not None and rx_transaction_id != (transaction_id & 0xFFFF):
        raise FramingError(f"Transaction id mismatch: sent {transaction_id}, received {rx_transaction_id}")
    if unit_id is not None and rx_unit_id != unit_id:
        raise FramingError(f"Unit id mismatch: sent {unit_id}, received {rx_unit_id}")

    pdu = frame[MBAP_HEADER_LENGTH:]
    if len(pdu) < length - 1:
        raise FramingError(f"Incomplete PDU: header announces {length - 1} bytes, received {len(pdu)}")

    return _parse_read_pdu(pdu[:length - 1], fc, count)


def parse_rtu_response(frame: bytes, unit_id: int, function_code: Union[FunctionCode, int],
                       count: int) -> ReadData:
    fc = _as_function_code(function_code)
    if len(frame) < RTU_EXCEPTION_FRAME_LENGTH:
        raise FramingError(f"Response too short: {len(frame)} bytes")

    if frame[1] & EXCEPTION_FLAG:
        frame = frame[:RTU_EXCEPTION_FRAME_LENGTH]
    else:
        expected = expected_rtu_response_length(fc, count)
        if len(frame) < expected:
            raise FramingError(f"Incomplete response: expected {expected} bytes, received {len(frame)}")
        frame = frame[:expected]

    if not verify_crc(frame):
        raise FramingError("CRC check failed")

    if frame[0] != unit_id:
        raise FramingError(f"Unit id mismatch: sent {unit_id}, received {frame[0]}")

    return _parse_read_pdu(frame[1:-2], fc, count)


def _parse_read_pdu(pdu: bytes, fc: FunctionCode, count: int) -> ReadData:
    if len(pdu) < 2:
        raise FramingError(f"PDU too short: {len(pdu)} bytes")

    rx_function = pdu[0]
    if rx_function & EXCEPTION_FLAG:
        code = pdu[1]
        description = exception_description(code)
        logger.debug("Exception response received", extra={
            "component": "frame_codec",
            "function_code": rx_function & 0x7F,
            "exception_code": code,
            "description": description
        })
        raise ModbusProtocolError(
            f"Modbus exception 0x{code:02X}: {description}",
            exception_code=code,
            function_code=rx_function & 0x7F
        )

    if rx_function != fc.value:
        raise FramingError(f"Function code mismatch: sent 0x{fc.value:02X}, received 0x{rx_function:02X}")

    byte_count = pdu[1]
    expected = expected_payload_length(fc, count)
    if byte_count != expected:
        raise FramingError(f"Byte count mismatch: expected {expected}, received {byte_count}")

    payload = pdu[2:2 + byte_count]
    if len(payload) < byte_count:
        raise FramingError(f"Incomplete payload: expected {byte_count} bytes, received {len(payload)}")

    if fc.is_bit_read:
        return unpack_bits(payload, count)
    return unpack_registers(payload)


def unpack_registers(payload: bytes) -> List[int]:
    return list(struct.unpack(f'>{len(payload) // 2}H', payload[:len(payload) // 2 * 2]))


def pack_registers(registers: Iterable[int]) -> bytes:
    values = [value & 0xFFFF for value in registers]
    return struct.pack(f'>{len(values)}H', *values)


def unpack_bits(payload: bytes, count: int) -> List[bool]:
    """LSB-first within each byte, lowest address first"""
    return [bool(payload[i // 8] & (1 << (i % 8))) for i in range(count)]


def pack_bits(bits: Iterable[bool]) -> bytes:
    bits = list(bits)
    packed = bytearray((len(bits) + 7) // 8)
    for i, bit in enumerate(bits):
        if bit:
            packed[i // 8] |= 1 << (i % 8)
    return bytes(packed)
