"""
CRC-16/MODBUS for RTU frames.

Reflected polynomial 0xA001, seed 0xFFFF. The checksum goes on the wire
low byte first.
"""

from typing import List

CRC16_POLYNOMIAL = 0xA001
CRC16_SEED = 0xFFFF


def _build_table() -> List[int]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ CRC16_POLYNOMIAL
            else:
                crc >>= 1
        table.append(crc)
    return table


CRC16_TABLE = _build_table()


def crc16(data: bytes) -> int:
    """Table-driven CRC over `data`"""
    crc = CRC16_SEED
    for byte in data:
        crc = (crc >> 8) ^ CRC16_TABLE[(crc ^ byte) & 0xFF]
    return crc


def append_crc(data: bytes) -> bytes:
    """Return `data` sealed with its CRC, low byte first"""
    crc = crc16(data)
    return bytes(data) + bytes((crc & 0xFF, crc >> 8))


def verify_crc(frame: bytes) -> bool:
    """Check the trailing two CRC bytes of a frame; frames under 3 bytes never verify"""
    if frame is None or len(frame) < 3:
        return False
    expected = crc16(frame[:-2])
    received = frame[-2] | (frame[-1] << 8)
    return expected == received
