"""
Tests for typed register decoding, encoding and the byte-order variants
"""

import math

import pytest

from modbus_poller.app.core.exceptions import DecodeError
from modbus_poller.app.models.packet_config import ByteOrder, DataType
from modbus_poller.app.utilities.converters import (
    apply_scaling,
    get_bit,
    register_count,
    registers_to_string,
    registers_to_value,
    reorder_bytes,
    set_bit,
    string_to_registers,
    to_float,
    value_to_registers,
)


class TestKnownVectors:
    """Register layouts as real devices put them on the wire"""

    def test_uint16_and_int16(self):
        assert registers_to_value([0xFFFF], 0, DataType.UINT16) == 65535
        assert registers_to_value([0xFFFF], 0, DataType.INT16) == -1
        assert registers_to_value([0x8000], 0, DataType.INT16) == -32768

    def test_uint32_big_endian(self):
        assert registers_to_value([0x0001, 0x86A0], 0, DataType.UINT32) == 100000

    def test_uint32_word_swapped(self):
        assert registers_to_value([0x86A0, 0x0001], 0, DataType.UINT32, ByteOrder.LITTLE_ENDIAN_BYTE_SWAP) == 100000

    def test_uint32_byte_swapped(self):
        assert registers_to_value([0x0100, 0xA086], 0, DataType.UINT32, ByteOrder.BIG_ENDIAN_BYTE_SWAP) == 100000

    def test_int32_negative(self):
        assert registers_to_value([0xFFFF, 0xFFFE], 0, DataType.INT32) == -2

    @pytest.mark.parametrize("byte_order,registers", [
        (ByteOrder.BIG_ENDIAN, [0x42F6, 0xE979]),
        (ByteOrder.LITTLE_ENDIAN, [0x79E9, 0xF642]),
        (ByteOrder.BIG_ENDIAN_BYTE_SWAP, [0xF642, 0x79E9]),
        (ByteOrder.LITTLE_ENDIAN_BYTE_SWAP, [0xE979, 0x42F6]),
    ])
    def test_float32_in_every_byte_order(self, byte_order, registers):
        value = registers_to_value(registers, 0, DataType.FLOAT32, byte_order)
        assert value == pytest.approx(123.456, rel=1e-6)
        assert value_to_registers(123.456, DataType.FLOAT32, byte_order) == registers

    def test_float64(self):
        registers = [0x4009, 0x21FB, 0x5444, 0x2D18]
        assert registers_to_value(registers, 0, DataType.FLOAT64) == pytest.approx(math.pi)

    def test_value_at_offset(self):
        registers = [0x0000, 0x0000, 0x0001, 0x86A0]
        assert registers_to_value(registers, 2, DataType.UINT32) == 100000

    def test_boolean_is_nonzero_register(self):
        assert registers_to_value([0x0000, 0x0100], 0, DataType.BOOLEAN) is False
        assert registers_to_value([0x0000, 0x0100], 1, DataType.BOOLEAN) is True


class TestRoundTrips:
    @pytest.mark.parametrize("byte_order", list(ByteOrder))
    @pytest.mark.parametrize("data_type,value", [
        (DataType.UINT16, 0),
        (DataType.UINT16, 0xBEEF),
        (DataType.INT16, -1),
        (DataType.INT16, -32768),
        (DataType.INT16, 12345),
        (DataType.UINT32, 0xDEADBEEF),
        (DataType.INT32, -2),
        (DataType.INT32, -2147483648),
        (DataType.INT32, 100000),
        (DataType.UINT64, 0x0123456789ABCDEF),
        (DataType.INT64, -1234567890123),
        (DataType.FLOAT32, -2.5),
        (DataType.FLOAT32, 1234.125),
        (DataType.FLOAT64, -0.000125),
        (DataType.FLOAT64, math.pi),
    ])
    def test_numeric_types(self, data_type, value, byte_order):
        registers = value_to_registers(value, data_type, byte_order)

        assert len(registers) == register_count(data_type)
        assert all(0 <= register <= 0xFFFF for register in registers)
        assert registers_to_value(registers, 0, data_type, byte_order) == value

    @pytest.mark.parametrize("byte_order", list(ByteOrder))
    def test_reorder_is_its_own_inverse(self, byte_order):
        data = bytes(range(1, 9))
        assert reorder_bytes(reorder_bytes(data, byte_order), byte_order) == data

    def test_out_of_range_value_is_rejected(self):
        with pytest.raises(ValueError):
            value_to_registers(70000, DataType.UINT16)


class TestWindowErrors:
    def test_window_past_end(self):
        with pytest.raises(DecodeError):
            registers_to_value([0x0001], 0, DataType.UINT32)

    def test_negative_offset(self):
        with pytest.raises(DecodeError):
            registers_to_value([0x0001, 0x0002], -1, DataType.UINT16)

    def test_string_past_end(self):
        with pytest.raises(DecodeError):
            registers_to_value([0x4142], 0, DataType.STRING, string_length=4)


class TestStrings:
    def test_decode_strips_trailing_nuls(self):
        assert registers_to_string([0x4845, 0x4C4C, 0x4F00], 0, 3) == "HELLO"

    def test_encode_pads_with_nul(self):
        assert string_to_registers("HELLO", 4) == [0x4845, 0x4C4C, 0x4F00, 0x0000]

    def test_encode_truncates(self):
        assert string_to_registers("HELLO WORLD", 2) == [0x4845, 0x4C4C]

    def test_encode_without_length_uses_minimum(self):
        assert string_to_registers("ABC") == [0x4142, 0x4300]

    def test_string_data_type(self):
        registers = [0x0000] + string_to_registers("PUMP-01", 5)
        assert registers_to_value(registers, 1, DataType.STRING, string_length=5) == "PUMP-01"

    def test_register_count(self):
        assert register_count(DataType.STRING, 8) == 8
        assert register_count(DataType.STRING) == 1
        assert register_count(DataType.FLOAT32) == 2
        assert register_count(DataType.UINT64) == 4
        assert register_count(DataType.BOOLEAN) == 1


class TestBits:
    @pytest.mark.parametrize("bit_index,expected", [
        (0, True), (1, True), (2, False), (3, False),
        (6, True), (7, True), (8, True), (9, False),
        (14, False), (15, True),
    ])
    def test_get_bit(self, bit_index, expected):
        assert get_bit(0xA5C3, bit_index) is expected

    def test_set_and_clear_bit(self):
        assert set_bit(0x0000, 15, True) == 0x8000
        assert set_bit(0xFFFF, 0, False) == 0xFFFE
        assert set_bit(0x00F0, 4, True) == 0x00F0

    @pytest.mark.parametrize("bit_index", [-1, 16])
    def test_bit_index_bounds(self, bit_index):
        with pytest.raises(ValueError):
            get_bit(0x0001, bit_index)
        with pytest.raises(ValueError):
            set_bit(0x0001, bit_index, True)


class TestScaling:
    def test_scale_and_offset(self):
        assert apply_scaling(1234, 0.1, -10.0) == pytest.approx(113.4)

    def test_identity(self):
        assert apply_scaling(-5, 1.0, 0.0) == -5.0

    def test_boolean_coerces_to_number(self):
        assert to_float(True) == 1.0
        assert to_float(False) == 0.0

    def test_string_is_not_numeric(self):
        with pytest.raises(DecodeError):
            to_float("12.5")
