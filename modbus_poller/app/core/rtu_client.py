import time
from typing import Any, Callable, List, Optional, Tuple
import asyncio

import serial

from modbus_poller.app.core.exceptions import ModbusPollerError, TransportError
from modbus_poller.app.core.frame_codec import (
    EXCEPTION_FLAG,
    RTU_EXCEPTION_FRAME_LENGTH,
    RTU_MIN_HEADER_LENGTH,
    build_rtu_request,
    expected_rtu_response_length,
    parse_rtu_response,
)
from modbus_poller.app.core.modbus_client import DEFAULT_REQUEST_TIMEOUT_MS, ModbusClient
from modbus_poller.app.models.connection_config import ConnectionConfig, Parity, RtuConfig, StopBits
from modbus_poller.app.models.packet_config import FunctionCode
from modbus_poller.app.utilities.telemetry import logger

PARITY_MAP = {
    Parity.NONE: serial.PARITY_NONE,
    Parity.ODD: serial.PARITY_ODD,
    Parity.EVEN: serial.PARITY_EVEN,
    Parity.MARK: serial.PARITY_MARK,
    Parity.SPACE: serial.PARITY_SPACE,
}

STOP_BITS_MAP = {
    StopBits.ONE: serial.STOPBITS_ONE,
    StopBits.ONE_POINT_FIVE: serial.STOPBITS_ONE_POINT_FIVE,
    StopBits.TWO: serial.STOPBITS_TWO,
}

# Granularity of a single blocking read while a frame is accumulated
SERIAL_POLL_TIMEOUT = 0.02


class ModbusRtuClient(ModbusClient):
    """Modbus RTU master on a serial port.

    pyserial calls block, so they run in worker threads. Each exchange
    clears stale bytes, writes the frame, waits the configured inter-frame
    gap and then accumulates the reply until it is complete or the read
    timeout passes.
    """

    component = "rtu_client"

    def __init__(self, config: ConnectionConfig, request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
                 serial_factory: Optional[Callable[..., Any]] = None):
        super().__init__(config, request_timeout_ms)
        self.rtu_config: RtuConfig = config.rtu or RtuConfig()
        self._serial_factory = serial_factory or serial.serial_for_url
        self._serial = None

    @property
    def is_connected(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def _open(self) -> None:
        try:
            self._serial = await asyncio.to_thread(self._open_port)
        except (serial.SerialException, OSError, ValueError) as e:
            self._serial = None
            raise TransportError(f"Failed to open serial port {self.rtu_config.port_name}: {e}",
                                 connection_id=self.connection_id) from e

    def _open_port(self):
        port = self._serial_factory(
            self.rtu_config.port_name,
            baudrate=self.rtu_config.baud_rate,
            bytesize=self.rtu_config.data_bits,
            parity=PARITY_MAP[self.rtu_config.parity],
            stopbits=STOP_BITS_MAP[self.rtu_config.stop_bits],
            timeout=SERIAL_POLL_TIMEOUT,
            write_timeout=self.rtu_config.write_timeout_ms / 1000
        )
        port.reset_input_buffer()
        port.reset_output_buffer()
        return port

    async def _close(self) -> None:
        port = self._serial
        self._serial = None
        if port is None:
            return
        try:
            await asyncio.to_thread(port.close)
        except (serial.SerialException, OSError) as e:
            logger.debug("Error while closing serial port", extra={
                "component": self.component,
                "connection_id": self.connection_id,
                "error": str(e)
            })

    def _build_request(self, function_code: FunctionCode, unit_id: int, start_address: int, count: int) -> bytes:
        return build_rtu_request(unit_id, function_code, start_address, count)

    async def _exchange(self, request: bytes, function_code: FunctionCode,
                        unit_id: int, count: int) -> Tuple[List[Any], bytes]:
        port = self._serial
        expected = expected_rtu_response_length(function_code, count)

        try:
            await asyncio.to_thread(self._write_frame, port, request)
            await asyncio.sleep(self.rtu_config.frame_interval_ms / 1000)
            frame = await asyncio.to_thread(self._read_frame, port, expected)
        except serial.SerialTimeoutException as e:
            raise TransportError(f"Write timeout after {self.rtu_config.write_timeout_ms} ms",
                                 connection_id=self.connection_id) from e
        except (serial.SerialException, OSError) as e:
            await self._close()
            raise TransportError(f"Serial I/O error: {e}", connection_id=self.connection_id) from e

        if not frame:
            raise TransportError(f"No response within {self.rtu_config.read_timeout_ms} ms",
                                 connection_id=self.connection_id)

        try:
            data = parse_rtu_response(frame, unit_id, function_code, count)
        except ModbusPollerError as e:
            e.raw_response = frame
            e.connection_id = self.connection_id
            raise

        return data, frame

    @staticmethod
    def _write_frame(port, request: bytes) -> None:
        port.reset_input_buffer()
        port.reset_output_buffer()
        port.write(request)
        port.flush()

    def _read_frame(self, port, expected: int) -> bytes:
        """Accumulate bytes until `expected` arrive or the read timeout passes.

        Once the function byte shows an exception the frame is a fixed 5
        bytes. A partial frame is returned as-is for the parser to reject.
        """
        deadline = time.monotonic() + self.rtu_config.read_timeout_ms / 1000
        buffer = bytearray()

        while len(buffer) < expected and time.monotonic() < deadline:
            chunk = port.read(expected - len(buffer))
            if chunk:
                buffer.extend(chunk)
                if len(buffer) >= RTU_MIN_HEADER_LENGTH and buffer[1] & EXCEPTION_FLAG:
                    expected = RTU_EXCEPTION_FRAME_LENGTH
            else:
                time.sleep(0.001)

        return bytes(buffer)
