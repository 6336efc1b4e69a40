import socket
from typing import Any, List, Optional, Tuple
import asyncio

from modbus_poller.app.core.exceptions import FramingError, ModbusPollerError, TransportError
from modbus_poller.app.core.frame_codec import (
    MBAP_HEADER_LENGTH,
    build_tcp_request,
    parse_mbap_header,
    parse_tcp_response,
)
from modbus_poller.app.core.modbus_client import DEFAULT_REQUEST_TIMEOUT_MS, ModbusClient
from modbus_poller.app.models.connection_config import ConnectionConfig, TcpConfig
from modbus_poller.app.models.connection_state import ConnectionState
from modbus_poller.app.models.packet_config import FunctionCode
from modbus_poller.app.utilities.telemetry import logger

# unit id + largest PDU (253 bytes)
MAX_MBAP_LENGTH = 254


class ModbusTcpClient(ModbusClient):
    """Modbus TCP master over an asyncio stream"""

    component = "tcp_client"

    def __init__(self, config: ConnectionConfig, request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS):
        super().__init__(config, request_timeout_ms)
        self.tcp_config: TcpConfig = config.tcp or TcpConfig()
        self.transaction_id = 0
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self._writer is not None
            and not self._writer.is_closing()
        )

    async def _open(self) -> None:
        timeout = self.tcp_config.connect_timeout_ms / 1000
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.tcp_config.host, self.tcp_config.port),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"Connect timeout after {self.tcp_config.connect_timeout_ms} ms to "
                f"{self.tcp_config.host}:{self.tcp_config.port}",
                connection_id=self.connection_id
            )
        except OSError as e:
            raise TransportError(
                f"Connect to {self.tcp_config.host}:{self.tcp_config.port} failed: {e}",
                connection_id=self.connection_id
            ) from e

        if self.tcp_config.keep_alive:
            sock = self._writer.get_extra_info('socket')
            if sock is not None:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        self.transaction_id = 0

    async def _close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug("Error while closing socket", extra={
                "component": self.component,
                "connection_id": self.connection_id,
                "error": str(e)
            })

    def _next_transaction_id(self) -> int:
        self.transaction_id = (self.transaction_id + 1) & 0xFFFF
        return self.transaction_id

    def _build_request(self, function_code: FunctionCode, unit_id: int, start_address: int, count: int) -> bytes:
        return build_tcp_request(self._next_transaction_id(), unit_id, function_code, start_address, count)

    async def _exchange(self, request: bytes, function_code: FunctionCode,
                        unit_id: int, count: int) -> Tuple[List[Any], bytes]:
        transaction_id = self.transaction_id
        timeout = self.request_timeout_ms / 1000

        try:
            self._writer.write(request)
            frame = await asyncio.wait_for(self._send_and_receive(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._drop_connection("read response timeout")
            raise TransportError(f"Read response timeout after {self.request_timeout_ms} ms",
                                 connection_id=self.connection_id)
        except asyncio.IncompleteReadError as e:
            await self._drop_connection("connection closed by peer")
            if not e.partial:
                raise TransportError("No response: connection closed by peer", connection_id=self.connection_id)
            raise TransportError(f"Connection closed after {len(e.partial)} response bytes",
                                 connection_id=self.connection_id)
        except FramingError:
            await self._drop_connection("malformed MBAP header")
            raise
        except (OSError, ConnectionError) as e:
            await self._drop_connection(str(e))
            raise TransportError(f"Socket error: {e}", connection_id=self.connection_id) from e

        try:
            data = parse_tcp_response(frame, function_code, count, transaction_id=transaction_id, unit_id=unit_id)
        except ModbusPollerError as e:
            e.raw_response = frame
            e.connection_id = self.connection_id
            if isinstance(e, FramingError):
                # Stream position is unknown after a mismatched reply
                await self._drop_connection(str(e))
            raise

        return data, frame

    async def _send_and_receive(self) -> bytes:
        """Read exactly one MBAP-framed response"""
        await self._writer.drain()
        header = await self._reader.readexactly(MBAP_HEADER_LENGTH)
        _, _, length, _ = parse_mbap_header(header)
        if not 2 <= length <= MAX_MBAP_LENGTH:
            raise FramingError(f"Invalid MBAP length field: {length}", connection_id=self.connection_id)
        body = await self._reader.readexactly(length - 1)
        return header + body

    async def _drop_connection(self, reason: str) -> None:
        logger.warning("Dropping TCP connection", extra={
            "component": self.component,
            "connection_id": self.connection_id,
            "reason": reason
        })
        await self._close()
        self.state = ConnectionState.DISCONNECTED
        self.metrics.connection_uptime_start = None
