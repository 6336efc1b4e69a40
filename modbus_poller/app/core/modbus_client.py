from abc import ABC, abstractmethod
from datetime import datetime
import time
from typing import Any, List, Optional, Tuple
import asyncio

from modbus_poller.app.core.exceptions import (
    InvalidRequestError, ModbusPollerError, ModbusProtocolError, TransportError
)
from modbus_poller.app.core.frame_codec import to_hex_string
from modbus_poller.app.models.connection_config import ConnectionConfig
from modbus_poller.app.models.connection_state import ConnectionMetrics, ConnectionState
from modbus_poller.app.models.packet_config import FunctionCode
from modbus_poller.app.schemas.polling import ModbusResponse
from modbus_poller.app.utilities.telemetry import logger

DEFAULT_REQUEST_TIMEOUT_MS = 3000


class ModbusClient(ABC):
    """Read-only Modbus master bound to one physical connection.

    All exchanges on a client go through `operation_lock`, so a request is
    never written while another one on the same channel is outstanding.
    Failures come back as `ModbusResponse(success=False, ...)`; nothing in
    the read path raises.

    Subclasses implement the transport:
        _open / _close      open and release the socket or serial port
        _build_request      frame a read request
        _exchange           write the request, read and parse the reply
    """

    component = "modbus_client"

    def __init__(self, config: ConnectionConfig, request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS):
        self.config = config
        self.request_timeout_ms = request_timeout_ms
        self.state = ConnectionState.DISCONNECTED
        self.metrics = ConnectionMetrics()
        self.operation_lock = asyncio.Lock()

    @property
    def connection_id(self) -> str:
        return self.config.connection_id

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> bool:
        """Open the channel; returns False instead of raising on failure"""
        async with self.operation_lock:
            return await self._connect_unlocked()

    async def disconnect(self) -> None:
        async with self.operation_lock:
            await self._disconnect_unlocked()

    async def read_coils(self, unit_id: int, start_address: int, count: int) -> ModbusResponse:
        return await self.read(FunctionCode.READ_COILS, unit_id, start_address, count)

    async def read_discrete_inputs(self, unit_id: int, start_address: int, count: int) -> ModbusResponse:
        return await self.read(FunctionCode.READ_DISCRETE_INPUTS, unit_id, start_address, count)

    async def read_holding_registers(self, unit_id: int, start_address: int, count: int) -> ModbusResponse:
        return await self.read(FunctionCode.READ_HOLDING_REGISTERS, unit_id, start_address, count)

    async def read_input_registers(self, unit_id: int, start_address: int, count: int) -> ModbusResponse:
        return await self.read(FunctionCode.READ_INPUT_REGISTERS, unit_id, start_address, count)

    async def read(self, function_code: FunctionCode, unit_id: int, start_address: int, count: int) -> ModbusResponse:
        """Run one serialized request/response exchange"""
        self.metrics.total_requests += 1
        request: Optional[bytes] = None

        async with self.operation_lock:
            start_time = time.perf_counter()
            try:
                if not self.is_connected:
                    logger.debug("Client not connected, attempting connection", extra={
                        "component": self.component,
                        "connection_id": self.connection_id
                    })
                    if not await self._connect_unlocked():
                        raise TransportError(f"Not connected: {self.metrics.last_error}",
                                             connection_id=self.connection_id)

                request = self._build_request(function_code, unit_id, start_address, count)
                logger.debug("Sending request", extra={
                    "component": self.component,
                    "connection_id": self.connection_id,
                    "function_code": FunctionCode(function_code).value,
                    "unit_id": unit_id,
                    "start_address": start_address,
                    "count": count,
                    "frame": to_hex_string(request)
                })

                data, raw_response = await self._shielded_exchange(request, FunctionCode(function_code), unit_id, count)
                response_time_ms = (time.perf_counter() - start_time) * 1000

                logger.debug("Response received", extra={
                    "component": self.component,
                    "connection_id": self.connection_id,
                    "frame": to_hex_string(raw_response),
                    "response_time_ms": round(response_time_ms, 1)
                })

                self._record_successful_operation(response_time_ms)
                return ModbusResponse.ok(data, response_time_ms, request, raw_response)

            except ModbusPollerError as e:
                return self._failure(e, start_time, request)
            except ValueError as e:
                invalid = InvalidRequestError(str(e), connection_id=self.connection_id)
                return self._failure(invalid, start_time, request)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Stray I/O errors still come back as values
                return self._failure(e, start_time, request)

    # Transport hooks

    @abstractmethod
    async def _open(self) -> None:
        ...

    @abstractmethod
    async def _close(self) -> None:
        ...

    @abstractmethod
    def _build_request(self, function_code: FunctionCode, unit_id: int, start_address: int, count: int) -> bytes:
        ...

    @abstractmethod
    async def _exchange(self, request: bytes, function_code: FunctionCode,
                        unit_id: int, count: int) -> Tuple[List[Any], bytes]:
        ...

    # Private helpers

    async def _connect_unlocked(self) -> bool:
        if self.is_connected:
            return True

        self.state = ConnectionState.CONNECTING
        logger.info("Connecting", extra={
            "component": self.component,
            "connection_id": self.connection_id,
            "endpoint": self.config.describe()
        })

        try:
            await self._open()
        except asyncio.CancelledError:
            self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            self._record_failed_connection(str(e))
            return False

        self._record_successful_connection()
        return True

    async def _disconnect_unlocked(self) -> None:
        try:
            await self._close()
        finally:
            self.state = ConnectionState.DISCONNECTED
            self.metrics.connection_uptime_start = None
            logger.info("Disconnected", extra={
                "component": self.component,
                "connection_id": self.connection_id
            })

    async def _shielded_exchange(self, request: bytes, function_code: FunctionCode,
                                 unit_id: int, count: int) -> Tuple[List[Any], bytes]:
        """Run `_exchange` so that cancelling the caller cannot cut it short.

        Serial reads run in worker threads that keep using the port after a
        cancelled await. On cancellation the caller waits, still holding
        `operation_lock`, until the exchange has finished, then re-raises.
        """
        exchange = asyncio.ensure_future(self._exchange(request, function_code, unit_id, count))
        try:
            return await asyncio.shield(exchange)
        except asyncio.CancelledError:
            await asyncio.wait({exchange})
            if not exchange.cancelled() and exchange.exception() is not None:
                logger.debug("Exchange abandoned by a cancelled caller", extra={
                    "component": self.component,
                    "connection_id": self.connection_id,
                    "error": str(exchange.exception())
                })
            raise

    def _failure(self, error: Exception, start_time: float, request: Optional[bytes]) -> ModbusResponse:
        response_time_ms = (time.perf_counter() - start_time) * 1000
        message = str(error) or type(error).__name__
        error_type = type(error).__name__
        if not isinstance(error, ModbusPollerError):
            error_type = TransportError.__name__
        exception_code = error.exception_code if isinstance(error, ModbusProtocolError) else None

        self._record_failed_operation(message)
        return ModbusResponse.failure(
            message,
            error_type=error_type,
            exception_code=exception_code,
            response_time_ms=response_time_ms,
            raw_request=request,
            raw_response=getattr(error, "raw_response", None)
        )

    def _record_successful_connection(self):
        self.state = ConnectionState.CONNECTED
        self.metrics.last_successful_connection = datetime.now()
        if self.metrics.connection_uptime_start is None:
            self.metrics.connection_uptime_start = datetime.now()

        logger.info("Connection established", extra={
            "component": self.component,
            "connection_id": self.connection_id,
            "endpoint": self.config.describe()
        })

    def _record_failed_connection(self, error_message: str):
        self.state = ConnectionState.DISCONNECTED
        self.metrics.last_error = error_message
        self.metrics.last_error_time = datetime.now()

        logger.warning("Connection attempt failed", extra={
            "component": self.component,
            "connection_id": self.connection_id,
            "endpoint": self.config.describe(),
            "error": error_message
        })

    def _record_successful_operation(self, response_time_ms: float):
        self.metrics.successful_requests += 1
        self.metrics.response_times_ms.append(response_time_ms)
        self.metrics.avg_response_time_ms = sum(self.metrics.response_times_ms) / len(self.metrics.response_times_ms)

    def _record_failed_operation(self, error_message: str):
        self.metrics.failed_requests += 1
        self.metrics.last_error = error_message
        self.metrics.last_error_time = datetime.now()

        logger.warning("Request failed", extra={
            "component": self.component,
            "connection_id": self.connection_id,
            "error": error_message,
            "failed_count": self.metrics.failed_requests,
            "total_requests": self.metrics.total_requests
        })
