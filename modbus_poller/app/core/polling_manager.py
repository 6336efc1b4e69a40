from datetime import datetime
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
import asyncio

from modbus_poller.app.config import Settings, settings as default_settings
from modbus_poller.app.core.exceptions import ConfigurationError, DecodeError, TransportError
from modbus_poller.app.core.modbus_client import ModbusClient
from modbus_poller.app.models.connection_state import SchedulerState
from modbus_poller.app.models.packet_config import DataPointConfig, DataType, PacketConfig
from modbus_poller.app.schemas.polling import (
    DataPointValue, DataQuality, ModbusResponse, PollResult, PollingState
)
from modbus_poller.app.utilities.converters import apply_scaling, get_bit, registers_to_value
from modbus_poller.app.utilities.telemetry import logger

ConnectionStatusHandler = Callable[[str, bool], Union[None, Awaitable[None]]]
DataPolledHandler = Callable[[PollResult], Union[None, Awaitable[None]]]


class PollingManager:
    """Schedules packet reads over a set of transport clients.

    One background task scans every packet, runs the ones whose interval
    has elapsed and hands each PollResult to the data processor and to
    data-polled subscribers. Requests on one connection are serialized by
    the client's own lock, so `poll_once` can run next to the loop.
    """

    def __init__(self, clients: Dict[str, ModbusClient], packets: List[PacketConfig],
                 settings: Optional[Settings] = None, data_processor=None):
        self.settings = settings or default_settings
        self.clients: Dict[str, ModbusClient] = dict(clients)
        self.packet_states: Dict[str, PollingState] = {}
        self.skipped_packets: Dict[str, ConfigurationError] = {}
        self.data_processor = data_processor
        self.state = SchedulerState.STOPPED

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._connection_status_handlers: List[ConnectionStatusHandler] = []
        self._data_polled_handlers: List[DataPolledHandler] = []

        for packet in packets:
            self._register_packet(packet)

        logger.info("Polling manager initialized", extra={
            "component": "polling_manager",
            "connections": len(self.clients),
            "packets": len(self.packet_states),
            "skipped_packets": len(self.skipped_packets)
        })

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    # Subscriptions

    def subscribe_connection_status(self, handler: ConnectionStatusHandler) -> None:
        self._connection_status_handlers.append(handler)

    def unsubscribe_connection_status(self, handler: ConnectionStatusHandler) -> None:
        if handler in self._connection_status_handlers:
            self._connection_status_handlers.remove(handler)

    def subscribe_data_polled(self, handler: DataPolledHandler) -> None:
        self._data_polled_handlers.append(handler)

    def unsubscribe_data_polled(self, handler: DataPolledHandler) -> None:
        if handler in self._data_polled_handlers:
            self._data_polled_handlers.remove(handler)

    # Lifecycle

    async def start(self):
        """Connect all clients and start the scheduling loop"""
        if self.state != SchedulerState.STOPPED:
            logger.warning("Polling manager already started", extra={
                "component": "polling_manager",
                "state": self.state.value
            })
            return

        self.state = SchedulerState.STARTING
        logger.info("Starting polling manager", extra={
            "component": "polling_manager",
            "connections": len(self.clients)
        })

        results = await asyncio.gather(
            *(self._connect_client(client) for client in self.clients.values()),
            return_exceptions=True
        )
        connected = sum(1 for result in results if result is True)

        self._stop_event.clear()
        self._task = asyncio.create_task(self._polling_loop(), name="modbus-polling-loop")
        self.state = SchedulerState.RUNNING

        logger.info("Polling manager started", extra={
            "component": "polling_manager",
            "connected_clients": connected,
            "total_clients": len(self.clients),
            "packets": len(self.packet_states)
        })

    async def stop(self):
        """Cancel the loop, wait for it to exit, then disconnect every client"""
        if self.state in (SchedulerState.STOPPED, SchedulerState.STOPPING):
            return

        self.state = SchedulerState.STOPPING
        logger.info("Stopping polling manager", extra={
            "component": "polling_manager"
        })

        self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self.settings.stop_timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.warning("Polling loop did not exit in time, cancelling", extra={
                    "component": "polling_manager",
                    "timeout_ms": self.settings.stop_timeout_ms
                })
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None

        client_ids = list(self.clients.keys())
        results = await asyncio.gather(
            *(client.disconnect() for client in self.clients.values()),
            return_exceptions=True
        )
        for connection_id, result in zip(client_ids, results):
            if isinstance(result, Exception):
                logger.warning("Client disconnect error", extra={
                    "component": "polling_manager",
                    "connection_id": connection_id,
                    "error": str(result)
                })
            await self._emit_connection_status(connection_id, False)

        self.state = SchedulerState.STOPPED
        logger.info("Polling manager stopped", extra={
            "component": "polling_manager"
        })

    # Polling

    async def poll_once(self, packet_id: str) -> Optional[PollResult]:
        """Poll one packet now, ignoring its interval"""
        polling_state = self.packet_states.get(packet_id)
        if polling_state is None:
            logger.warning("Manual poll of unknown packet", extra={
                "component": "polling_manager",
                "packet_id": packet_id
            })
            return None
        return await self._poll_packet(polling_state)

    def get_packet_states(self) -> Dict[str, PollingState]:
        return {packet_id: state.snapshot() for packet_id, state in self.packet_states.items()}

    def get_connection_status(self, connection_id: Optional[str] = None) -> Dict[str, Any]:
        if connection_id:
            if connection_id not in self.clients:
                raise ValueError(f"Connection {connection_id} not found")
            return self._get_client_status(self.clients[connection_id])

        return {
            connection_id: self._get_client_status(client)
            for connection_id, client in self.clients.items()
        }

    def get_health_status(self) -> Dict[str, Any]:
        total = len(self.clients)
        connected = sum(1 for client in self.clients.values() if client.is_connected)

        if total > 0 and connected == total:
            status = 'healthy'
        elif connected > 0:
            status = 'degraded'
        else:
            status = 'unhealthy'

        return {
            'status': status,
            'scheduler_state': self.state.value,
            'total_connections': total,
            'connected': connected,
            'disconnected': total - connected,
            'packets': len(self.packet_states),
            'timestamp': datetime.now().isoformat()
        }

    # Private methods

    def _register_packet(self, packet: PacketConfig):
        if not packet.enabled:
            logger.debug("Packet disabled, not scheduled", extra={
                "component": "polling_manager",
                "packet_id": packet.packet_id
            })
            return

        if packet.connection_id not in self.clients:
            error = ConfigurationError(
                f"Packet {packet.packet_id} references unknown or disabled connection {packet.connection_id}",
                connection_id=packet.connection_id,
                packet_id=packet.packet_id
            )
            self.skipped_packets[packet.packet_id] = error
            logger.error("Packet skipped", extra={
                "component": "polling_manager",
                "packet_id": packet.packet_id,
                "connection_id": packet.connection_id,
                "error": str(error)
            })
            return

        interval_ms = packet.polling_interval_ms if packet.polling_interval_ms > 0 else self.settings.polling_interval_ms
        self.packet_states[packet.packet_id] = PollingState(packet=packet, interval_ms=interval_ms)

    async def _connect_client(self, client: ModbusClient) -> bool:
        connected = await client.connect()
        await self._emit_connection_status(client.connection_id, connected)
        return connected

    async def _polling_loop(self):
        logger.debug("Polling loop started", extra={
            "component": "polling_manager"
        })

        while not self._stop_event.is_set():
            try:
                for polling_state in list(self.packet_states.values()):
                    if self._stop_event.is_set():
                        break
                    if not polling_state.is_due(time.monotonic_ns()):
                        continue

                    await self._poll_packet(polling_state)

                    if await self._wait(self.settings.request_delay_ms):
                        break

                await self._wait(self.settings.scan_interval_ms)

            except asyncio.CancelledError:
                logger.debug("Polling loop cancelled", extra={
                    "component": "polling_manager"
                })
                raise
            except Exception as e:
                logger.error("Polling loop error", extra={
                    "component": "polling_manager",
                    "error": str(e)
                }, exc_info=True)
                await self._wait(self.settings.error_backoff_ms)

        logger.debug("Polling loop exited", extra={
            "component": "polling_manager"
        })

    async def _wait(self, delay_ms: int) -> bool:
        """Sleep unless stop is requested; True means stop was requested"""
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll_packet(self, polling_state: PollingState) -> PollResult:
        packet = polling_state.packet
        polling_state.last_poll_ns = time.monotonic_ns()
        polling_state.last_poll_time = datetime.now()

        result = await self._execute_packet(packet)

        polling_state.last_result = result
        if result.success:
            polling_state.success_count += 1
        else:
            polling_state.failure_count += 1

        await self._process_result(result)
        await self._emit(self._data_polled_handlers, "data_polled", result)
        return result

    async def _execute_packet(self, packet: PacketConfig) -> PollResult:
        client = self.clients.get(packet.connection_id)
        if client is None:
            return PollResult.for_packet(
                packet, False,
                error_message=f"Connection {packet.connection_id} not found",
                error_type=ConfigurationError.__name__
            )

        if not client.is_connected:
            connected = await client.connect()
            await self._emit_connection_status(client.connection_id, connected)
            if not connected:
                return PollResult.for_packet(
                    packet, False,
                    error_message=f"Connection {packet.connection_id} unavailable: {client.metrics.last_error}",
                    error_type=TransportError.__name__
                )

        response, attempts = await self._read_with_retry(client, packet)

        if not client.is_connected:
            await self._emit_connection_status(client.connection_id, False)

        if not response.success:
            return PollResult.for_packet(
                packet, False,
                error_message=response.error_message,
                error_type=response.error_type,
                exception_code=response.exception_code,
                response_time_ms=response.response_time_ms,
                attempts=attempts,
                raw_request=response.raw_request,
                raw_response=response.raw_response
            )

        result = PollResult.for_packet(
            packet, True,
            response_time_ms=response.response_time_ms,
            attempts=attempts,
            raw_request=response.raw_request,
            raw_response=response.raw_response
        )
        if packet.function_code.is_bit_read:
            result.raw_coils = list(response.data)
        else:
            result.raw_registers = list(response.data)
        result.data_point_values = self._decode_data_points(packet, response.data, result.timestamp)
        return result

    async def _read_with_retry(self, client: ModbusClient, packet: PacketConfig) -> Tuple[ModbusResponse, int]:
        """First attempt plus `retry_count` retries, spaced by `retry_interval_ms`"""
        max_attempts = self.settings.retry_count + 1
        response = None
        attempt = 0

        for attempt in range(1, max_attempts + 1):
            response = await client.read(packet.function_code, packet.slave_id, packet.start_address, packet.count)
            if response.success:
                return response, attempt

            if attempt < max_attempts:
                logger.warning("Poll attempt failed, retrying", extra={
                    "component": "polling_manager",
                    "packet_id": packet.packet_id,
                    "connection_id": packet.connection_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "retry_delay_ms": self.settings.retry_interval_ms,
                    "error": response.error_message
                })
                if await self._wait(self.settings.retry_interval_ms):
                    break
            else:
                logger.error("Poll failed after all retries", extra={
                    "component": "polling_manager",
                    "packet_id": packet.packet_id,
                    "connection_id": packet.connection_id,
                    "total_attempts": attempt,
                    "final_error": response.error_message
                })

        return response, attempt

    def _decode_data_points(self, packet: PacketConfig, data: List[Any], timestamp: datetime) -> List[DataPointValue]:
        values = []
        for point in packet.data_points:
            try:
                raw, scaled = self._decode_point(packet, point, data)
                values.append(DataPointValue(
                    point_id=point.point_id,
                    name=point.name or point.point_id,
                    data_type=point.data_type,
                    raw_value=raw,
                    scaled_value=scaled,
                    unit=point.unit,
                    quality=DataQuality.GOOD,
                    timestamp=timestamp
                ))
            except DecodeError as e:
                logger.warning("Data point decode failed", extra={
                    "component": "polling_manager",
                    "packet_id": packet.packet_id,
                    "point_id": point.point_id,
                    "error": str(e)
                })
                values.append(DataPointValue(
                    point_id=point.point_id,
                    name=point.name or point.point_id,
                    data_type=point.data_type,
                    unit=point.unit,
                    quality=DataQuality.BAD,
                    error_message=str(e),
                    timestamp=timestamp
                ))
        return values

    def _decode_point(self, packet: PacketConfig, point: DataPointConfig, data: List[Any]):
        if packet.function_code.is_bit_read or point.has_bit_index:
            if not 0 <= point.offset < len(data):
                raise DecodeError(f"Offset {point.offset} outside {len(data)} items",
                                  packet_id=packet.packet_id, point_id=point.point_id)
            if packet.function_code.is_bit_read:
                value = bool(data[point.offset])
            else:
                value = get_bit(data[point.offset], point.bit_index)
            return value, value

        raw = registers_to_value(data, point.offset, point.data_type, point.byte_order, point.string_length)
        if point.data_type in (DataType.STRING, DataType.BOOLEAN):
            return raw, raw
        return raw, apply_scaling(raw, point.scale, point.offset_value)

    async def _process_result(self, result: PollResult):
        if self.data_processor is None:
            return
        try:
            await self.data_processor.process(result)
        except Exception as e:
            logger.error("Data processor failed", extra={
                "component": "polling_manager",
                "packet_id": result.packet_id,
                "error": str(e)
            }, exc_info=True)

    async def _emit_connection_status(self, connection_id: str, connected: bool):
        await self._emit(self._connection_status_handlers, "connection_status", connection_id, connected)

    async def _emit(self, handlers: List[Callable], event: str, *args):
        """Call each subscriber; a failing subscriber is logged and skipped"""
        for handler in list(handlers):
            try:
                outcome = handler(*args)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Event handler failed", extra={
                    "component": "polling_manager",
                    "event": event,
                    "handler": getattr(handler, "__qualname__", repr(handler)),
                    "error": str(e)
                })

    def _get_client_status(self, client: ModbusClient) -> Dict[str, Any]:
        metrics = client.metrics
        uptime = None
        if metrics.connection_uptime_start:
            uptime = (datetime.now() - metrics.connection_uptime_start).total_seconds()

        return {
            'connection_id': client.connection_id,
            'name': client.config.display_name,
            'type': client.config.type.value,
            'endpoint': client.config.describe(),
            'state': client.state.value,
            'connected': client.is_connected,
            'metrics': {
                'total_requests': metrics.total_requests,
                'successful_requests': metrics.successful_requests,
                'failed_requests': metrics.failed_requests,
                'success_rate': metrics.success_rate,
                'avg_response_time_ms': metrics.avg_response_time_ms,
                'uptime_seconds': uptime,
                'last_successful_connection': metrics.last_successful_connection.isoformat() if metrics.last_successful_connection else None,
                'last_error': metrics.last_error,
                'last_error_time': metrics.last_error_time.isoformat() if metrics.last_error_time else None
            }
        }
