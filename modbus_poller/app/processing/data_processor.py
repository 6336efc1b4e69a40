import inspect
from typing import Any, List, Optional

from modbus_poller.app.processing.display import ConsoleDataDisplay
from modbus_poller.app.processing.storage import JsonFileDataStorage
from modbus_poller.app.schemas.polling import PollResult
from modbus_poller.app.utilities.telemetry import logger


class DataProcessor:
    """Routes every poll result to storage, display and registered handlers.

    A handler is either a callable taking the PollResult or an object with a
    `handle(result)` method; both may be sync or async. Handlers run in
    ascending `priority` order and a failing handler never stops the others.
    """

    def __init__(self, storage: Optional[JsonFileDataStorage] = None,
                 display: Optional[ConsoleDataDisplay] = None, enable_storage: bool = True):
        self.storage = storage
        self.display = display
        self.enable_storage = enable_storage
        self._handlers: List[Any] = []

    def register_handler(self, handler) -> None:
        self._handlers.append(handler)
        self._handlers.sort(key=lambda h: getattr(h, "priority", 100))

    def unregister_handler(self, handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def process(self, result: PollResult) -> None:
        logger.debug("Processing poll result", extra={
            "component": "data_processor",
            "packet_id": result.packet_id,
            "success": result.success,
            "data_points": len(result.data_point_values)
        })

        if self.storage is not None and self.enable_storage:
            try:
                await self.storage.store(result)
            except Exception as e:
                logger.error("Storage failed", extra={
                    "component": "data_processor",
                    "packet_id": result.packet_id,
                    "error": str(e)
                })

        if self.display is not None:
            try:
                if result.success:
                    self.display.display(result)
                else:
                    self.display.display_error(result.packet_id, result.error_message or "unknown error")
            except Exception as e:
                logger.error("Display failed", extra={
                    "component": "data_processor",
                    "packet_id": result.packet_id,
                    "error": str(e)
                })

        for handler in list(self._handlers):
            try:
                target = getattr(handler, "handle", handler)
                outcome = target(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Data handler failed", extra={
                    "component": "data_processor",
                    "packet_id": result.packet_id,
                    "handler": type(handler).__name__,
                    "error": str(e)
                })
