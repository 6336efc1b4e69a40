from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Tuple

from modbus_poller.app.schemas.polling import DataQuality, PollResult
from modbus_poller.app.utilities.telemetry import logger


@dataclass
class AlarmEvent:
    point_id: str
    name: str
    value: float
    limit: float
    kind: str  # "low" or "high"
    packet_id: str = ""
    timestamp: datetime = field(default_factory=datetime.now)


class ThresholdAlarmHandler:
    """Raises an alarm when a good numeric value leaves its [min, max] band"""

    priority = 100

    def __init__(self):
        self.thresholds: Dict[str, Tuple[float, float]] = {}
        self.active_alarms: Dict[str, AlarmEvent] = {}

    def set_threshold(self, point_id: str, minimum: float, maximum: float) -> None:
        if minimum > maximum:
            raise ValueError(f"Threshold minimum {minimum} above maximum {maximum} for {point_id}")
        self.thresholds[point_id] = (minimum, maximum)

    def handle(self, result: PollResult) -> None:
        for point in result.data_point_values:
            limits = self.thresholds.get(point.point_id)
            if limits is None or point.quality != DataQuality.GOOD:
                continue
            value = point.scaled_value
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue

            minimum, maximum = limits
            if value < minimum:
                self._raise(result, point, value, minimum, "low")
            elif value > maximum:
                self._raise(result, point, value, maximum, "high")
            elif point.point_id in self.active_alarms:
                del self.active_alarms[point.point_id]
                logger.info("Alarm cleared", extra={
                    "component": "alarm_handler",
                    "packet_id": result.packet_id,
                    "point_id": point.point_id,
                    "value": value
                })

    def _raise(self, result: PollResult, point, value: float, limit: float, kind: str) -> None:
        self.active_alarms[point.point_id] = AlarmEvent(
            point_id=point.point_id,
            name=point.name,
            value=value,
            limit=limit,
            kind=kind,
            packet_id=result.packet_id
        )
        logger.warning("Threshold alarm", extra={
            "component": "alarm_handler",
            "packet_id": result.packet_id,
            "point_id": point.point_id,
            "value": value,
            "limit": limit,
            "kind": kind
        })
