import sys
from datetime import datetime
from typing import Optional, TextIO

from modbus_poller.app.schemas.polling import DataQuality, PollResult

MAX_REGISTERS_SHOWN = 20
MAX_COILS_SHOWN = 32


class ConsoleDataDisplay:
    """Plain-text rendering of poll results and connection changes"""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout

    def _write(self, text: str) -> None:
        print(text, file=self.stream, flush=True)

    def display(self, result: PollResult) -> None:
        stamp = result.timestamp.strftime("%H:%M:%S.%f")[:-3]
        lines = [
            f"\n[{stamp}] Packet: {result.packet_name} ({result.packet_id})",
            f"  Slave: {result.slave_id}, Function: 0x{result.function_code.value:02X}, "
            f"Start: {result.start_address}, Count: {result.count}",
            f"  Response time: {result.response_time_ms:.1f} ms",
        ]

        if result.raw_registers:
            shown = ", ".join(f"0x{r:04X}" for r in result.raw_registers[:MAX_REGISTERS_SHOWN])
            more = "..." if len(result.raw_registers) > MAX_REGISTERS_SHOWN else ""
            lines.append(f"  Registers: [{shown}]{more}")

        if result.raw_coils:
            shown = ", ".join("1" if c else "0" for c in result.raw_coils[:MAX_COILS_SHOWN])
            more = "..." if len(result.raw_coils) > MAX_COILS_SHOWN else ""
            lines.append(f"  Coils: [{shown}]{more}")

        if result.data_point_values:
            lines.append("  Data points:")
            for point in result.data_point_values:
                mark = "OK " if point.quality == DataQuality.GOOD else "BAD"
                value = point.scaled_value if point.quality == DataQuality.GOOD else point.error_message
                unit = f" {point.unit}" if point.unit else ""
                lines.append(f"    [{mark}] {point.name}: {value}{unit}")

        self._write("\n".join(lines))

    def display_error(self, packet_id: str, message: str) -> None:
        self._write(f"\n[{datetime.now():%H:%M:%S}] ERROR - Packet: {packet_id}\n  {message}")

    def display_connection_status(self, connection_id: str, connected: bool) -> None:
        status = "connected" if connected else "disconnected"
        self._write(f"\n[{datetime.now():%H:%M:%S}] Connection {connection_id}: {status}")
