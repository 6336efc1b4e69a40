"""
Modbus TCP Device Simulator
===========================
pymodbus TCP server used by the test suite and for bench runs without
hardware.

Every unit id gets its own slave context (coils, discrete inputs, holding
and input registers) seeded with a fixed pattern:

    holding  [4..9]  = 1234, 5678, 0x00FF, 100, 200, 300
    holding  [100]   = 1500
    coils    0, 2, 3 = on
    discrete 0, 1, 3 = on
    input    [0..3]  = 32767, 16384, 8192, 4096

pymodbus answers all read and write function codes. Requests are recorded
in `request_log`, `response_delay` holds every data access back, and
`forced_exception_code` turns every answer into that Modbus exception.

Run standalone:
    python -m modbus_poller.tools.tcp_simulator [port]
"""

import asyncio
import sys
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from pymodbus.datastore import ModbusSequentialDataBlock, ModbusServerContext, ModbusSlaveContext
from pymodbus.device import ModbusDeviceIdentification
from pymodbus.pdu import ExceptionResponse
from pymodbus.server import ModbusTcpServer

from modbus_poller.app.utilities.telemetry import logger

DEFAULT_TABLE_SIZE = 1000
DEFAULT_UNIT_IDS = (1, 2, 3)
START_TIMEOUT = 2.0

# Function codes selecting each table in the slave context
COILS = 1
DISCRETE_INPUTS = 2
HOLDING_REGISTERS = 3
INPUT_REGISTERS = 4


@dataclass
class RequestRecord:
    unit_id: int
    transaction_id: int
    function_code: int
    received_at: float


def seeded_context(size: int, simulator: "ModbusTcpSimulator") -> "DelayedSlaveContext":
    coils = [False] * size
    discrete_inputs = [False] * size
    holding_registers = [0] * size
    input_registers = [0] * size

    holding_registers[4:10] = [1234, 5678, 0x00FF, 100, 200, 300]
    holding_registers[100] = 1500
    for address in (0, 2, 3):
        coils[address] = True
    for address in (0, 1, 3):
        discrete_inputs[address] = True
    input_registers[0:4] = [32767, 16384, 8192, 4096]

    return DelayedSlaveContext(
        simulator,
        di=ModbusSequentialDataBlock(0, discrete_inputs),
        co=ModbusSequentialDataBlock(0, coils),
        hr=ModbusSequentialDataBlock(0, holding_registers),
        ir=ModbusSequentialDataBlock(0, input_registers),
        zero_mode=True
    )


class DelayedSlaveContext(ModbusSlaveContext):
    """Slave context that waits `simulator.response_delay` before each access"""

    def __init__(self, simulator: "ModbusTcpSimulator", **kwargs):
        super().__init__(**kwargs)
        self.simulator = simulator

    async def async_getValues(self, fc_as_hex, address, count=1):
        await self._hold()
        return self.getValues(fc_as_hex, address, count)

    async def async_setValues(self, fc_as_hex, address, values):
        await self._hold()
        self.setValues(fc_as_hex, address, values)

    async def _hold(self):
        if self.simulator.response_delay > 0:
            await asyncio.sleep(self.simulator.response_delay)


class ModbusTcpSimulator:
    """Multi-unit Modbus TCP slave on top of pymodbus"""

    def __init__(self, host: str = "127.0.0.1", port: int = 5020, table_size: int = DEFAULT_TABLE_SIZE,
                 unit_ids: Iterable[int] = DEFAULT_UNIT_IDS):
        self.host = host
        self.port = port
        self.table_size = table_size
        self.request_log: List[RequestRecord] = []
        self.response_delay: float = 0.0
        self.forced_exception_code: Optional[int] = None

        self.units: Dict[int, DelayedSlaveContext] = {
            unit_id: seeded_context(table_size, self) for unit_id in unit_ids
        }
        self.context = ModbusServerContext(slaves=self.units, single=False)
        self.server: Optional[ModbusTcpServer] = None
        self._task: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self):
        identity = ModbusDeviceIdentification()
        identity.VendorName = 'modbus-poller'
        identity.ProductName = 'Modbus TCP Simulator'
        identity.MajorMinorRevision = '1.0'

        self.server = ModbusTcpServer(
            self.context,
            identity=identity,
            address=(self.host, self.port),
            request_tracer=self._trace_request,
            response_manipulator=self._manipulate_response
        )
        self._task = asyncio.create_task(self.server.serve_forever(), name="modbus-simulator")

        deadline = time.monotonic() + START_TIMEOUT
        while self.server.transport is None:
            if self._task.done() or time.monotonic() > deadline:
                await self.stop()
                raise RuntimeError(f"Simulator could not listen on {self.host}:{self.port}")
            await asyncio.sleep(0.01)

        self.port = self.server.transport.sockets[0].getsockname()[1]
        logger.info("Modbus TCP simulator listening", extra={
            "component": "tcp_simulator",
            "host": self.host,
            "port": self.port,
            "units": sorted(self.units)
        })

    async def stop(self):
        if self.server is None:
            return
        await self.server.shutdown()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=START_TIMEOUT)
            except asyncio.TimeoutError:
                self._task.cancel()
        self.server = None
        self._task = None
        logger.info("Modbus TCP simulator stopped", extra={
            "component": "tcp_simulator",
            "port": self.port
        })

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # Table access

    def set_holding_register(self, unit_id: int, address: int, value: int):
        self.units[unit_id].setValues(HOLDING_REGISTERS, address, [value])

    def set_holding_registers(self, unit_id: int, address: int, values: List[int]):
        self.units[unit_id].setValues(HOLDING_REGISTERS, address, list(values))

    def get_holding_registers(self, unit_id: int, address: int, count: int = 1) -> List[int]:
        return self.units[unit_id].getValues(HOLDING_REGISTERS, address, count)

    def set_input_register(self, unit_id: int, address: int, value: int):
        self.units[unit_id].setValues(INPUT_REGISTERS, address, [value])

    def get_input_registers(self, unit_id: int, address: int, count: int = 1) -> List[int]:
        return self.units[unit_id].getValues(INPUT_REGISTERS, address, count)

    def set_coil(self, unit_id: int, address: int, value: bool):
        self.units[unit_id].setValues(COILS, address, [value])

    def get_coils(self, unit_id: int, address: int, count: int = 1) -> List[bool]:
        return [bool(bit) for bit in self.units[unit_id].getValues(COILS, address, count)]

    def set_discrete_input(self, unit_id: int, address: int, value: bool):
        self.units[unit_id].setValues(DISCRETE_INPUTS, address, [value])

    def get_discrete_inputs(self, unit_id: int, address: int, count: int = 1) -> List[bool]:
        return [bool(bit) for bit in self.units[unit_id].getValues(DISCRETE_INPUTS, address, count)]

    # Server hooks

    def _trace_request(self, request, *_addr):
        self.request_log.append(RequestRecord(
            unit_id=request.slave_id,
            transaction_id=request.transaction_id,
            function_code=request.function_code,
            received_at=time.monotonic()
        ))
        logger.debug("Simulator request", extra={
            "component": "tcp_simulator",
            "unit_id": request.slave_id,
            "transaction_id": request.transaction_id,
            "function_code": request.function_code
        })

    def _manipulate_response(self, response):
        if self.forced_exception_code is None or isinstance(response, ExceptionResponse):
            return response, False

        forced = ExceptionResponse(response.function_code, self.forced_exception_code)
        forced.transaction_id = response.transaction_id
        forced.slave_id = response.slave_id
        return forced, False


async def run_simulator(host: str = "0.0.0.0", port: int = 5020):
    async with ModbusTcpSimulator(host=host, port=port):
        await asyncio.Event().wait()


def main():
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 5020
    try:
        asyncio.run(run_simulator(port=port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
