import json
import re
from datetime import datetime
from pathlib import Path
from typing import List, Union
import asyncio

from modbus_poller.app.schemas.polling import PollResult
from modbus_poller.app.utilities.telemetry import logger

DATE_FORMAT = "%Y%m%d"


class JsonFileDataStorage:
    """Append-only JSON-lines store, one file per packet per day.

    Files are named `{packet_id}_{YYYYMMDD}.jsonl` under `base_path`.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def file_for(self, packet_id: str, day: datetime) -> Path:
        return self.base_path / f"{packet_id}_{day.strftime(DATE_FORMAT)}.jsonl"

    async def store(self, result: PollResult) -> None:
        file_path = self.file_for(result.packet_id, result.timestamp)
        line = json.dumps(result.to_dict(), ensure_ascii=False)

        async with self._lock:
            try:
                await asyncio.to_thread(self._append_line, file_path, line)
            except OSError as e:
                logger.error("Failed to store poll result", extra={
                    "component": "data_storage",
                    "packet_id": result.packet_id,
                    "file": str(file_path),
                    "error": str(e)
                })
                return

        logger.debug("Poll result stored", extra={
            "component": "data_storage",
            "packet_id": result.packet_id,
            "file": str(file_path)
        })

    async def query(self, packet_id: str, start_time: datetime, end_time: datetime) -> List[PollResult]:
        """Stored results of `packet_id` with start_time <= timestamp <= end_time, oldest first"""
        async with self._lock:
            return await asyncio.to_thread(self._query_files, packet_id, start_time, end_time)

    @staticmethod
    def _append_line(file_path: Path, line: str) -> None:
        with open(file_path, 'a', encoding='utf-8') as f:
            f.write(line + "\n")

    def _query_files(self, packet_id: str, start_time: datetime, end_time: datetime) -> List[PollResult]:
        pattern = re.compile(rf"^{re.escape(packet_id)}_(\d{{8}})\.jsonl$")
        first_day = start_time.strftime(DATE_FORMAT)
        last_day = end_time.strftime(DATE_FORMAT)
        results = []

        for file_path in sorted(self.base_path.glob(f"{packet_id}_*.jsonl")):
            match = pattern.match(file_path.name)
            if not match or not first_day <= match.group(1) <= last_day:
                continue

            with open(file_path, 'r', encoding='utf-8') as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        result = PollResult.from_dict(json.loads(line))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning("Skipping unreadable stored line", extra={
                            "component": "data_storage",
                            "file": str(file_path),
                            "line": line_number,
                            "error": str(e)
                        })
                        continue
                    if start_time <= result.timestamp <= end_time:
                        results.append(result)

        results.sort(key=lambda r: r.timestamp)
        return results
