from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from typing import List

from ..core.errors import QueryError
from ..core.traffic_source import TrafficAggregateSource, TrafficSample


@dataclass
class MonitoringAgent:
    source: TrafficAggregateSource
    query_timeout_s: float = 10.0

    async def scan(self, window: dt.timedelta) -> List[TrafficSample]:
        try:
            return await asyncio.wait_for(self.source.query_packet_sums(window), timeout=self.query_timeout_s)
        except asyncio.TimeoutError as e:
            raise QueryError(f"traffic query timed out after {self.query_timeout_s}s") from e

    async def measure(self, address: str, window: dt.timedelta) -> int:
        try:
            return await asyncio.wait_for(self.source.query_packet_sum(address, window), timeout=self.query_timeout_s)
        except asyncio.TimeoutError as e:
            raise QueryError(f"traffic query timed out after {self.query_timeout_s}s") from e
