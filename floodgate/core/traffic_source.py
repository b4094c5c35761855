from __future__ import annotations

import csv
import datetime as dt
import io
import json
import logging
import os
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

import httpx

from .errors import QueryError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrafficSample:
    source_address: str
    packet_count: int
    window_start: dt.datetime
    window_end: dt.datetime


class TrafficAggregateSource(Protocol):
    async def query_packet_sums(self, window: dt.timedelta) -> List[TrafficSample]:
        ...

    async def query_packet_sum(self, address: str, window: dt.timedelta) -> int:
        ...


def _window_bounds(window: dt.timedelta) -> Tuple[dt.datetime, dt.datetime]:
    end = dt.datetime.now(dt.UTC)
    return end - window, end


@dataclass
class InfluxConfig:
    url: str = "http://localhost:8086"
    token: str = ""
    org: str = "defense-org"
    bucket: str = "traffic"
    measurement: str = "traffic_data"
    field: str = "packetCount"
    source_tag: str = "sourceIp"


class InfluxTrafficSource:
    """
    Packet-count aggregates from an InfluxDB v2 bucket.

    Flux queries go to `/api/v2/query` and come back as plain CSV (no
    annotations). One table per group may be returned, separated by blank
    lines, each with its own header row.
    """

    def __init__(
        self,
        cfg: InfluxConfig,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = cfg
        self.timeout_s = timeout_s
        self._transport = transport

    def _base_filter(self, window: dt.timedelta) -> str:
        return (
            f"from(bucket: {json.dumps(self.cfg.bucket)}) "
            f"|> range(start: {_flux_duration(window)}) "
            f"|> filter(fn: (r) => r._measurement == {json.dumps(self.cfg.measurement)} "
            f"and r._field == {json.dumps(self.cfg.field)}"
        )

    def build_sums_query(self, window: dt.timedelta) -> str:
        return (
            self._base_filter(window)
            + ") "
            + f"|> group(columns: [{json.dumps(self.cfg.source_tag)}]) "
            + "|> sum() "
            + "|> group()"
        )

    def build_sum_query(self, address: str, window: dt.timedelta) -> str:
        # callers validate `address`; json.dumps still quotes it as a Flux string literal
        return (
            self._base_filter(window)
            + f" and r.{self.cfg.source_tag} == {json.dumps(address)}) "
            + "|> group() "
            + "|> sum()"
        )

    async def _run(self, flux: str) -> List[Dict[str, str]]:
        body = {
            "query": flux,
            "type": "flux",
            "dialect": {"header": True, "annotations": [], "delimiter": ","},
        }
        headers = {"Accept": "application/csv"}
        if self.cfg.token:
            headers["Authorization"] = f"Token {self.cfg.token}"

        try:
            async with httpx.AsyncClient(
                base_url=self.cfg.url, timeout=self.timeout_s, transport=self._transport
            ) as client:
                resp = await client.post("/api/v2/query", params={"org": self.cfg.org}, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise QueryError(f"influx query rejected: {e.response.status_code} {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise QueryError(f"influx unreachable: {e}") from e

        return _parse_csv(resp.text)

    async def query_packet_sums(self, window: dt.timedelta) -> List[TrafficSample]:
        start, end = _window_bounds(window)
        rows = await self._run(self.build_sums_query(window))
        out: List[TrafficSample] = []
        for r in rows:
            src = (r.get(self.cfg.source_tag) or "").strip()
            if not src:
                continue
            out.append(TrafficSample(src, _packet_value(r), start, end))
        return out

    async def query_packet_sum(self, address: str, window: dt.timedelta) -> int:
        rows = await self._run(self.build_sum_query(address, window))
        return sum(_packet_value(r) for r in rows)


def _flux_duration(window: dt.timedelta) -> str:
    seconds = int(window.total_seconds())
    if seconds <= 0:
        raise ValueError("window must be positive")
    return f"-{seconds}s"


def _parse_csv(text: str) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    header: Optional[List[str]] = None
    for row in csv.reader(io.StringIO(text)):
        if not row or not any(c.strip() for c in row):
            header = None
            continue
        if row[0].startswith("#"):
            continue
        if header is None:
            header = row
            if "_value" not in header:
                raise QueryError(f"unexpected query result header: {row}")
            continue
        if len(row) != len(header):
            raise QueryError(f"malformed query result row: {row}")
        rows.append(dict(zip(header, row)))
    return rows


def _packet_value(row: Dict[str, str]) -> int:
    raw = row.get("_value", "")
    try:
        value = int(float(raw))
    except (TypeError, ValueError) as e:
        raise QueryError(f"non-numeric packet count: {raw!r}") from e
    return max(value, 0)


@dataclass
class MockTrafficSource:
    """
    Deterministic synthetic aggregates for running without a time-series store.

    Background sources draw small counts; `hot_sources` are fixed per-minute
    rates so a demo deployment sees every tier.
    """

    background_sources: int = 20
    seed: int = field(default_factory=lambda: int(os.getenv("FLOODGATE_MOCK_SEED", "42")))
    hot_sources: Dict[str, int] = field(
        default_factory=lambda: {"203.0.113.66": 20_000, "198.51.100.23": 6_000, "198.51.100.40": 1_500}
    )
    _scans: int = field(default=0, init=False, repr=False)

    def _scale(self, window: dt.timedelta) -> float:
        return window.total_seconds() / 60.0

    async def query_packet_sums(self, window: dt.timedelta) -> List[TrafficSample]:
        start, end = _window_bounds(window)
        self._scans += 1
        rng = random.Random(self.seed + self._scans)
        scale = self._scale(window)
        out: List[TrafficSample] = []
        for n in range(self.background_sources):
            out.append(TrafficSample(f"192.0.2.{n + 1}", int(rng.randint(20, 900) * scale), start, end))
        for ip, per_minute in self.hot_sources.items():
            out.append(TrafficSample(ip, int(per_minute * scale), start, end))
        return out

    async def query_packet_sum(self, address: str, window: dt.timedelta) -> int:
        scale = self._scale(window)
        if address in self.hot_sources:
            return int(self.hot_sources[address] * scale)
        rng = random.Random(f"{self.seed}:{address}")
        return int(rng.randint(20, 900) * scale)
