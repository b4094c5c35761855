import asyncio
import datetime as dt
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest


def pytest_configure():
    # allow `from floodgate...` imports when running tests from repo root or project dir
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))
    os.environ.setdefault("FLOODGATE_CONFIG", str(root / "config.yaml"))


class RecordingSink:
    def __init__(self):
        self.threats: List[tuple] = []
        self.messages: List[tuple] = []

    async def notify_threat(self, address, volume, tier):
        self.threats.append((address, volume, tier))

    async def notify(self, subject, body, level="info"):
        self.messages.append((subject, body, level))

    def subjects(self) -> List[str]:
        return [m[0] for m in self.messages]


class StaticSource:
    """Fixed packet sums; set `fail` to make the next queries raise."""

    def __init__(self, counts: Optional[Dict[str, int]] = None):
        self.counts = dict(counts or {})
        self.fail: Optional[Exception] = None
        self.windows: List[dt.timedelta] = []
        self.gate: Optional[asyncio.Event] = None

    async def query_packet_sums(self, window):
        from floodgate.core.traffic_source import TrafficSample

        self.windows.append(window)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        end = dt.datetime.now(dt.UTC)
        return [TrafficSample(ip, n, end - window, end) for ip, n in self.counts.items()]

    async def query_packet_sum(self, address, window):
        self.windows.append(window)
        if self.fail is not None:
            raise self.fail
        return self.counts.get(address, 0)


class RecordingExecutor:
    """Dry-run style executor that records calls and can be told to fail."""

    def __init__(self, fail_on=(), delay_s: float = 0.0):
        from floodgate.core.executor import DryRunExecutor

        self._base = DryRunExecutor()
        self.block_script = self._base.block_script
        self.unblock_script = self._base.unblock_script
        self.fail_on = set(fail_on)
        self.delay_s = delay_s
        self.applied: List[str] = []
        self.reverted: List[str] = []

    @property
    def dry_run(self):
        return True

    async def _maybe_fail(self, address):
        from floodgate.core.errors import ExecutionError

        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if address in self.fail_on:
            raise ExecutionError(f"enforcement failed for {address}", exit_code=1, output="iptables: error")

    async def apply(self, address):
        await self._maybe_fail(address)
        self.applied.append(address)

    async def revert(self, address):
        await self._maybe_fail(address)
        self.reverted.append(address)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_store():
    from floodgate.core.mitigation import MitigationConfig, MitigationStore

    def _make(max_blocked=100, enabled=True, executor=None, **kw):
        return MitigationStore(
            MitigationConfig(enabled=enabled, max_blocked=max_blocked, **kw),
            executor or RecordingExecutor(),
        )

    return _make
