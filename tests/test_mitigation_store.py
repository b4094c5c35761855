import asyncio
import datetime as dt

import pytest

from conftest import RecordingExecutor
from floodgate.core.errors import ExecutionError
from floodgate.core.executor import DryRunExecutor
from floodgate.core.mitigation import (
    BlockEntry,
    BlockOutcome,
    BlockResult,
    MitigationConfig,
    MitigationStore,
    RejectReason,
    UnblockOutcome,
    is_protected,
    parse_protected,
    validate_address,
)


def test_dry_run_block_records_address():
    store = MitigationStore(MitigationConfig(), DryRunExecutor())

    res = asyncio.run(store.try_block("203.0.113.5", "test"))

    assert res.outcome == BlockOutcome.BLOCKED
    assert "203.0.113.5" in store.snapshot()
    assert store.status().dry_run is True
    assert store.status().current_count == 1


def test_block_is_idempotent(make_store):
    store = make_store()

    async def go():
        first = await store.try_block("198.51.100.7", "first")
        second = await store.try_block("198.51.100.7", "second")
        return first, second

    first, second = asyncio.run(go())
    assert first.outcome == BlockOutcome.BLOCKED
    assert second.outcome == BlockOutcome.ALREADY_BLOCKED
    assert second.ok
    assert len(store) == 1
    assert store.entries()[0].reason == "first"
    assert store.executor.applied == ["198.51.100.7"]


@pytest.mark.parametrize(
    "ip",
    [
        "127.0.0.1",
        "::1",
        "10.1.2.3",
        "172.20.0.9",
        "192.168.1.1",
        "0.0.0.0",
        "::",
        "::ffff:127.0.0.1",
        "::ffff:10.0.0.5",
        "::ffff:192.168.1.1",
        "::ffff:0.0.0.0",
        "fd00::1",
        "fe80::1",
    ],
)
def test_protected_addresses_always_rejected(make_store, ip):
    async def go():
        results = []
        # plenty of room
        results.append(await make_store(max_blocked=10).try_block(ip, "x"))
        # store full
        full = make_store(max_blocked=1)
        await full.try_block("203.0.113.1", "fill")
        results.append(await full.try_block(ip, "x"))
        # zero capacity and mitigation off
        results.append(await make_store(max_blocked=0, enabled=False).try_block(ip, "x"))
        return results

    for res in asyncio.run(go()):
        assert res.outcome == BlockOutcome.REJECTED
        assert res.reject_reason == RejectReason.PROTECTED


def test_capacity_exceeded_rejects_second_address(make_store):
    store = make_store(max_blocked=1)

    async def go():
        await store.try_block("203.0.113.1", "a")
        return await store.try_block("203.0.113.2", "b")

    res = asyncio.run(go())
    assert res.outcome == BlockOutcome.REJECTED
    assert res.reject_reason == RejectReason.CAPACITY_EXCEEDED
    assert len(store) == 1
    assert store.snapshot() == frozenset({"203.0.113.1"})


@pytest.mark.parametrize("bad", ["", "   ", "999.1.1.1", "1.2.3", "abc", "1.2.3.4.5", "2001:db8::g", "gggg::1"])
def test_invalid_addresses_rejected(make_store, bad):
    store = make_store()
    res = asyncio.run(store.try_block(bad, "x"))
    assert res.outcome == BlockOutcome.REJECTED
    assert res.reject_reason == RejectReason.INVALID_ADDRESS
    assert asyncio.run(store.try_unblock(bad)).outcome == UnblockOutcome.REJECTED
    assert len(store) == 0


def test_ipv6_forms_collapse_to_one_entry(make_store):
    store = make_store()

    async def go():
        a = await store.try_block("2001:0db8:0000:0000:0000:0000:0000:0001", "x")
        b = await store.try_block("2001:db8::1", "x")
        return a, b

    a, b = asyncio.run(go())
    assert a.outcome == BlockOutcome.BLOCKED
    assert b.outcome == BlockOutcome.ALREADY_BLOCKED
    assert store.snapshot() == frozenset({"2001:db8::1"})
    assert store.is_blocked("2001:0db8::0001")


def test_unblock_absent_is_noop(make_store):
    store = make_store()
    res = asyncio.run(store.try_unblock("203.0.113.9"))
    assert res.outcome == UnblockOutcome.NOT_BLOCKED
    assert res.ok
    assert store.executor.reverted == []


def test_block_then_unblock_round_trip(make_store):
    store = make_store()

    async def go():
        await store.try_block("203.0.113.1", "keep")
        before = store.snapshot()
        await store.try_block("203.0.113.2", "temp")
        res = await store.try_unblock("203.0.113.2")
        return before, res

    before, res = asyncio.run(go())
    assert res.outcome == UnblockOutcome.UNBLOCKED
    assert store.snapshot() == before
    assert "203.0.113.2" not in store.snapshot()


def test_disabled_mitigation_rejects_block_but_allows_unblock(make_store):
    store = make_store(enabled=False)
    res = asyncio.run(store.try_block("203.0.113.3", "x"))
    assert res.reject_reason == RejectReason.DISABLED
    assert store.status().enabled is False
    assert asyncio.run(store.try_unblock("203.0.113.3")).outcome == UnblockOutcome.NOT_BLOCKED


def test_executor_failure_leaves_store_unchanged(make_store):
    store = make_store(max_blocked=1, executor=RecordingExecutor(fail_on={"203.0.113.50"}))

    async def go():
        with pytest.raises(ExecutionError) as ei:
            await store.try_block("203.0.113.50", "x")
        assert ei.value.exit_code == 1
        # reserved slot was released
        return await store.try_block("203.0.113.51", "x")

    res = asyncio.run(go())
    assert res.outcome == BlockOutcome.BLOCKED
    assert store.snapshot() == frozenset({"203.0.113.51"})


def test_unblock_failure_keeps_entry(make_store):
    executor = RecordingExecutor()
    store = make_store(executor=executor)

    async def go():
        await store.try_block("203.0.113.60", "x")
        executor.fail_on.add("203.0.113.60")
        with pytest.raises(ExecutionError):
            await store.try_unblock("203.0.113.60")

    asyncio.run(go())
    assert store.is_blocked("203.0.113.60")


def test_concurrent_blocks_never_exceed_capacity(make_store):
    store = make_store(max_blocked=5, executor=RecordingExecutor(delay_s=0.01))
    ips = [f"203.0.113.{i}" for i in range(1, 41)]

    async def go():
        return await asyncio.gather(*(store.try_block(ip, "flood") for ip in ips))

    results = asyncio.run(go())
    blocked = [r for r in results if r.outcome == BlockOutcome.BLOCKED]
    rejected = [r for r in results if r.reject_reason == RejectReason.CAPACITY_EXCEEDED]
    assert len(blocked) == 5
    assert len(rejected) == 35
    assert len(store) == 5


def test_concurrent_same_address_blocks_insert_once(make_store):
    executor = RecordingExecutor(delay_s=0.01)
    store = make_store(executor=executor)

    async def go():
        return await asyncio.gather(*(store.try_block("198.51.100.99", "dup") for _ in range(10)))

    results = asyncio.run(go())
    assert sum(r.outcome == BlockOutcome.BLOCKED for r in results) == 1
    assert sum(r.outcome == BlockOutcome.ALREADY_BLOCKED for r in results) == 9
    assert executor.applied == ["198.51.100.99"]
    assert len(store) == 1


def test_concurrent_block_and_unblock_converge(make_store):
    executor = RecordingExecutor(delay_s=0.005)
    store = make_store(executor=executor)
    ip = "198.51.100.42"

    async def go():
        ops = []
        for i in range(20):
            ops.append(store.try_block(ip, "race") if i % 2 == 0 else store.try_unblock(ip))
        return await asyncio.gather(*ops)

    results = asyncio.run(go())
    assert all(r.ok for r in results)
    assert len(store) in (0, 1)
    # every successful insert is matched by at most one removal
    applied, reverted = len(executor.applied), len(executor.reverted)
    assert applied - reverted == len(store)
    assert store._locks == {}


def test_snapshot_is_immutable_copy(make_store):
    store = make_store()

    async def go():
        await store.try_block("203.0.113.1", "x")
        snap = store.snapshot()
        await store.try_block("203.0.113.2", "x")
        return snap

    snap = asyncio.run(go())
    assert snap == frozenset({"203.0.113.1"})
    with pytest.raises(AttributeError):
        snap.add("203.0.113.3")


def test_bulk_block_reports_partial_success(make_store):
    store = make_store(max_blocked=2, executor=RecordingExecutor(fail_on={"203.0.113.7"}))

    report = asyncio.run(
        store.bulk_block(["203.0.113.5", "not-an-ip", "10.0.0.1", "203.0.113.7", "203.0.113.6", "203.0.113.8"], "bulk")
    )

    assert report.requested == 6
    assert report.succeeded == 2
    assert report.failed == ["not-an-ip", "10.0.0.1", "203.0.113.7", "203.0.113.8"]
    assert store.snapshot() == frozenset({"203.0.113.5", "203.0.113.6"})


def test_clear_all_attempts_every_address(make_store):
    executor = RecordingExecutor()
    store = make_store(executor=executor)

    async def go():
        for i in range(1, 5):
            await store.try_block(f"203.0.113.{i}", "x")
        executor.fail_on.add("203.0.113.2")
        return await store.clear_all()

    report = asyncio.run(go())
    assert report.initially_blocked == 4
    assert report.unblocked == 3
    assert report.failed == ["203.0.113.2"]
    assert report.remaining == 1
    assert store.snapshot() == frozenset({"203.0.113.2"})


def test_release_expired_unblocks_old_entries(make_store):
    store = make_store()

    async def go():
        await store.try_block("203.0.113.1", "old")
        await store.try_block("203.0.113.2", "new")
        old = store._entries["203.0.113.1"]
        store._entries["203.0.113.1"] = BlockEntry(
            address=old.address, reason=old.reason, blocked_at=old.blocked_at - dt.timedelta(hours=30)
        )
        return await store.release_expired(dt.timedelta(hours=24))

    assert asyncio.run(go()) == ["203.0.113.1"]
    assert store.snapshot() == frozenset({"203.0.113.2"})


def test_status_reports_configuration(make_store):
    store = make_store(max_blocked=7)
    status = store.status()
    assert status.max_capacity == 7
    assert status.current_count == 0
    assert status.block_script == "/usr/local/bin/block_ip.sh"
    assert status.to_dict()["max_blocked"] == 7


def test_address_helpers():
    assert validate_address(" 203.0.113.4 ") == "203.0.113.4"
    nets = parse_protected(["10.0.0.0/8", "::1", "8.8.8.8"])
    assert is_protected("10.200.1.1", nets)
    assert is_protected("8.8.8.8", nets)
    assert is_protected("::1", nets)
    assert not is_protected("8.8.4.4", nets)
    assert not is_protected("2001:db8::1", nets)
    assert is_protected("::ffff:10.9.9.9", nets)
    assert not is_protected("::ffff:8.8.4.4", nets)


def test_block_result_requires_reason_only_when_rejected():
    with pytest.raises(ValueError):
        BlockResult("203.0.113.4", BlockOutcome.REJECTED)
    with pytest.raises(ValueError):
        BlockResult("203.0.113.4", BlockOutcome.BLOCKED, RejectReason.PROTECTED)
    assert BlockResult("203.0.113.4", BlockOutcome.REJECTED, RejectReason.DISABLED).ok is False
