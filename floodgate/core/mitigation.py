from __future__ import annotations

import asyncio
import datetime as dt
import ipaddress
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .errors import ExecutionError, ValidationError
from .executor import EnforcementAction


logger = logging.getLogger(__name__)


IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


DEFAULT_PROTECTED: Tuple[str, ...] = (
    "127.0.0.0/8",
    "::1",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "0.0.0.0",
    "::",
    "fc00::/7",
    "fe80::/10",
)


def validate_address(address: str) -> str:
    """
    Parse a dotted-quad or colon-hex address and return its canonical text form.

    Canonical form keeps `2001:db8::1` and `2001:0db8:0:0::1` from becoming two
    store entries for the same host.
    """
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("empty address")
    try:
        return str(ipaddress.ip_address(address.strip()))
    except ValueError as e:
        raise ValidationError(f"invalid ip address: {address!r}") from e


def parse_protected(entries: Iterable[str]) -> Tuple[IPNetwork, ...]:
    out: List[IPNetwork] = []
    for e in entries:
        # bare addresses become /32 or /128 networks
        out.append(ipaddress.ip_network(str(e).strip(), strict=False))
    return tuple(out)


def is_protected(address: str, protected: Sequence[IPNetwork]) -> bool:
    ip = ipaddress.ip_address(address)
    # ::ffff:a.b.c.d is matched against the IPv4 ranges
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == net.version and ip in net for net in protected)


class BlockOutcome(str, Enum):
    BLOCKED = "blocked"
    ALREADY_BLOCKED = "already_blocked"
    REJECTED = "rejected"


class UnblockOutcome(str, Enum):
    UNBLOCKED = "unblocked"
    NOT_BLOCKED = "not_blocked"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    CAPACITY_EXCEEDED = "capacity_exceeded"
    PROTECTED = "protected"
    INVALID_ADDRESS = "invalid_address"
    DISABLED = "disabled"


@dataclass(frozen=True)
class BlockEntry:
    address: str
    reason: str
    blocked_at: dt.datetime

    def to_dict(self) -> Dict[str, str]:
        return {"ip": self.address, "reason": self.reason, "blocked_at": self.blocked_at.isoformat()}


@dataclass(frozen=True)
class BlockResult:
    address: str
    outcome: BlockOutcome
    reject_reason: Optional[RejectReason] = None

    def __post_init__(self) -> None:
        if (self.outcome == BlockOutcome.REJECTED) != (self.reject_reason is not None):
            raise ValueError("reject_reason is required for, and only for, rejected outcomes")

    @property
    def ok(self) -> bool:
        return self.outcome in (BlockOutcome.BLOCKED, BlockOutcome.ALREADY_BLOCKED)


@dataclass(frozen=True)
class UnblockResult:
    address: str
    outcome: UnblockOutcome

    @property
    def ok(self) -> bool:
        return self.outcome != UnblockOutcome.REJECTED


@dataclass(frozen=True)
class MitigationStatus:
    enabled: bool
    dry_run: bool
    current_count: int
    max_capacity: int
    block_script: str
    unblock_script: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "enabled": self.enabled,
            "dry_run": self.dry_run,
            "blocked_count": self.current_count,
            "max_blocked": self.max_capacity,
            "block_script": self.block_script,
            "unblock_script": self.unblock_script,
        }


@dataclass
class BulkBlockReport:
    requested: int = 0
    succeeded: int = 0
    failed: List[str] = field(default_factory=list)


@dataclass
class ClearReport:
    initially_blocked: int = 0
    unblocked: int = 0
    failed: List[str] = field(default_factory=list)
    remaining: int = 0


@dataclass
class MitigationConfig:
    enabled: bool = True
    max_blocked: int = 100
    protected: Tuple[str, ...] = DEFAULT_PROTECTED


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class MitigationStore:
    """
    Registry of blocked addresses, owned by one service instance.

    All state lives on the event loop. Operations on the same address are
    serialized by a per-address lock; unrelated addresses never wait on each
    other. Capacity is enforced by reserving a slot before the (slow)
    enforcement action runs, so concurrent blocks of distinct addresses can
    never push the store past `max_blocked`.
    """

    def __init__(self, cfg: MitigationConfig, executor: EnforcementAction):
        if cfg.max_blocked < 0:
            raise ValueError("max_blocked must be >= 0")
        self.cfg = cfg
        self.executor = executor
        self._protected = parse_protected(cfg.protected)
        self._entries: Dict[str, BlockEntry] = {}
        self._pending: Set[str] = set()
        self._locks: Dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def _address_lock(self, address: str) -> AsyncIterator[None]:
        kl = self._locks.get(address)
        if kl is None:
            kl = self._locks[address] = _KeyLock()
        kl.users += 1
        try:
            async with kl.lock:
                yield
        finally:
            kl.users -= 1
            if kl.users == 0:
                self._locks.pop(address, None)

    async def try_block(self, address: str, reason: str) -> BlockResult:
        try:
            ip = validate_address(address)
        except ValidationError:
            logger.warning("block_rejected_invalid_address", extra={"ip": address})
            return BlockResult(str(address), BlockOutcome.REJECTED, RejectReason.INVALID_ADDRESS)

        # protected addresses never reach the store, so this cannot shadow ALREADY_BLOCKED
        if is_protected(ip, self._protected):
            logger.warning("block_rejected_protected", extra={"ip": ip, "reason": reason})
            return BlockResult(ip, BlockOutcome.REJECTED, RejectReason.PROTECTED)

        if not self.cfg.enabled:
            logger.info("mitigation_disabled_skip_block", extra={"ip": ip})
            return BlockResult(ip, BlockOutcome.REJECTED, RejectReason.DISABLED)

        async with self._address_lock(ip):
            if ip in self._entries:
                logger.info("already_blocked", extra={"ip": ip})
                return BlockResult(ip, BlockOutcome.ALREADY_BLOCKED)

            # no await between the check and the reservation
            if len(self._entries) + len(self._pending) >= self.cfg.max_blocked:
                logger.warning("block_rejected_capacity", extra={"ip": ip, "max_blocked": self.cfg.max_blocked})
                return BlockResult(ip, BlockOutcome.REJECTED, RejectReason.CAPACITY_EXCEEDED)
            self._pending.add(ip)

            try:
                await self.executor.apply(ip)
            except ExecutionError as e:
                logger.error(
                    "block_failed",
                    extra={"ip": ip, "err": str(e), "exit_code": e.exit_code, "output": e.output},
                )
                raise
            else:
                self._entries[ip] = BlockEntry(address=ip, reason=reason, blocked_at=dt.datetime.now(dt.UTC))
            finally:
                self._pending.discard(ip)

        logger.info("blocked", extra={"ip": ip, "reason": reason, "blocked_count": len(self._entries)})
        return BlockResult(ip, BlockOutcome.BLOCKED)

    async def try_unblock(self, address: str) -> UnblockResult:
        try:
            ip = validate_address(address)
        except ValidationError:
            logger.warning("unblock_rejected_invalid_address", extra={"ip": address})
            return UnblockResult(str(address), UnblockOutcome.REJECTED)

        async with self._address_lock(ip):
            if ip not in self._entries:
                logger.info("not_blocked", extra={"ip": ip})
                return UnblockResult(ip, UnblockOutcome.NOT_BLOCKED)
            try:
                await self.executor.revert(ip)
            except ExecutionError as e:
                logger.error(
                    "unblock_failed",
                    extra={"ip": ip, "err": str(e), "exit_code": e.exit_code, "output": e.output},
                )
                raise
            del self._entries[ip]

        logger.info("unblocked", extra={"ip": ip, "blocked_count": len(self._entries)})
        return UnblockResult(ip, UnblockOutcome.UNBLOCKED)

    async def bulk_block(self, addresses: Sequence[str], reason: str) -> BulkBlockReport:
        report = BulkBlockReport(requested=len(addresses))
        for address in addresses:
            try:
                res = await self.try_block(address, reason)
            except ExecutionError:
                report.failed.append(address)
                continue
            if res.ok:
                report.succeeded += 1
            else:
                report.failed.append(address)
        logger.info("bulk_block_done", extra={"requested": report.requested, "succeeded": report.succeeded})
        return report

    async def clear_all(self) -> ClearReport:
        targets = self.snapshot()
        report = ClearReport(initially_blocked=len(targets))
        logger.warning("clear_all_requested", extra={"blocked_count": len(targets)})
        for address in sorted(targets):
            try:
                res = await self.try_unblock(address)
            except ExecutionError:
                report.failed.append(address)
                continue
            if res.ok:
                report.unblocked += 1
            else:
                report.failed.append(address)
        report.remaining = len(self._entries)
        logger.info(
            "clear_all_done",
            extra={"unblocked": report.unblocked, "initially_blocked": report.initially_blocked, "remaining": report.remaining},
        )
        return report

    async def release_expired(self, max_age: dt.timedelta) -> List[str]:
        cutoff = dt.datetime.now(dt.UTC) - max_age
        released: List[str] = []
        for entry in self.entries():
            if entry.blocked_at > cutoff:
                continue
            try:
                res = await self.try_unblock(entry.address)
            except ExecutionError:
                continue
            if res.outcome == UnblockOutcome.UNBLOCKED:
                released.append(entry.address)
        if released:
            logger.info("auto_unblocked", extra={"ips": released})
        return released

    def snapshot(self) -> FrozenSet[str]:
        return frozenset(self._entries)

    def entries(self) -> List[BlockEntry]:
        return sorted(self._entries.values(), key=lambda e: e.blocked_at)

    def is_blocked(self, address: str) -> bool:
        try:
            return validate_address(address) in self._entries
        except ValidationError:
            return False

    def __len__(self) -> int:
        return len(self._entries)

    def status(self) -> MitigationStatus:
        return MitigationStatus(
            enabled=self.cfg.enabled,
            dry_run=self.executor.dry_run,
            current_count=len(self._entries),
            max_capacity=self.cfg.max_blocked,
            block_script=self.executor.block_script,
            unblock_script=self.executor.unblock_script,
        )
