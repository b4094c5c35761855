from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from ..agents.orchestrator import DefenseService
from ..core.mitigation import BlockOutcome, RejectReason, UnblockOutcome


router = APIRouter()


@dataclass
class AppDeps:
    service: DefenseService
    api_key: str


def get_deps(request: Request) -> AppDeps:
    return request.app.state.deps


def require_api_key(x_api_key: Optional[str] = Header(default=None), deps: AppDeps = Depends(get_deps)) -> None:
    if not x_api_key or x_api_key != deps.api_key:
        raise HTTPException(status_code=401, detail="invalid_api_key")


def _now() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


_REJECT_STATUS = {
    RejectReason.INVALID_ADDRESS: 400,
    RejectReason.PROTECTED: 403,
    RejectReason.CAPACITY_EXCEEDED: 409,
    RejectReason.DISABLED: 409,
}


class BulkBlockIn(BaseModel):
    ips: List[str] = Field(min_length=1)
    reason: str = Field(default="Bulk block via API")


@router.get("/healthz")
async def healthz():
    return {"ok": True}


@router.get("/mitigation/status", dependencies=[Depends(require_api_key)])
async def mitigation_status(deps: AppDeps = Depends(get_deps)):
    return deps.service.store.status().to_dict()


@router.get("/mitigation/blocked", dependencies=[Depends(require_api_key)])
async def list_blocked(deps: AppDeps = Depends(get_deps)):
    entries = deps.service.store.entries()
    return {"items": [e.to_dict() for e in entries], "count": len(entries), "timestamp": _now()}


@router.get("/mitigation/check/{ip}", dependencies=[Depends(require_api_key)])
async def check_ip(ip: str, deps: AppDeps = Depends(get_deps)):
    blocked = deps.service.store.is_blocked(ip)
    return {"ip": ip, "is_blocked": blocked, "status": "blocked" if blocked else "allowed", "timestamp": _now()}


# declared before /block/{ip} so "bulk" is not taken for an address
@router.post("/mitigation/block/bulk", dependencies=[Depends(require_api_key)])
async def bulk_block(body: BulkBlockIn, deps: AppDeps = Depends(get_deps)):
    report = await deps.service.store.bulk_block(body.ips, body.reason)
    return {
        "success": not report.failed,
        "total_requested": report.requested,
        "success_count": report.succeeded,
        "failed_count": len(report.failed),
        "failed_ips": report.failed,
        "timestamp": _now(),
    }


@router.post("/mitigation/block/{ip}", dependencies=[Depends(require_api_key)])
async def block_ip(ip: str, reason: str = "Manual block via API", deps: AppDeps = Depends(get_deps)):
    res = await deps.service.store.try_block(ip, reason)
    if res.outcome == BlockOutcome.REJECTED:
        reject = res.reject_reason or RejectReason.INVALID_ADDRESS
        raise HTTPException(
            status_code=_REJECT_STATUS[reject],
            detail={"ip": ip, "outcome": res.outcome.value, "reject_reason": reject.value},
        )
    return {"success": True, "ip": res.address, "outcome": res.outcome.value, "reason": reason, "timestamp": _now()}


@router.post("/mitigation/unblock/{ip}", dependencies=[Depends(require_api_key)])
async def unblock_ip(ip: str, deps: AppDeps = Depends(get_deps)):
    res = await deps.service.store.try_unblock(ip)
    if res.outcome == UnblockOutcome.REJECTED:
        raise HTTPException(status_code=400, detail={"ip": ip, "outcome": res.outcome.value, "reject_reason": "invalid_address"})
    return {"success": True, "ip": res.address, "outcome": res.outcome.value, "timestamp": _now()}


@router.post("/mitigation/clear", dependencies=[Depends(require_api_key)])
async def clear_all(deps: AppDeps = Depends(get_deps)):
    report = await deps.service.store.clear_all()
    return {
        "success": not report.failed,
        "initially_blocked": report.initially_blocked,
        "successfully_unblocked": report.unblocked,
        "failed_ips": report.failed,
        "remaining_blocked": report.remaining,
        "timestamp": _now(),
    }


@router.post("/security/scan", dependencies=[Depends(require_api_key)])
async def trigger_scan(deps: AppDeps = Depends(get_deps)):
    report = await deps.service.trigger_scan()
    return report.to_dict()


@router.post("/security/analyze/{ip}", dependencies=[Depends(require_api_key)])
async def analyze_ip(ip: str, deps: AppDeps = Depends(get_deps)):
    analysis = await deps.service.analyze(ip)
    return analysis.to_dict()


@router.post("/security/test-alert", dependencies=[Depends(require_api_key)])
async def test_alert(deps: AppDeps = Depends(get_deps)):
    return {"message": await deps.service.alert_manager.test_alert()}


@router.get("/security/status", dependencies=[Depends(require_api_key)])
async def security_status(deps: AppDeps = Depends(get_deps)):
    return {**deps.service.security_status(), "mitigation": deps.service.store.status().to_dict(), "timestamp": _now()}
