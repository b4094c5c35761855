from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from ..core.alerts import AlertDispatcher
from ..core.classifier import ThreatTier
from ..core.errors import ExecutionError
from ..core.mitigation import BlockOutcome, MitigationStore
from .analysis_agent import Finding


logger = logging.getLogger(__name__)


@dataclass
class ResponseAgent:
    store: MitigationStore
    alerts: AlertDispatcher
    auto_mitigate_tier: ThreatTier = ThreatTier.HIGH
    auto_block: bool = True

    async def respond(self, findings: List[Finding]) -> List[Dict[str, Any]]:
        actionable = [f for f in findings if f.tier > ThreatTier.NORMAL]
        return list(await asyncio.gather(*(self._handle(f) for f in actionable)))

    async def _handle(self, f: Finding) -> Dict[str, Any]:
        logger.warning("threat_detected", extra={"ip": f.address, "tier": f.tier.name, "packets": f.packet_count})
        self.alerts.threat(f.address, f.packet_count, f.tier)

        action: Dict[str, Any] = {"type": "alert", **f.to_dict()}
        if f.tier < self.auto_mitigate_tier:
            return action
        if not self.auto_block:
            action["mitigation"] = "auto_block_disabled"
            return action

        reason = f"{f.tier.name} threat detected: {f.packet_count} packets in scan window"
        action["type"] = "block_ip"
        try:
            res = await self.store.try_block(f.address, reason)
        except ExecutionError as e:
            action["mitigation"] = "failed"
            action["error"] = str(e)
            self.alerts.notify(
                "Automated mitigation failed",
                f"Blocking {f.address} ({f.tier.name}, {f.packet_count:,} packets) failed: {e}. "
                "The address is NOT blocked.",
                level="warning",
            )
            return action

        action["mitigation"] = res.outcome.value
        if res.outcome == BlockOutcome.BLOCKED:
            logger.info("mitigation_applied", extra={"ip": f.address, "tier": f.tier.name})
            self.alerts.notify(
                "Automated mitigation applied",
                f"IP {f.address} has been automatically blocked due to {f.tier.name} threat level. "
                f"Traffic volume: {f.packet_count:,} packets. Review and unblock if necessary.",
            )
        elif res.outcome == BlockOutcome.REJECTED:
            reject = res.reject_reason.value if res.reject_reason else "unknown"
            action["reject_reason"] = reject
            logger.warning(
                "mitigation_rejected",
                extra={"ip": f.address, "tier": f.tier.name, "reject_reason": reject},
            )
            self.alerts.notify(
                "Automated mitigation rejected",
                f"Blocking {f.address} ({f.tier.name}, {f.packet_count:,} packets) was rejected: "
                f"{reject}.",
                level="warning",
            )
        return action
