from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from ..core.classifier import ThreatTier, TierThresholds, classify, recommendation_for
from ..core.mitigation import validate_address
from ..core.traffic_source import TrafficSample
from .monitoring_agent import MonitoringAgent


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Finding:
    address: str
    packet_count: int
    tier: ThreatTier

    def to_dict(self) -> Dict[str, Any]:
        return {"ip": self.address, "packets": self.packet_count, "tier": self.tier.name}


@dataclass(frozen=True)
class AddressAnalysis:
    address: str
    packet_count: int
    tier: ThreatTier
    window_seconds: int
    analyzed_at: dt.datetime

    @property
    def recommendation(self) -> str:
        return recommendation_for(self.tier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.address,
            "packets": self.packet_count,
            "threat_level": self.tier.name,
            "window_seconds": self.window_seconds,
            "analysis_time": self.analyzed_at.isoformat(),
            "recommendation": self.recommendation,
        }


@dataclass
class AnalysisAgent:
    monitoring: MonitoringAgent
    thresholds: TierThresholds

    def classify_samples(self, samples: List[TrafficSample]) -> List[Finding]:
        """
        Every sample becomes a finding, NORMAL included; samples with a
        malformed source are dropped with a warning.
        """
        out: List[Finding] = []
        for s in samples:
            try:
                ip = validate_address(s.source_address)
            except ValueError:
                logger.warning("sample_invalid_source", extra={"ip": s.source_address, "packets": s.packet_count})
                continue
            out.append(Finding(address=ip, packet_count=int(s.packet_count), tier=classify(s.packet_count, self.thresholds)))
        return out

    async def analyze_address(self, address: str, window: dt.timedelta) -> AddressAnalysis:
        ip = validate_address(address)
        packets = await self.monitoring.measure(ip, window)
        tier = classify(packets, self.thresholds)
        logger.info("address_analyzed", extra={"ip": ip, "packets": packets, "tier": tier.name})
        return AddressAnalysis(
            address=ip,
            packet_count=packets,
            tier=tier,
            window_seconds=int(window.total_seconds()),
            analyzed_at=dt.datetime.now(dt.UTC),
        )
