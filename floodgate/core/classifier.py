from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict


class ThreatTier(IntEnum):
    NORMAL = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def parse(cls, value: str) -> "ThreatTier":
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown threat tier: {value!r}") from None

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class TierThresholds:
    """Minimum packet count per evaluation window for each tier."""

    low: int = 1_000
    medium: int = 5_000
    high: int = 15_000
    critical: int = 50_000

    def __post_init__(self) -> None:
        if not (0 <= self.low <= self.medium <= self.high <= self.critical):
            raise ValueError("thresholds must be ordered: 0 <= low <= medium <= high <= critical")

    def as_dict(self) -> Dict[str, int]:
        return {"low": self.low, "medium": self.medium, "high": self.high, "critical": self.critical}


def classify(packet_count: int, thresholds: TierThresholds) -> ThreatTier:
    if packet_count >= thresholds.critical:
        return ThreatTier.CRITICAL
    if packet_count >= thresholds.high:
        return ThreatTier.HIGH
    if packet_count >= thresholds.medium:
        return ThreatTier.MEDIUM
    if packet_count >= thresholds.low:
        return ThreatTier.LOW
    return ThreatTier.NORMAL


_RECOMMENDATIONS = {
    ThreatTier.CRITICAL: "Immediate action required: block the address and investigate the source.",
    ThreatTier.HIGH: "High priority: monitor closely and consider blocking.",
    ThreatTier.MEDIUM: "Moderate risk: increase monitoring for this address.",
    ThreatTier.LOW: "Low risk: continue monitoring.",
    ThreatTier.NORMAL: "Normal traffic. No action required.",
}


def recommendation_for(tier: ThreatTier) -> str:
    return _RECOMMENDATIONS[tier]
