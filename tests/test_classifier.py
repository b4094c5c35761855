import pytest

from floodgate.core.classifier import ThreatTier, TierThresholds, classify, recommendation_for


def test_default_tier_boundaries():
    t = TierThresholds()
    assert classify(0, t) == ThreatTier.NORMAL
    assert classify(999, t) == ThreatTier.NORMAL
    assert classify(1_000, t) == ThreatTier.LOW
    assert classify(4_999, t) == ThreatTier.LOW
    assert classify(5_000, t) == ThreatTier.MEDIUM
    assert classify(15_000, t) == ThreatTier.HIGH
    assert classify(20_000, t) == ThreatTier.HIGH
    assert classify(50_000, t) == ThreatTier.CRITICAL
    assert classify(2**64 - 1, t) == ThreatTier.CRITICAL


def test_classify_is_monotonic_and_deterministic():
    t = TierThresholds(low=10, medium=20, high=30, critical=40)
    prev = ThreatTier.NORMAL
    for n in range(0, 60):
        tier = classify(n, t)
        assert tier >= prev
        assert classify(n, t) == tier
        prev = tier


def test_equal_thresholds_pick_highest_tier():
    t = TierThresholds(low=100, medium=100, high=100, critical=100)
    assert classify(99, t) == ThreatTier.NORMAL
    assert classify(100, t) == ThreatTier.CRITICAL


def test_unordered_thresholds_rejected():
    with pytest.raises(ValueError):
        TierThresholds(low=5_000, medium=1_000)
    with pytest.raises(ValueError):
        TierThresholds(low=-1)


def test_tier_parse_and_order():
    assert ThreatTier.parse("high") == ThreatTier.HIGH
    assert ThreatTier.parse(" Critical ") == ThreatTier.CRITICAL
    assert ThreatTier.LOW < ThreatTier.MEDIUM < ThreatTier.HIGH
    with pytest.raises(ValueError):
        ThreatTier.parse("severe")


def test_every_tier_has_a_recommendation():
    for tier in ThreatTier:
        assert recommendation_for(tier)
    assert "block" in recommendation_for(ThreatTier.CRITICAL).lower()
