import pytest

from core.entities import EvidenceSource
from core.schemas import ClusteringConfig
from processing.evidence import (
    calculate_boosted_similarity,
    calculate_evidence_boost,
    normalize_url_for_dedup,
)

CFG = ClusteringConfig(evidence_boost=0.15, evidence_min_agreement=0.5)


def ev(url: str, score: float) -> EvidenceSource:
    return EvidenceSource(url=url, agreement_score=score)


def test_normalize_url_strips_www_host_prefix():
    assert normalize_url_for_dedup("https://www.reuters.com/a") == "https://reuters.com/a"
    assert normalize_url_for_dedup("https://WWW.bbc.co.uk/x?y=1") == "https://bbc.co.uk/x?y=1"
    assert normalize_url_for_dedup("https://reuters.com/a") == "https://reuters.com/a"
    assert normalize_url_for_dedup("") == ""


def test_no_boost_without_evidence():
    assert calculate_evidence_boost("a", "b", None, CFG) == 0.0
    assert calculate_evidence_boost("a", "b", {"a": [ev("https://x.com/1", 0.9)]}, CFG) == 0.0


def test_no_boost_below_min_agreement():
    evidence = {
        "a": [ev("https://x.com/1", 0.4)],
        "b": [ev("https://x.com/1", 0.9)],
    }
    assert calculate_evidence_boost("a", "b", evidence, CFG) == 0.0


def test_no_boost_without_shared_url():
    evidence = {
        "a": [ev("https://x.com/1", 0.9)],
        "b": [ev("https://y.com/2", 0.9)],
    }
    assert calculate_evidence_boost("a", "b", evidence, CFG) == 0.0


def test_shared_source_boost_uses_weaker_agreement():
    evidence = {
        "a": [ev("https://www.x.com/1", 0.8)],
        "b": [ev("https://x.com/1", 0.6)],
    }
    assert calculate_evidence_boost("a", "b", evidence, CFG) == pytest.approx(0.6 * 0.15)


def test_strongest_shared_source_wins_and_boost_is_capped():
    evidence = {
        "a": [ev("https://x.com/1", 0.7), ev("https://y.com/2", 1.0)],
        "b": [ev("https://x.com/1", 0.9), ev("https://y.com/2", 1.0)],
    }
    boost = calculate_evidence_boost("a", "b", evidence, CFG)
    assert boost == pytest.approx(0.15)
    assert 0.0 <= boost <= CFG.evidence_boost


def test_boosted_similarity_is_additive():
    evidence = {
        "a": [ev("https://x.com/1", 1.0)],
        "b": [ev("https://x.com/1", 1.0)],
    }
    boosted = calculate_boosted_similarity("a", "b", [1.0, 0.0], [0.0, 1.0], evidence, CFG)
    assert boosted == pytest.approx(0.15)


def test_boost_disabled():
    cfg = ClusteringConfig(evidence_enabled=False)
    evidence = {
        "a": [ev("https://x.com/1", 1.0)],
        "b": [ev("https://x.com/1", 1.0)],
    }
    assert calculate_boosted_similarity("a", "b", [1.0, 0.0], [0.0, 1.0], evidence, cfg) == pytest.approx(0.0)
