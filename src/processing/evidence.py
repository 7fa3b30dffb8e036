"""
Similarity boost from shared corroborating evidence.

Two items citing the same high-agreement source are very likely about the same
event even when their embeddings diverge (different language or angle).
"""
from typing import Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from core.entities import EvidenceSource
from core.schemas import ClusteringConfig
from processing.similarity import cosine_similarity

EvidenceMap = Mapping[str, List[EvidenceSource]]

WWW_PREFIX = "www."


def normalize_domain(domain: str) -> str:
    if domain[:len(WWW_PREFIX)].lower() == WWW_PREFIX:
        return domain[len(WWW_PREFIX):]
    return domain


def normalize_url_for_dedup(raw_url: str) -> str:
    """Drop a leading www. from the host so mirror hosts compare equal."""
    if not raw_url:
        return ""
    if WWW_PREFIX not in raw_url.lower():
        return raw_url

    try:
        parts = urlsplit(raw_url)
    except ValueError:
        return raw_url

    netloc = parts.netloc
    userinfo, sep, host = netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{normalize_domain(host)}"

    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def build_evidence_url_map(
    evidence: Sequence[EvidenceSource],
    min_agreement: float,
) -> Dict[str, float]:
    url_map: Dict[str, float] = {}
    for ev in evidence:
        if ev.agreement_score >= min_agreement:
            url_map[normalize_url_for_dedup(ev.url)] = ev.agreement_score
    return url_map


def find_max_shared_agreement(
    evidence_b: Sequence[EvidenceSource],
    evidence_a_urls: Mapping[str, float],
    min_agreement: float,
) -> float:
    """Best min(score_a, score_b) over sources both items cite."""
    max_agreement = 0.0
    for ev in evidence_b:
        if ev.agreement_score < min_agreement:
            continue
        score_a = evidence_a_urls.get(normalize_url_for_dedup(ev.url))
        if score_a is None:
            continue
        max_agreement = max(max_agreement, min(score_a, ev.agreement_score))
    return max_agreement


def calculate_evidence_boost(
    item_a_id: str,
    item_b_id: str,
    evidence_map: Optional[EvidenceMap],
    cfg: ClusteringConfig,
) -> float:
    """
    Additive bonus in [0, cfg.evidence_boost]: the strongest shared agreement
    scaled by the cap.
    """
    if not evidence_map:
        return 0.0

    evidence_a = evidence_map.get(item_a_id) or []
    evidence_b = evidence_map.get(item_b_id) or []
    if not evidence_a or not evidence_b:
        return 0.0

    evidence_a_urls = build_evidence_url_map(evidence_a, cfg.evidence_min_agreement)
    if not evidence_a_urls:
        return 0.0

    max_agreement = find_max_shared_agreement(
        evidence_b, evidence_a_urls, cfg.evidence_min_agreement
    )
    if max_agreement <= 0:
        return 0.0

    boost = max_agreement * cfg.evidence_boost
    return min(max(boost, 0.0), cfg.evidence_boost)


def calculate_boosted_similarity(
    item_a_id: str,
    item_b_id: str,
    emb_a: Sequence[float],
    emb_b: Sequence[float],
    evidence_map: Optional[EvidenceMap],
    cfg: ClusteringConfig,
) -> float:
    similarity = cosine_similarity(emb_a, emb_b)

    if cfg.evidence_enabled and evidence_map:
        similarity += calculate_evidence_boost(item_a_id, item_b_id, evidence_map, cfg)

    return similarity
