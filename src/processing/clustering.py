"""
Greedy single-pass story clustering.

For every canonical topic group, each still-unassigned item anchors a new
cluster and claims every unassigned candidate whose (evidence-boosted) cosine
similarity to the anchor exceeds the threshold. Claimed items cannot be
re-claimed by later anchors, so the result depends on input order: this is
single-linkage from the anchor's point of view, not a transitive closure.
Clusters with more than two members must pass a coherence check or collapse
back to the anchor alone.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Set, Tuple

from core.entities import Item
from core.schemas import ClusteringConfig
from processing.evidence import EvidenceMap, calculate_boosted_similarity
from processing.similarity import cosine_similarity
from processing.topics import canonicalize_topic, normalize_topic

logger = logging.getLogger(__name__)

CLUSTER_MAX_ITEMS_LIMIT = 500
DEFAULT_COHERENCE_THRESHOLD = 0.7
PERFECT_SIMILARITY = 1.0


@dataclass
class ClusterBuildContext:
    """
    Private state of one clustering run. Never shared between runs.
    """
    topic_index: Dict[str, str]
    topic_groups: Dict[str, List[Item]]
    embeddings: Dict[str, List[float]]
    all_items: List[Item]
    cfg: ClusteringConfig
    evidence_map: Optional[EvidenceMap] = None
    assigned: Set[str] = field(default_factory=set)


def limit_cluster_items(items: List[Item], limit: int = CLUSTER_MAX_ITEMS_LIMIT) -> List[Item]:
    if limit > 0 and len(items) > limit:
        logger.warning(
            "Too many items to cluster, limiting to first items",
            extra={"count": len(items), "limit": limit},
        )
        return items[:limit]
    return items


def build_topic_grouping(items: List[Item]) -> Tuple[Dict[str, str], Dict[str, List[Item]]]:
    """
    Returns (item_id -> canonical topic, canonical topic -> items).

    Items are visited in input order, so both canonical labels and group
    order are reproducible for the same input.
    """
    topic_index: Dict[str, str] = {}
    topic_groups: Dict[str, List[Item]] = {}
    canonical_topics: List[str] = []

    for item in items:
        normalized = normalize_topic(item.topic)
        canonical = canonicalize_topic(normalized, canonical_topics)
        if canonical == normalized and canonical not in canonical_topics:
            canonical_topics.append(canonical)

        topic_index[item.id] = canonical
        topic_groups.setdefault(canonical, []).append(item)

    return topic_index, topic_groups


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def within_cluster_window(
    a: Optional[datetime],
    b: Optional[datetime],
    window: timedelta,
) -> bool:
    # A missing timestamp on either side always passes
    if a is None or b is None:
        return True
    return abs(_as_utc(a) - _as_utc(b)) <= window


def cluster_threshold(topic_a: str, topic_b: str, cfg: ClusteringConfig) -> float:
    if topic_a != topic_b:
        return cfg.cross_topic_threshold
    return cfg.similarity_threshold


def _cluster_window(cfg: ClusteringConfig) -> Optional[timedelta]:
    if cfg.cluster_window_hours > 0:
        return timedelta(hours=cfg.cluster_window_hours)
    return None


def should_add_to_cluster(
    anchor: Item,
    candidate: Item,
    anchor_embedding: List[float],
    ctx: ClusterBuildContext,
) -> bool:
    if candidate.id == anchor.id or candidate.id in ctx.assigned:
        return False

    candidate_embedding = ctx.embeddings.get(candidate.id)
    if not candidate_embedding:
        return False

    topic_a = ctx.topic_index.get(anchor.id, "")
    topic_b = ctx.topic_index.get(candidate.id, "")
    if not ctx.cfg.cross_topic_enabled and topic_a != topic_b:
        return False

    window = _cluster_window(ctx.cfg)
    if window is not None and not within_cluster_window(anchor.tg_date, candidate.tg_date, window):
        return False

    similarity = calculate_boosted_similarity(
        anchor.id,
        candidate.id,
        anchor_embedding,
        candidate_embedding,
        ctx.evidence_map,
        ctx.cfg,
    )
    return similarity > cluster_threshold(topic_a, topic_b, ctx.cfg)


def find_cluster_items(anchor: Item, group_items: List[Item], ctx: ClusterBuildContext) -> List[Item]:
    """
    Anchor plus every candidate it claims. Claimed items are marked assigned
    immediately.
    """
    ctx.assigned.add(anchor.id)
    members = [anchor]

    anchor_embedding = ctx.embeddings.get(anchor.id)
    if not anchor_embedding:
        return members

    candidates = ctx.all_items if ctx.cfg.cross_topic_enabled else group_items

    for candidate in candidates:
        if should_add_to_cluster(anchor, candidate, anchor_embedding, ctx):
            members.append(candidate)
            ctx.assigned.add(candidate.id)

    return members


def calculate_coherence(items: List[Item], embeddings: Dict[str, List[float]]) -> float:
    """
    Average pairwise unboosted cosine similarity. Pairs missing an embedding
    are skipped rather than counted as zero.
    """
    if len(items) < 2:
        return PERFECT_SIMILARITY

    total = 0.0
    count = 0
    for i, item_i in enumerate(items):
        emb_i = embeddings.get(item_i.id)
        if not emb_i:
            continue
        for item_j in items[i + 1:]:
            emb_j = embeddings.get(item_j.id)
            if not emb_j:
                continue
            total += cosine_similarity(emb_i, emb_j)
            count += 1

    if count == 0:
        return 0.0
    return total / count


def validate_cluster_coherence(members: List[Item], ctx: ClusterBuildContext) -> List[Item]:
    """
    Collapse an incoherent cluster of more than two members to its anchor,
    releasing the others for later anchors.
    """
    if len(members) <= 2:
        return members

    coherence = calculate_coherence(members, ctx.embeddings)
    if coherence >= ctx.cfg.coherence_threshold:
        return members

    logger.debug(
        "Rejecting cluster due to low coherence",
        extra={"coherence": round(coherence, 4), "size": len(members)},
    )
    for item in members[1:]:
        ctx.assigned.discard(item.id)

    return members[:1]


def sort_cluster_items(items: List[Item]) -> List[Item]:
    """Representative first: highest importance, then longest summary."""
    return sorted(items, key=lambda it: (-it.importance_score, -len(it.summary or "")))


def build_cluster(anchor: Item, group_items: List[Item], ctx: ClusterBuildContext) -> List[Item]:
    members = find_cluster_items(anchor, group_items, ctx)
    return validate_cluster_coherence(members, ctx)


def build_clusters(ctx: ClusterBuildContext, min_cluster_size: int = 2) -> Iterator[Tuple[str, List[Item]]]:
    """
    Yields (canonical topic, members) for every cluster meeting the minimum
    size, in topic-group order. A failure on one anchor is logged and the
    anchor is dropped; the rest of the window still clusters.
    """
    for topic, group_items in ctx.topic_groups.items():
        for anchor in group_items:
            if anchor.id in ctx.assigned:
                continue

            assigned_before = set(ctx.assigned)
            try:
                members = build_cluster(anchor, group_items, ctx)
            except Exception:
                logger.exception(
                    "Failed to build cluster for item",
                    extra={"item_id": anchor.id, "topic": topic},
                )
                ctx.assigned = assigned_before | {anchor.id}
                continue

            if len(members) < min_cluster_size:
                continue

            yield topic, members
