import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

import pytest

from core.entities import EvidenceSource, Item, Link

WINDOW_START = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)

# Unit vectors with known pairwise cosines: A.B = A.C = 0.9, B.C = 0.62
VEC_A = [1.0, 0.0, 0.0]
VEC_B = [0.9, math.sqrt(0.19), 0.0]
VEC_C = [0.9, -math.sqrt(0.19), 0.0]
VEC_ORTHOGONAL = [0.0, 0.0, 1.0]


def make_item(
    item_id: str,
    topic: str = "Tech",
    embedding: Optional[List[float]] = None,
    importance: float = 0.5,
    summary: str = "",
    tg_date: Optional[datetime] = None,
) -> Item:
    return Item(
        id=item_id,
        raw_message_id=f"msg-{item_id}",
        topic=topic,
        summary=summary or f"Summary of {item_id}",
        importance_score=importance,
        embedding=embedding,
        tg_date=tg_date,
    )


class FakeRepository:
    """In-memory stand-in for the cluster repository."""

    def __init__(self):
        self.settings: Dict[str, Any] = {}
        self.evidence: Dict[str, List[EvidenceSource]] = {}
        self.embeddings: Dict[str, List[float]] = {}
        self.links: Dict[str, List[Link]] = {}
        self.clusters: Dict[str, Dict[str, Any]] = {}
        self.memberships: List[tuple] = []
        self.deleted: List[tuple] = []
        self.fail_membership_for: Set[str] = set()
        self.fail_delete = False
        self.fail_settings = False
        self._next_id = 0

    async def delete_clusters_for_window_and_source(self, start, end, source) -> None:
        self.deleted.append((start, end, source))
        if self.fail_delete:
            raise RuntimeError("delete failed")
        stale = [
            cid for cid, c in self.clusters.items()
            if c["start"] == start and c["end"] == end and c["source"] == source
        ]
        for cid in stale:
            del self.clusters[cid]
        self.memberships = [m for m in self.memberships if m[0] not in stale]

    async def create_cluster_with_source(self, start, end, topic, source) -> str:
        self._next_id += 1
        cluster_id = f"cluster-{self._next_id}"
        self.clusters[cluster_id] = {"start": start, "end": end, "topic": topic, "source": source}
        return cluster_id

    async def add_to_cluster(self, cluster_id: str, item_id: str) -> None:
        if item_id in self.fail_membership_for:
            raise RuntimeError(f"insert failed for {item_id}")
        self.memberships.append((cluster_id, item_id))

    async def get_setting(self, key: str) -> Any:
        if self.fail_settings:
            raise RuntimeError("settings unavailable")
        return self.settings.get(key)

    async def get_evidence_for_items(self, item_ids: Sequence[str]) -> Dict[str, List[EvidenceSource]]:
        return {i: self.evidence[i] for i in item_ids if i in self.evidence}

    async def get_item_embedding(self, item_id: str) -> Optional[List[float]]:
        return self.embeddings.get(item_id)

    async def get_links_for_message(self, raw_message_id: str) -> List[Link]:
        return self.links.get(raw_message_id, [])

    def member_sets(self) -> List[Set[str]]:
        grouped: Dict[str, Set[str]] = {}
        for cluster_id, item_id in self.memberships:
            grouped.setdefault(cluster_id, set()).add(item_id)
        return sorted(grouped.values(), key=sorted)


class FakeLLM:
    def __init__(self, topic: str = "LLM Topic", error: Optional[Exception] = None):
        self.topic = topic
        self.error = error
        self.calls: List[List[Item]] = []

    async def generate_cluster_topic(self, items, language: str = "", model: str = "") -> str:
        self.calls.append(list(items))
        if self.error is not None:
            raise self.error
        return self.topic


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()
