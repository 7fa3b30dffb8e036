from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

CLUSTER_SOURCE_DIGEST = "digest"
CLUSTER_SOURCE_RESEARCH = "research"


@dataclass(frozen=True)
class RawMessage:
    """
    Ingested message before scoring. The canonical hash drives strict dedup.
    """
    id: str
    canonical_hash: str
    text: str = ""
    channel_id: Optional[str] = None
    tg_date: Optional[datetime] = None


@dataclass(frozen=True)
class Item:
    """
    Scored content item. Immutable once scored.
    """
    id: str
    raw_message_id: str
    topic: str
    summary: str
    importance_score: float
    embedding: Optional[List[float]] = None
    tg_date: Optional[datetime] = None


@dataclass(frozen=True)
class EvidenceSource:
    """
    External source corroborating an item.
    agreement_score is in [0, 1]; higher means stronger corroboration.
    """
    url: str
    agreement_score: float
    is_contradiction: bool = False
    domain: str = ""
    title: str = ""


@dataclass(frozen=True)
class Link:
    url: str
    title: str = ""
    domain: str = ""


@dataclass
class Cluster:
    """
    Group of items covering the same story within one digest window.
    """
    id: str
    window_start: datetime
    window_end: datetime
    topic: str
    source: str = CLUSTER_SOURCE_DIGEST
    created_at: Optional[datetime] = None
    items: List[Item] = field(default_factory=list)


@dataclass(frozen=True)
class ClusterMembership:
    cluster_id: str
    item_id: str
