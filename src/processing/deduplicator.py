"""
Duplicate detection for newly ingested messages.

Two strategies are available, chosen once per deployment:
- strict: exact canonical-hash match against already processed messages
- semantic: embedding similarity against recent items
"""
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from core.entities import Item, RawMessage
from processing.similarity import cosine_similarity

logger = logging.getLogger(__name__)

DEDUP_MODE_SEMANTIC = "semantic"
DEDUP_MODE_STRICT = "strict"

DEFAULT_DEDUP_WINDOW = timedelta(days=7)


class DedupError(Exception):
    """Raised when the backing store cannot answer a duplicate check."""


class DedupRepository(Protocol):
    async def find_strict_duplicate(self, canonical_hash: str, message_id: str) -> Optional[str]:
        ...

    async def find_similar_item(
        self,
        embedding: Sequence[float],
        threshold: float,
        min_created_at: datetime,
    ) -> Optional[str]:
        ...


def compute_content_hash(text: str) -> str:
    """SHA-256 over lowercased text with collapsed whitespace."""
    normalized = re.sub(r"\s+", " ", text.strip().lower())
    return hashlib.sha256(normalized.encode()).hexdigest()


class Deduplicator(ABC):
    """
    Decides whether an incoming message duplicates something already accepted.
    """

    name: str

    @abstractmethod
    async def is_duplicate(
        self,
        message: RawMessage,
        embedding: Optional[Sequence[float]],
    ) -> Tuple[bool, Optional[str]]:
        """
        Returns (is_duplicate, original_id).
        Raises DedupError when storage fails.
        """
        raise NotImplementedError


class StrictDeduplicator(Deduplicator):
    name = DEDUP_MODE_STRICT

    def __init__(self, repository: DedupRepository):
        self.repository = repository

    async def is_duplicate(
        self,
        message: RawMessage,
        embedding: Optional[Sequence[float]] = None,
    ) -> Tuple[bool, Optional[str]]:
        try:
            original_id = await self.repository.find_strict_duplicate(
                message.canonical_hash, message.id
            )
        except Exception as e:
            raise DedupError(f"check strict duplicate: {e}") from e

        if original_id:
            return True, original_id
        return False, None


class SemanticDeduplicator(Deduplicator):
    name = DEDUP_MODE_SEMANTIC

    def __init__(
        self,
        repository: DedupRepository,
        threshold: float,
        window: Optional[timedelta] = None,
    ):
        self.repository = repository
        self.threshold = threshold
        self.window = window

    async def is_duplicate(
        self,
        message: RawMessage,
        embedding: Optional[Sequence[float]],
    ) -> Tuple[bool, Optional[str]]:
        # Missing embeddings never block ingestion
        if not embedding:
            return False, None

        window = self.window
        if window is None or window <= timedelta(0):
            window = DEFAULT_DEDUP_WINDOW

        min_created_at = datetime.now(timezone.utc) - window

        try:
            similar_id = await self.repository.find_similar_item(
                embedding, self.threshold, min_created_at
            )
        except Exception as e:
            raise DedupError(f"find similar item: {e}") from e

        if similar_id:
            return True, similar_id
        return False, None


def create_deduplicator(
    mode: str,
    repository: DedupRepository,
    *,
    threshold: float = 0.9,
    window: Optional[timedelta] = None,
) -> Deduplicator:
    if mode == DEDUP_MODE_SEMANTIC:
        return SemanticDeduplicator(repository, threshold=threshold, window=window)
    if mode == DEDUP_MODE_STRICT:
        return StrictDeduplicator(repository)
    raise ValueError(f"Unknown dedup mode: {mode}")


@dataclass
class BatchDedupResult:
    items: List[Item] = field(default_factory=list)
    dropped_count: int = 0
    duplicate_map: Dict[str, str] = field(default_factory=dict)


def _find_kept_duplicate(item: Item, kept: List[Item], threshold: float) -> Optional[Item]:
    for other in kept:
        if not other.embedding:
            continue
        if cosine_similarity(item.embedding, other.embedding) > threshold:
            return other
    return None


def deduplicate_items_full(items: List[Item], threshold: float) -> BatchDedupResult:
    """
    In-batch semantic dedup. Keeps the first occurrence, drops later items whose
    similarity to a kept item exceeds the threshold. Items without an embedding
    are always kept.
    """
    result = BatchDedupResult()

    for item in items:
        if not item.embedding:
            result.items.append(item)
            continue

        original = _find_kept_duplicate(item, result.items, threshold)
        if original is None:
            result.items.append(item)
            continue

        result.dropped_count += 1
        result.duplicate_map[item.id] = original.id
        logger.debug(
            "Dropping semantic duplicate",
            extra={"item_id": item.id, "duplicate_of": original.id},
        )

    return result


def deduplicate_items(items: List[Item], threshold: float) -> List[Item]:
    return deduplicate_items_full(items, threshold).items


def find_duplicates(
    candidates: List[Item],
    reference: List[Item],
    threshold: float,
) -> List[Item]:
    """Candidates that duplicate any reference item. The reference set is not modified."""
    duplicates = []
    for candidate in candidates:
        if not candidate.embedding:
            continue
        if _find_kept_duplicate(candidate, reference, threshold) is not None:
            duplicates.append(candidate)
    return duplicates
