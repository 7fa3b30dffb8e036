"""
DedupGate - Filters newly ingested messages before they are scored and clustered.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from core.entities import RawMessage
from processing.deduplicator import DedupError, Deduplicator
from services.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class DedupGateResult:
    accepted: List[RawMessage] = field(default_factory=list)
    duplicates: Dict[str, str] = field(default_factory=dict)  # message id -> original id
    failed: List[str] = field(default_factory=list)


class DedupGate:
    """
    Runs one deduplication strategy over incoming messages.

    Storage failures fail only the message being checked; the rest of the
    batch is still processed.
    """

    def __init__(
        self,
        deduplicator: Deduplicator,
        embedder: Optional[EmbeddingProvider] = None,
    ):
        self.deduplicator = deduplicator
        self.embedder = embedder

    async def _embed(self, message: RawMessage) -> List[float]:
        if self.embedder is None or not message.text:
            return []
        try:
            return await self.embedder.get_embedding(message.text)
        except Exception as e:
            logger.warning(
                f"Embedding failed for message {message.id}, continuing without it: {e}",
                extra={"item_id": message.id},
            )
            return []

    async def check(self, message: RawMessage) -> Tuple[bool, Optional[str]]:
        """
        Returns (is_duplicate, original_id). Raises DedupError on storage failure.
        """
        embedding = await self._embed(message)
        return await self.deduplicator.is_duplicate(message, embedding)

    async def filter_messages(self, messages: List[RawMessage]) -> DedupGateResult:
        result = DedupGateResult()

        for message in messages:
            try:
                is_dup, original_id = await self.check(message)
            except DedupError as e:
                logger.error(f"Dedup check failed for message {message.id}: {e}", extra={"item_id": message.id})
                result.failed.append(message.id)
                continue
            except Exception as e:
                logger.exception(f"Unexpected error checking message {message.id}: {e}")
                result.failed.append(message.id)
                continue

            if is_dup:
                logger.debug(
                    f"Duplicate message {message.id} ({self.deduplicator.name})",
                    extra={"item_id": message.id, "duplicate_of": original_id},
                )
                result.duplicates[message.id] = original_id or ""
                continue

            result.accepted.append(message)

        logger.info(
            f"Dedup gate ({self.deduplicator.name}): {len(result.accepted)} accepted, "
            f"{len(result.duplicates)} duplicates, {len(result.failed)} failed"
        )
        return result
