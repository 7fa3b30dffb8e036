"""
Cluster pipeline - builds and persists story clusters for one digest window.
"""
import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from core.entities import (
    CLUSTER_SOURCE_DIGEST,
    CLUSTER_SOURCE_RESEARCH,
    Cluster,
    EvidenceSource,
    Item,
    Link,
)
from core.schemas import ClusteringConfig
from processing.clustering import (
    DEFAULT_COHERENCE_THRESHOLD,
    ClusterBuildContext,
    build_clusters,
    build_topic_grouping,
    limit_cluster_items,
    sort_cluster_items,
)
from services.config import ClusteringSettings, _bool

logger = logging.getLogger(__name__)

SHORT_MESSAGE_THRESHOLD = 120
MAX_CONTEXT_LINKS = 3
LINK_SCOPE_TOPIC = "topic"

MIN_CLUSTER_SIZE = {
    CLUSTER_SOURCE_DIGEST: 2,
    CLUSTER_SOURCE_RESEARCH: 1,
}

SETTING_SIMILARITY_THRESHOLD = "cluster_similarity_threshold"
SETTING_CROSS_TOPIC_ENABLED = "cross_topic_clustering_enabled"
SETTING_CROSS_TOPIC_THRESHOLD = "cross_topic_similarity_threshold"
SETTING_COHERENCE_THRESHOLD = "cluster_coherence_threshold"
SETTING_TIME_WINDOW_HOURS = "cluster_time_window_hours"
SETTING_DIGEST_LANGUAGE = "digest_language"


class ClusterRepository(Protocol):
    async def delete_clusters_for_window_and_source(self, start: datetime, end: datetime, source: str) -> None: ...

    async def create_cluster_with_source(self, start: datetime, end: datetime, topic: str, source: str) -> str: ...

    async def add_to_cluster(self, cluster_id: str, item_id: str) -> None: ...

    async def get_setting(self, key: str) -> Any: ...

    async def get_evidence_for_items(self, item_ids: Sequence[str]) -> Dict[str, List[EvidenceSource]]: ...

    async def get_item_embedding(self, item_id: str) -> Optional[List[float]]: ...

    async def get_links_for_message(self, raw_message_id: str) -> List[Link]: ...


class TopicLabeler(Protocol):
    async def generate_cluster_topic(self, items: Sequence[Item], language: str = "", model: str = "") -> str: ...


class ClusterPipeline:
    """
    Runs the clustering engine once per [window, source].

    Every run starts by deleting the clusters previously written for the same
    window and source, so retries converge on the same end state.
    """

    def __init__(
        self,
        repository: ClusterRepository,
        settings: ClusteringSettings,
        llm: Optional[TopicLabeler] = None,
    ):
        self.repository = repository
        self.settings = settings
        self.llm = llm

    async def cluster_items(self, items: List[Item], start: datetime, end: datetime) -> List[Cluster]:
        return await self.cluster_items_with_source(items, start, end, CLUSTER_SOURCE_DIGEST)

    async def cluster_items_for_research(self, items: List[Item], start: datetime, end: datetime) -> List[Cluster]:
        """Research clustering keeps singletons and never touches digest clusters."""
        return await self.cluster_items_with_source(items, start, end, CLUSTER_SOURCE_RESEARCH)

    async def cluster_items_with_source(
        self,
        items: List[Item],
        start: datetime,
        end: datetime,
        source: str,
    ) -> List[Cluster]:
        try:
            await self.repository.delete_clusters_for_window_and_source(start, end, source)
        except Exception as e:
            logger.error(f"[{source}] Failed to delete old clusters: {e}", extra={"source": source})

        if not items:
            logger.info(f"[{source}] No items to cluster")
            return []

        items = limit_cluster_items(items, self.settings.max_items)
        min_cluster_size = MIN_CLUSTER_SIZE.get(source, 2)

        cfg = await self.get_clustering_config()
        topic_index, topic_groups = build_topic_grouping(items)
        ctx = ClusterBuildContext(
            topic_index=topic_index,
            topic_groups=topic_groups,
            embeddings=await self.get_embeddings(items),
            evidence_map=await self.get_evidence_map(items, cfg),
            all_items=items,
            cfg=cfg,
        )

        clusters: List[Cluster] = []
        for topic, members in build_clusters(ctx, min_cluster_size):
            cluster = await self.persist_cluster(members, topic, cfg, start, end, source)
            clusters.append(cluster)

        logger.info(
            f"[{source}] Clustered {len(items)} items into {len(clusters)} clusters "
            f"across {len(topic_groups)} topics",
            extra={"source": source, "count": len(clusters)},
        )
        return clusters

    # ----------------------------
    # Configuration
    # ----------------------------
    async def _load_setting(self, key: str) -> Any:
        try:
            return await self.repository.get_setting(key)
        except Exception as e:
            logger.debug(f"Could not get {key} from DB: {e}")
            return None

    async def _load_float(self, key: str) -> Optional[float]:
        value = await self._load_setting(key)
        if value is None:
            return None
        try:
            result = float(value)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unparsable setting {key}={value!r}")
            return None
        if not math.isfinite(result):
            logger.debug(f"Ignoring non-finite setting {key}={value!r}")
            return None
        return result

    async def get_clustering_config(self) -> ClusteringConfig:
        """
        Static defaults, overridden by dynamic settings, then defaulted again
        where the result is zero or invalid.
        """
        s = self.settings
        values: Dict[str, Any] = {
            "similarity_threshold": s.similarity_threshold,
            "cross_topic_enabled": s.cross_topic_enabled,
            "cross_topic_threshold": s.cross_topic_threshold,
            "coherence_threshold": s.coherence_threshold,
            "cluster_window_hours": s.time_window_hours,
            "digest_language": s.digest_language,
            "evidence_enabled": s.evidence_enabled,
            "evidence_boost": max(s.evidence_boost, 0.0),
            "evidence_min_agreement": min(max(s.evidence_min_agreement, 0.0), 1.0),
        }

        similarity = await self._load_float(SETTING_SIMILARITY_THRESHOLD)
        if similarity is not None:
            values["similarity_threshold"] = similarity

        cross_topic_enabled = await self._load_setting(SETTING_CROSS_TOPIC_ENABLED)
        if cross_topic_enabled is not None:
            values["cross_topic_enabled"] = _bool(cross_topic_enabled)

        cross_topic = await self._load_float(SETTING_CROSS_TOPIC_THRESHOLD)
        if cross_topic is not None:
            values["cross_topic_threshold"] = cross_topic

        coherence = await self._load_float(SETTING_COHERENCE_THRESHOLD)
        if coherence is not None and coherence > 0:
            values["coherence_threshold"] = coherence

        window_hours = await self._load_float(SETTING_TIME_WINDOW_HOURS)
        if window_hours is not None and window_hours > 0:
            values["cluster_window_hours"] = window_hours

        language = await self._load_setting(SETTING_DIGEST_LANGUAGE)
        if isinstance(language, str):
            values["digest_language"] = language

        return ClusteringConfig(**self.apply_clustering_defaults(values))

    def apply_clustering_defaults(self, values: Dict[str, Any]) -> Dict[str, Any]:
        # "not x > 0" also rejects nan
        if not values["similarity_threshold"] > 0:
            values["similarity_threshold"] = self.settings.similarity_threshold
        if not values["cross_topic_threshold"] > 0:
            values["cross_topic_threshold"] = values["similarity_threshold"]
        if not values["coherence_threshold"] > 0:
            values["coherence_threshold"] = DEFAULT_COHERENCE_THRESHOLD
        return values

    # ----------------------------
    # Pre-passes
    # ----------------------------
    async def get_embeddings(self, items: List[Item]) -> Dict[str, List[float]]:
        embeddings: Dict[str, List[float]] = {}

        for item in items:
            if item.embedding:
                embeddings[item.id] = list(item.embedding)
                continue

            try:
                embedding = await self.repository.get_item_embedding(item.id)
            except Exception as e:
                logger.warning(f"Failed to get embedding for item {item.id}: {e}")
                continue

            if embedding:
                embeddings[item.id] = embedding

        return embeddings

    async def get_evidence_map(
        self,
        items: List[Item],
        cfg: ClusteringConfig,
    ) -> Optional[Dict[str, List[EvidenceSource]]]:
        if not cfg.evidence_enabled:
            return None

        try:
            evidence_map = await self.repository.get_evidence_for_items([item.id for item in items])
        except Exception as e:
            logger.warning(f"Failed to get evidence for items, proceeding without evidence boost: {e}")
            return None

        if evidence_map:
            logger.debug(f"Loaded evidence for clustering ({len(evidence_map)} items with evidence)")
        return evidence_map

    # ----------------------------
    # Persistence
    # ----------------------------
    async def persist_cluster(
        self,
        members: List[Item],
        topic: str,
        cfg: ClusteringConfig,
        start: datetime,
        end: datetime,
        source: str,
    ) -> Cluster:
        members = sort_cluster_items(members)
        representative = members[0]

        logger.debug(
            f"Cluster representative selected: {representative.id} "
            f"(size={len(members)}, importance={representative.importance_score})"
        )

        cluster_topic = await self.generate_cluster_topic(members, topic, cfg.digest_language)

        cluster_id = await self.repository.create_cluster_with_source(start, end, cluster_topic, source)
        cluster = Cluster(
            id=cluster_id,
            window_start=start,
            window_end=end,
            topic=cluster_topic,
            source=source,
        )

        for item in members:
            try:
                await self.repository.add_to_cluster(cluster_id, item.id)
            except Exception as e:
                logger.error(
                    f"Failed to add item {item.id} to cluster {cluster_id}: {e}",
                    extra={"item_id": item.id, "cluster_id": cluster_id},
                )
                continue
            cluster.items.append(item)

        return cluster

    async def generate_cluster_topic(self, members: List[Item], default_topic: str, language: str) -> str:
        """LLM label for multi-item clusters; the canonical topic otherwise or on any failure."""
        if len(members) <= 1 or self.llm is None:
            return default_topic

        augmented = await self.augment_items_for_topic(members)

        try:
            better_topic = await self.llm.generate_cluster_topic(augmented, language, "")
        except Exception as e:
            logger.warning(f"Cluster topic generation failed, using '{default_topic}': {e}")
            return default_topic

        if not better_topic or not better_topic.strip():
            return default_topic
        return better_topic.strip()

    async def augment_items_for_topic(self, items: List[Item]) -> List[Item]:
        if LINK_SCOPE_TOPIC not in self.settings.link_enrichment_scope:
            return list(items)

        augmented = []
        for item in items:
            if len(item.summary) < SHORT_MESSAGE_THRESHOLD:
                item = replace(item, summary=await self._summary_with_links(item))
            augmented.append(item)
        return augmented

    async def _summary_with_links(self, item: Item) -> str:
        try:
            links = await self.repository.get_links_for_message(item.raw_message_id)
        except Exception as e:
            logger.debug(f"Could not load links for {item.raw_message_id}: {e}")
            return item.summary

        if not links:
            return item.summary

        titles = [link.title or link.domain for link in links[:MAX_CONTEXT_LINKS]]
        return f"{item.summary} (Context: {' | '.join(titles)})"
