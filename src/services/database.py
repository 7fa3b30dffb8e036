import json
import logging
import uuid
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence

import aiosqlite
import numpy as np

from core.entities import (
    CLUSTER_SOURCE_DIGEST,
    Cluster,
    ClusterMembership,
    EvidenceSource,
    Item,
    Link,
    RawMessage,
)
from services.vector_store import VectorStore

logger = logging.getLogger(__name__)

ITEM_STATUS_READY = "ready"
ITEM_STATUS_ERROR = "error"


class StorageError(Exception):
    """Raised when a repository operation fails."""


@contextmanager
def _storage_op(operation: str) -> Iterator[None]:
    try:
        yield
    except aiosqlite.Error as e:
        raise StorageError(f"{operation}: {e}") from e


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _decode_vector(blob: Optional[bytes]) -> Optional[List[float]]:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


class Database:
    def __init__(self, path: str):
        self.path = path

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.path)
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> None:
        async with self.connect() as conn:
            await conn.execute(query, params)
            await conn.commit()

    async def fetchone(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    async def init_tables(self) -> None:
        """Initialize database tables for items, evidence and clusters."""
        async with self.connect() as conn:
            await conn.executescript("""
                CREATE TABLE IF NOT EXISTS raw_messages (
                    id TEXT PRIMARY KEY,
                    channel_id TEXT,
                    canonical_hash TEXT NOT NULL,
                    text TEXT NOT NULL DEFAULT '',
                    tg_date TIMESTAMP,
                    processed_at TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_raw_messages_hash ON raw_messages(canonical_hash);

                CREATE TABLE IF NOT EXISTS items (
                    id TEXT PRIMARY KEY,
                    raw_message_id TEXT NOT NULL REFERENCES raw_messages(id) ON DELETE CASCADE,
                    topic TEXT NOT NULL DEFAULT '',
                    summary TEXT NOT NULL DEFAULT '',
                    importance_score REAL NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'ready',
                    tg_date TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_items_tg_date ON items(tg_date);

                CREATE TABLE IF NOT EXISTS embeddings (
                    item_id TEXT PRIMARY KEY REFERENCES items(id) ON DELETE CASCADE,
                    embedding BLOB NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_embeddings_created_at ON embeddings(created_at);

                CREATE TABLE IF NOT EXISTS evidence_sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL UNIQUE,
                    domain TEXT NOT NULL DEFAULT '',
                    title TEXT NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS item_evidence (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                    evidence_id INTEGER NOT NULL REFERENCES evidence_sources(id) ON DELETE CASCADE,
                    agreement_score REAL NOT NULL DEFAULT 0,
                    is_contradiction INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (item_id, evidence_id)
                );

                CREATE TABLE IF NOT EXISTS message_links (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    raw_message_id TEXT NOT NULL REFERENCES raw_messages(id) ON DELETE CASCADE,
                    url TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    domain TEXT NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS clusters (
                    id TEXT PRIMARY KEY,
                    window_start TIMESTAMP NOT NULL,
                    window_end TIMESTAMP NOT NULL,
                    topic TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'digest',
                    created_at TIMESTAMP NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_clusters_window
                    ON clusters(window_start, window_end, source);

                CREATE TABLE IF NOT EXISTS cluster_items (
                    cluster_id TEXT NOT NULL REFERENCES clusters(id) ON DELETE CASCADE,
                    item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                    PRIMARY KEY (cluster_id, item_id)
                );
                CREATE INDEX IF NOT EXISTS idx_cluster_items_item_id ON cluster_items(item_id);

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)
            await conn.commit()
            logger.info("Database tables initialized")

    # ----------------------------
    # Messages and items
    # ----------------------------
    async def save_raw_message(self, message: RawMessage) -> None:
        with _storage_op("save raw message"):
            await self.execute(
                """
                INSERT OR REPLACE INTO raw_messages (id, channel_id, canonical_hash, text, tg_date)
                VALUES (?, ?, ?, ?, ?)
                """,
                (message.id, message.channel_id, message.canonical_hash, message.text, _ts(message.tg_date)),
            )

    async def get_unprocessed_messages(self, limit: int = 500) -> List[RawMessage]:
        with _storage_op("get unprocessed messages"):
            rows = await self.fetchall(
                """
                SELECT id, canonical_hash, text, channel_id, tg_date
                FROM raw_messages
                WHERE processed_at IS NULL
                ORDER BY tg_date, id
                LIMIT ?
                """,
                (limit,),
            )
        return [
            RawMessage(id=row[0], canonical_hash=row[1], text=row[2], channel_id=row[3], tg_date=_parse_ts(row[4]))
            for row in rows
        ]

    async def mark_message_processed(self, message_id: str) -> None:
        with _storage_op("mark message processed"):
            await self.execute(
                "UPDATE raw_messages SET processed_at = ? WHERE id = ?",
                (_ts(datetime.now(timezone.utc)), message_id),
            )

    async def save_item(self, item: Item, status: str = ITEM_STATUS_READY) -> None:
        with _storage_op("save item"):
            await self.execute(
                """
                INSERT OR REPLACE INTO items
                (id, raw_message_id, topic, summary, importance_score, status, tg_date)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.raw_message_id,
                    item.topic,
                    item.summary,
                    item.importance_score,
                    status,
                    _ts(item.tg_date),
                ),
            )
        if item.embedding:
            await self.save_embedding(item.id, item.embedding)

    async def save_embedding(
        self,
        item_id: str,
        embedding: Sequence[float],
        created_at: Optional[datetime] = None,
    ) -> None:
        created_at = created_at or datetime.now(timezone.utc)
        with _storage_op("save embedding"):
            await self.execute(
                """
                INSERT INTO embeddings (item_id, embedding, created_at) VALUES (?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET embedding = excluded.embedding
                """,
                (item_id, _encode_vector(embedding), _ts(created_at)),
            )

    async def get_item_embedding(self, item_id: str) -> Optional[List[float]]:
        with _storage_op("get item embedding"):
            row = await self.fetchone(
                "SELECT embedding FROM embeddings WHERE item_id = ?", (item_id,)
            )
        if row is None:
            return None
        return _decode_vector(row[0])

    async def get_items_for_window(self, start: datetime, end: datetime) -> List[Item]:
        """Ready items in [start, end), oldest first."""
        with _storage_op("get items for window"):
            rows = await self.fetchall(
                """
                SELECT i.id, i.raw_message_id, i.topic, i.summary, i.importance_score,
                       e.embedding, i.tg_date
                FROM items i
                LEFT JOIN embeddings e ON e.item_id = i.id
                WHERE i.status = ? AND i.tg_date >= ? AND i.tg_date < ?
                ORDER BY i.tg_date, i.id
                """,
                (ITEM_STATUS_READY, _ts(start), _ts(end)),
            )
        return [
            Item(
                id=row[0],
                raw_message_id=row[1],
                topic=row[2],
                summary=row[3],
                importance_score=row[4],
                embedding=_decode_vector(row[5]),
                tg_date=_parse_ts(row[6]),
            )
            for row in rows
        ]

    # ----------------------------
    # Deduplication
    # ----------------------------
    async def find_strict_duplicate(self, canonical_hash: str, message_id: str) -> Optional[str]:
        """ID of an already processed, non-failed message with the same hash."""
        with _storage_op("check strict duplicate"):
            row = await self.fetchone(
                """
                SELECT rm.id FROM raw_messages rm
                LEFT JOIN items i ON rm.id = i.raw_message_id
                WHERE rm.canonical_hash = ? AND rm.id != ?
                  AND rm.processed_at IS NOT NULL
                  AND (i.status IS NULL OR i.status != ?)
                ORDER BY rm.processed_at
                LIMIT 1
                """,
                (canonical_hash, message_id, ITEM_STATUS_ERROR),
            )
        return row[0] if row else None

    async def find_similar_item(
        self,
        embedding: Sequence[float],
        threshold: float,
        min_created_at: datetime,
    ) -> Optional[str]:
        """Nearest item embedded after min_created_at with similarity above threshold."""
        if not embedding:
            return None

        with _storage_op("find similar item"):
            rows = await self.fetchall(
                "SELECT item_id, embedding FROM embeddings WHERE created_at > ?",
                (_ts(min_created_at),),
            )

        store = VectorStore(dim=len(embedding))
        for item_id, blob in rows:
            vector = _decode_vector(blob)
            if vector:
                store.add(item_id, vector)

        nearest = store.nearest(embedding)
        if nearest is None:
            return None

        item_id, score = nearest
        if score > threshold:
            return item_id
        return None

    # ----------------------------
    # Evidence and links
    # ----------------------------
    async def save_evidence(self, item_id: str, evidence: EvidenceSource) -> None:
        with _storage_op("save evidence"):
            async with self.connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO evidence_sources (url, domain, title) VALUES (?, ?, ?)
                    ON CONFLICT(url) DO NOTHING
                    """,
                    (evidence.url, evidence.domain, evidence.title),
                )
                cursor = await conn.execute(
                    "SELECT id FROM evidence_sources WHERE url = ?", (evidence.url,)
                )
                (evidence_id,) = await cursor.fetchone()
                await conn.execute(
                    """
                    INSERT OR REPLACE INTO item_evidence
                    (item_id, evidence_id, agreement_score, is_contradiction)
                    VALUES (?, ?, ?, ?)
                    """,
                    (item_id, evidence_id, evidence.agreement_score, int(evidence.is_contradiction)),
                )
                await conn.commit()

    async def get_evidence_for_items(self, item_ids: Sequence[str]) -> Dict[str, List[EvidenceSource]]:
        if not item_ids:
            return {}

        placeholders = ",".join("?" for _ in item_ids)
        with _storage_op("get evidence for items"):
            rows = await self.fetchall(
                f"""
                SELECT ie.item_id, es.url, ie.agreement_score, ie.is_contradiction, es.domain, es.title
                FROM item_evidence ie
                JOIN evidence_sources es ON es.id = ie.evidence_id
                WHERE ie.item_id IN ({placeholders})
                ORDER BY ie.item_id, ie.agreement_score DESC
                """,
                tuple(item_ids),
            )

        results: Dict[str, List[EvidenceSource]] = {}
        for item_id, url, score, contradiction, domain, title in rows:
            results.setdefault(item_id, []).append(
                EvidenceSource(
                    url=url,
                    agreement_score=score,
                    is_contradiction=bool(contradiction),
                    domain=domain,
                    title=title,
                )
            )
        return results

    async def save_link(self, raw_message_id: str, link: Link) -> None:
        with _storage_op("save link"):
            await self.execute(
                "INSERT INTO message_links (raw_message_id, url, title, domain) VALUES (?, ?, ?, ?)",
                (raw_message_id, link.url, link.title, link.domain),
            )

    async def get_links_for_message(self, raw_message_id: str) -> List[Link]:
        with _storage_op("get links for message"):
            rows = await self.fetchall(
                "SELECT url, title, domain FROM message_links WHERE raw_message_id = ? ORDER BY id",
                (raw_message_id,),
            )
        return [Link(url=url, title=title, domain=domain) for url, title, domain in rows]

    # ----------------------------
    # Settings
    # ----------------------------
    async def set_setting(self, key: str, value: Any) -> None:
        with _storage_op("set setting"):
            await self.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), _ts(datetime.now(timezone.utc))),
            )

    async def get_setting(self, key: str) -> Any:
        """
        JSON-decoded setting value, or None when the key is not set.
        Raises StorageError when the lookup fails or the value is not valid JSON.
        """
        with _storage_op("get setting"):
            row = await self.fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StorageError(f"unmarshal setting {key}: {e}") from e

    # ----------------------------
    # Clusters
    # ----------------------------
    async def delete_clusters_for_window(self, start: datetime, end: datetime) -> None:
        await self.delete_clusters_for_window_and_source(start, end, CLUSTER_SOURCE_DIGEST)

    async def delete_clusters_for_window_and_source(
        self,
        start: datetime,
        end: datetime,
        source: str,
    ) -> None:
        with _storage_op("delete clusters for window"):
            await self.execute(
                "DELETE FROM clusters WHERE window_start = ? AND window_end = ? AND source = ?",
                (_ts(start), _ts(end), source),
            )

    async def create_cluster(self, start: datetime, end: datetime, topic: str) -> str:
        return await self.create_cluster_with_source(start, end, topic, CLUSTER_SOURCE_DIGEST)

    async def create_cluster_with_source(
        self,
        start: datetime,
        end: datetime,
        topic: str,
        source: str,
    ) -> str:
        cluster_id = str(uuid.uuid4())
        with _storage_op("create cluster"):
            await self.execute(
                """
                INSERT INTO clusters (id, window_start, window_end, topic, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (cluster_id, _ts(start), _ts(end), topic, source, _ts(datetime.now(timezone.utc))),
            )
        return cluster_id

    async def add_to_cluster(self, cluster_id: str, item_id: str) -> None:
        with _storage_op("add to cluster"):
            await self.execute(
                "INSERT INTO cluster_items (cluster_id, item_id) VALUES (?, ?)",
                (cluster_id, item_id),
            )

    async def get_clusters_for_window(
        self,
        start: datetime,
        end: datetime,
        source: str = CLUSTER_SOURCE_DIGEST,
    ) -> List[Cluster]:
        with _storage_op("get clusters for window"):
            rows = await self.fetchall(
                """
                SELECT c.id, c.topic, c.source, c.created_at,
                       i.id, i.raw_message_id, i.topic, i.summary, i.importance_score, i.tg_date
                FROM clusters c
                JOIN cluster_items ci ON c.id = ci.cluster_id
                JOIN items i ON ci.item_id = i.id
                WHERE c.window_start = ? AND c.window_end = ? AND c.source = ?
                ORDER BY c.created_at, c.id, i.importance_score DESC
                """,
                (_ts(start), _ts(end), source),
            )

        clusters: Dict[str, Cluster] = {}
        for row in rows:
            cluster_id = row[0]
            if cluster_id not in clusters:
                clusters[cluster_id] = Cluster(
                    id=cluster_id,
                    window_start=start,
                    window_end=end,
                    topic=row[1],
                    source=row[2],
                    created_at=_parse_ts(row[3]),
                )
            clusters[cluster_id].items.append(
                Item(
                    id=row[4],
                    raw_message_id=row[5],
                    topic=row[6],
                    summary=row[7],
                    importance_score=row[8],
                    tg_date=_parse_ts(row[9]),
                )
            )

        return list(clusters.values())

    async def get_cluster_memberships(
        self,
        start: datetime,
        end: datetime,
        source: str = CLUSTER_SOURCE_DIGEST,
    ) -> List[ClusterMembership]:
        with _storage_op("get cluster memberships"):
            rows = await self.fetchall(
                """
                SELECT ci.cluster_id, ci.item_id
                FROM cluster_items ci
                JOIN clusters c ON c.id = ci.cluster_id
                WHERE c.window_start = ? AND c.window_end = ? AND c.source = ?
                ORDER BY ci.item_id
                """,
                (_ts(start), _ts(end), source),
            )
        return [ClusterMembership(cluster_id=cluster_id, item_id=item_id) for cluster_id, item_id in rows]
