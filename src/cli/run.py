import argparse
import asyncio
import logging
import time
from typing import Optional

from core.entities import CLUSTER_SOURCE_DIGEST, CLUSTER_SOURCE_RESEARCH
from processing.deduplicator import DEDUP_MODE_SEMANTIC, create_deduplicator
from services.config import Config, load_config
from services.logging import setup_logging
from services.database import Database
from services.embeddings import OllamaEmbedder
from services.llm import OllamaClient
from services.scheduler import digest_window, next_run_time
from workflows.clustering import ClusterPipeline
from workflows.dedup_gate import DedupGate


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cluster the items of the last completed digest window")
    parser.add_argument("--research", action="store_true", help="Build research clusters (singletons allowed)")
    parser.add_argument("--window-minutes", type=int, default=None, help="Override DIGEST_WINDOW_MINUTES")
    parser.add_argument("--dedup", action="store_true", help="Run the dedup gate over unprocessed messages first")
    parser.add_argument("--config", default=None, help="Path to config.yml")
    return parser.parse_args(argv)


def build_dedup_gate(config: Config, db: Database) -> DedupGate:
    deduplicator = create_deduplicator(
        config.dedup.mode,
        db,
        threshold=config.dedup.similarity_threshold,
        window=config.dedup.window,
    )
    embedder = None
    if config.dedup.mode == DEDUP_MODE_SEMANTIC:
        embedder = OllamaEmbedder(config.OLLAMA_BASE_URL, config.OLLAMA_EMBED_MODEL)
    return DedupGate(deduplicator, embedder)


async def run_dedup_gate(config: Config, db: Database) -> None:
    gate = build_dedup_gate(config, db)
    result = await gate.filter_messages(await db.get_unprocessed_messages())

    # Duplicates are settled here; accepted messages stay pending for scoring
    for message_id in result.duplicates:
        await db.mark_message_processed(message_id)


async def main(argv: Optional[list] = None) -> None:
    start_time = time.perf_counter()
    args = parse_args(argv)
    setup_logging()
    logger = logging.getLogger(__name__)

    config = load_config(args.config)
    minutes = args.window_minutes or config.DIGEST_WINDOW_MINUTES
    start, end = digest_window(minutes=minutes)

    logger.info(f"Starting cluster run for window {start.isoformat()} - {end.isoformat()}")

    # ----------------------------
    # Initialize shared services
    # ----------------------------
    db = Database(config.DATABASE_PATH)
    await db.init_tables()

    llm = None
    if config.LLM_ENABLED:
        llm = OllamaClient(
            base_url=config.OLLAMA_BASE_URL,
            model=config.OLLAMA_MODEL,
            prompt_store=db,
        )
        if not await llm.health_check():
            logger.warning("Ollama unavailable, cluster topics will use canonical labels")
            llm = None

    if args.dedup:
        await run_dedup_gate(config, db)

    pipeline = ClusterPipeline(db, config.clustering, llm=llm)

    # ----------------------------
    # Execute clustering
    # ----------------------------
    items = await db.get_items_for_window(start, end)
    logger.info(f"Loaded {len(items)} items for window", extra={"count": len(items)})

    if args.research:
        await pipeline.cluster_items_for_research(items, start, end)
        source = CLUSTER_SOURCE_RESEARCH
    else:
        await pipeline.cluster_items(items, start, end)
        source = CLUSTER_SOURCE_DIGEST

    for cluster in await db.get_clusters_for_window(start, end, source):
        logger.info(
            f"Cluster '{cluster.topic}' with {len(cluster.items)} items",
            extra={"cluster_id": cluster.id, "size": len(cluster.items), "source": source},
        )

    logger.info("Cluster run completed")
    logger.info(f"Next run after {next_run_time(minutes=minutes).isoformat()}")
    end_time = time.perf_counter()
    logger.info(f"Total time: {end_time - start_time}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
