import json
import logging
from datetime import datetime, timezone

from services.embeddings import OllamaEmbedder
from services.logging import JsonFormatter
from services.scheduler import digest_window, next_run_time
from services.vector_store import VectorStore


def test_digest_window_is_last_completed_slot():
    now = datetime(2026, 3, 1, 10, 47, 12, tzinfo=timezone.utc)
    assert digest_window(now, 60) == (
        datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
        datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
    )
    assert digest_window(now, 15) == (
        datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc),
        datetime(2026, 3, 1, 10, 45, tzinfo=timezone.utc),
    )


def test_digest_window_treats_naive_as_utc():
    start, end = digest_window(datetime(2026, 3, 1, 0, 5), 60)
    assert start == datetime(2026, 2, 28, 23, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


def test_next_run_time():
    now = datetime(2026, 3, 1, 10, 47, tzinfo=timezone.utc)
    assert next_run_time(now, 60) == datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)


def test_json_formatter_emits_extra_fields():
    record = logging.LogRecord("test", logging.WARNING, __file__, 1, "Cluster %s", ("ok",), None)
    record.cluster_id = "c1"
    record.size = 3

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Cluster ok"
    assert payload["level"] == "WARNING"
    assert payload["cluster_id"] == "c1"
    assert payload["size"] == 3
    assert "item_id" not in payload


def test_vector_store_nearest_is_cosine():
    store = VectorStore(dim=2)
    assert store.nearest([1.0, 0.0]) is None

    store.add("x", [2.0, 0.0])
    store.add("y", [0.0, 5.0])
    assert not store.add("bad", [1.0, 0.0, 0.0])

    item_id, score = store.nearest([3.0, 0.1])
    assert item_id == "x"
    assert 0.99 < score <= 1.0001


async def test_embedder_skips_blank_text():
    embedder = OllamaEmbedder(base_url="http://localhost:11434/", model="nomic-embed-text")
    assert await embedder.get_embedding("   ") == []
