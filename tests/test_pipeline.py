import asyncio

import pytest

from core.entities import CLUSTER_SOURCE_DIGEST, CLUSTER_SOURCE_RESEARCH, Link
from services.config import ClusteringSettings
from workflows.clustering import ClusterPipeline

from conftest import VEC_A, VEC_B, VEC_C, VEC_ORTHOGONAL, WINDOW_END, WINDOW_START, FakeLLM, make_item


def pipeline(repo, llm=None, **settings):
    settings.setdefault("similarity_threshold", 0.8)
    settings.setdefault("evidence_enabled", False)
    return ClusterPipeline(repo, ClusteringSettings(**settings), llm=llm)


async def test_two_identical_items_form_one_cluster_with_representative_first(repo):
    items = [
        make_item("a", embedding=VEC_A, importance=0.4),
        make_item("b", embedding=VEC_A, importance=0.9),
    ]
    clusters = await pipeline(repo).cluster_items(items, WINDOW_START, WINDOW_END)

    assert len(clusters) == 1
    assert [it.id for it in clusters[0].items] == ["b", "a"]
    assert clusters[0].topic == "Tech"
    assert clusters[0].source == CLUSTER_SOURCE_DIGEST
    assert repo.member_sets() == [{"a", "b"}]


async def test_representative_tie_broken_by_longer_summary(repo):
    items = [
        make_item("a", embedding=VEC_A, importance=0.5, summary="short"),
        make_item("b", embedding=VEC_A, importance=0.5, summary="a noticeably longer summary"),
    ]
    clusters = await pipeline(repo).cluster_items(items, WINDOW_START, WINDOW_END)
    assert clusters[0].items[0].id == "b"


async def test_stale_clusters_deleted_before_building(repo):
    await pipeline(repo).cluster_items([], WINDOW_START, WINDOW_END)
    assert repo.deleted == [(WINDOW_START, WINDOW_END, CLUSTER_SOURCE_DIGEST)]


async def test_rerun_is_idempotent(repo):
    items = [
        make_item("a", embedding=VEC_A),
        make_item("b", embedding=VEC_A),
        make_item("c", topic="Sports", embedding=VEC_B),
        make_item("d", topic="sports", embedding=VEC_B),
        make_item("e", embedding=VEC_ORTHOGONAL),
    ]
    p = pipeline(repo)

    await p.cluster_items(items, WINDOW_START, WINDOW_END)
    first = repo.member_sets()
    await p.cluster_items(items, WINDOW_START, WINDOW_END)

    assert repo.member_sets() == first == [{"a", "b"}, {"c", "d"}]
    assert len(repo.clusters) == 2


async def test_delete_failure_does_not_abort_run(repo):
    repo.fail_delete = True
    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_A)]
    clusters = await pipeline(repo).cluster_items(items, WINDOW_START, WINDOW_END)
    assert len(clusters) == 1


async def test_research_keeps_singletons_and_tags_source(repo):
    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_ORTHOGONAL)]
    clusters = await pipeline(repo).cluster_items_for_research(items, WINDOW_START, WINDOW_END)

    assert len(clusters) == 2
    assert {c.source for c in clusters} == {CLUSTER_SOURCE_RESEARCH}
    assert repo.deleted == [(WINDOW_START, WINDOW_END, CLUSTER_SOURCE_RESEARCH)]


async def test_membership_failure_is_skipped(repo):
    repo.fail_membership_for = {"b"}
    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_A), make_item("c", embedding=VEC_A)]
    clusters = await pipeline(repo).cluster_items(items, WINDOW_START, WINDOW_END)

    assert [it.id for it in clusters[0].items] == ["a", "c"]
    assert repo.member_sets() == [{"a", "c"}]


async def test_llm_label_used_for_multi_item_clusters(repo):
    llm = FakeLLM(topic="Chip Export Rules")
    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_A)]
    clusters = await pipeline(repo, llm=llm).cluster_items(items, WINDOW_START, WINDOW_END)
    assert clusters[0].topic == "Chip Export Rules"


@pytest.mark.parametrize("llm", [FakeLLM(error=RuntimeError("ollama down")), FakeLLM(topic="   ")])
async def test_llm_failure_or_empty_label_falls_back_to_canonical_topic(repo, llm):
    items = [make_item("a", topic="ai chips", embedding=VEC_A), make_item("b", topic="AI Chips", embedding=VEC_A)]
    clusters = await pipeline(repo, llm=llm).cluster_items(items, WINDOW_START, WINDOW_END)
    assert clusters[0].topic == "Ai Chips"


async def test_singletons_never_ask_the_llm(repo):
    llm = FakeLLM()
    items = [make_item("a", embedding=VEC_A)]
    clusters = await pipeline(repo, llm=llm).cluster_items_for_research(items, WINDOW_START, WINDOW_END)
    assert clusters[0].topic == "Tech"
    assert llm.calls == []


async def test_cancellation_propagates(repo):
    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_A)]
    llm = FakeLLM(error=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await pipeline(repo, llm=llm).cluster_items(items, WINDOW_START, WINDOW_END)


async def test_lazy_embedding_lookup(repo):
    repo.embeddings = {"a": VEC_A, "b": VEC_A}
    items = [make_item("a"), make_item("b")]
    clusters = await pipeline(repo).cluster_items(items, WINDOW_START, WINDOW_END)
    assert len(clusters) == 1


async def test_item_limit_applies(repo):
    items = [make_item(str(i), embedding=VEC_A) for i in range(5)]
    clusters = await pipeline(repo, max_items=3).cluster_items(items, WINDOW_START, WINDOW_END)
    assert {it.id for it in clusters[0].items} == {"0", "1", "2"}


async def test_coherence_override_from_settings_table(repo):
    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_B), make_item("c", embedding=VEC_C)]

    clusters = await pipeline(repo, coherence_threshold=0.5).cluster_items(items, WINDOW_START, WINDOW_END)
    assert len(clusters) == 1

    repo.settings["cluster_coherence_threshold"] = 0.9
    clusters = await pipeline(repo, coherence_threshold=0.5).cluster_items(items, WINDOW_START, WINDOW_END)
    assert clusters == []


async def test_config_overrides_and_defaulting(repo):
    repo.settings = {
        "cluster_similarity_threshold": "0.6",
        "cross_topic_clustering_enabled": True,
        "cross_topic_similarity_threshold": 0,
        "cluster_coherence_threshold": "not a number",
        "cluster_time_window_hours": 12,
        "digest_language": "ru",
    }
    cfg = await pipeline(repo).get_clustering_config()

    assert cfg.similarity_threshold == pytest.approx(0.6)
    assert cfg.cross_topic_enabled is True
    assert cfg.cross_topic_threshold == pytest.approx(0.6)
    assert cfg.coherence_threshold == pytest.approx(0.7)
    assert cfg.cluster_window_hours == 12
    assert cfg.digest_language == "ru"


@pytest.mark.parametrize("value", ["nan", "inf", "-inf", float("nan")])
async def test_non_finite_setting_is_ignored(repo, value):
    repo.settings["cluster_similarity_threshold"] = value
    repo.settings["cluster_coherence_threshold"] = value
    p = pipeline(repo)

    cfg = await p.get_clustering_config()
    assert cfg.similarity_threshold == pytest.approx(0.8)
    assert cfg.coherence_threshold == pytest.approx(0.7)

    items = [make_item("a", embedding=VEC_A), make_item("b", embedding=VEC_A)]
    assert len(await p.cluster_items(items, WINDOW_START, WINDOW_END)) == 1


async def test_non_positive_similarity_falls_back_to_static_default(repo):
    repo.settings["cluster_similarity_threshold"] = 0
    cfg = await pipeline(repo, similarity_threshold=0.75).get_clustering_config()
    assert cfg.similarity_threshold == pytest.approx(0.75)


async def test_settings_store_failure_uses_static_config(repo):
    repo.fail_settings = True
    cfg = await pipeline(repo, time_window_hours=36).get_clustering_config()
    assert cfg.similarity_threshold == pytest.approx(0.8)
    assert cfg.cluster_window_hours == 36


async def test_short_summaries_get_link_context_for_labeling(repo):
    llm = FakeLLM()
    repo.links["msg-a"] = [
        Link(url="https://x.com/1", title="Chip exports curbed"),
        Link(url="https://y.com/2", domain="y.com"),
    ]
    items = [
        make_item("a", embedding=VEC_A, summary="Short news"),
        make_item("b", embedding=VEC_A, summary="x" * 130),
    ]
    await pipeline(repo, llm=llm, link_enrichment_scope="summary,topic").cluster_items(items, WINDOW_START, WINDOW_END)

    summaries = {it.id: it.summary for it in llm.calls[0]}
    assert summaries["a"] == "Short news (Context: Chip exports curbed | y.com)"
    assert summaries["b"] == "x" * 130


async def test_link_context_off_by_default(repo):
    llm = FakeLLM()
    repo.links["msg-a"] = [Link(url="https://x.com/1", title="Chip exports curbed")]
    items = [make_item("a", embedding=VEC_A, summary="Short news"), make_item("b", embedding=VEC_A)]
    await pipeline(repo, llm=llm).cluster_items(items, WINDOW_START, WINDOW_END)
    assert {it.summary for it in llm.calls[0]} == {"Short news", "Summary of b"}
