"""Tests for cluster detection and consolidation."""

import sqlite3
import time

import pytest

from memory_intel.consolidation import (
    Cluster,
    consolidate_cluster,
    find_clusters,
    generate_basic_summary,
    get_consolidations,
    run_consolidation,
)

CLOSE = [
    [1.0, 0.0, 0.0, 0.0],
    [0.99, 0.1, 0.0, 0.0],
    [0.98, 0.15, 0.0, 0.0],
]
OUTLIER = [0.0, 0.0, 1.0, 0.0]


@pytest.fixture
def clustered(tmp_storage):
    """Three near-identical memories plus one unrelated, oldest first."""
    base = time.time() - 3600
    ids = []
    for i, vec in enumerate(CLOSE):
        ids.append(tmp_storage.store_memory(
            content=f"Decided to migrate the schema in step {i}. The deploy went fine.",
            vector=vec,
            tags=["schema", f"step-{i}"],
            created_at=base + i * 60,
        ))
    outlier = tmp_storage.store_memory(
        content="Lunch menu for the offsite", vector=OUTLIER, created_at=base + 600,
    )
    return ids, outlier


class TestFindClusters:
    def test_groups_similar_memories(self, tmp_storage, clustered):
        ids, outlier = clustered
        clusters = find_clusters(tmp_storage, min_similarity=0.9, min_cluster_size=3)
        assert len(clusters) == 1
        cluster = clusters[0]
        assert set(cluster.member_ids) == set(ids)
        assert outlier not in cluster.member_ids
        # newest member seeds the cluster
        assert cluster.centroid_id == ids[-1]
        assert cluster.avg_similarity > 0.9

    def test_min_cluster_size(self, tmp_storage, clustered):
        assert find_clusters(tmp_storage, min_similarity=0.9, min_cluster_size=4) == []

    def test_complete_linkage(self, tmp_storage):
        # a~b and b~c but a and c are too far apart
        tmp_storage.store_memory(content="a", vector=[1.0, 0.0, 0.0, 0.0])
        tmp_storage.store_memory(content="b", vector=[0.7071, 0.7071, 0.0, 0.0])
        tmp_storage.store_memory(content="c", vector=[0.0, 1.0, 0.0, 0.0])
        assert find_clusters(tmp_storage, min_similarity=0.7, min_cluster_size=3) == []

    def test_inactive_memories_ignored(self, tmp_storage, clustered):
        ids, _ = clustered
        tmp_storage.deactivate_memory(ids[0])
        assert find_clusters(tmp_storage, min_similarity=0.9, min_cluster_size=3) == []

    def test_invalid_parameters(self, tmp_storage):
        with pytest.raises(ValueError):
            find_clusters(tmp_storage, min_cluster_size=1)
        with pytest.raises(ValueError):
            find_clusters(tmp_storage, min_similarity=1.5)


class TestBasicSummary:
    def test_header_and_sections(self, tmp_storage, clustered):
        ids, _ = clustered
        summary = generate_basic_summary(tmp_storage, ids)
        assert summary.startswith("[Consolidated summary of 3 memories from ")
        assert "; topics: schema, step-0, step-1, step-2]" in summary
        assert "Key facts:" in summary
        assert "- Decided to migrate the schema in step 0" in summary

    def test_unknown_ids(self, tmp_storage):
        assert generate_basic_summary(tmp_storage, ["missing"]) == ""


@pytest.mark.asyncio
class TestConsolidateCluster:
    async def test_merges_members_under_summary(self, tmp_storage, clustered, fake_embedder):
        ids, _ = clustered
        cluster = find_clusters(tmp_storage, min_similarity=0.9, min_cluster_size=3)[0]
        summary_id = await consolidate_cluster(tmp_storage, cluster, "Schema migration recap", fake_embedder)

        summary = tmp_storage.get_memory(summary_id)
        assert summary["content_type"] == "summary"
        assert summary["source"] == "consolidation"
        assert summary["importance"] == pytest.approx(0.8)
        assert summary["vector_rowid"] is not None
        assert summary["metadata"]["source_count"] == 3
        assert set(summary["metadata"]["source_ids"]) == set(ids)
        assert "schema" in summary["tags"]

        for mid in ids:
            mem = tmp_storage.get_memory(mid)
            assert mem["is_active"] is False
            assert mem["parent_id"] == summary_id

        records = get_consolidations(tmp_storage)
        assert len(records) == 1
        assert records[0]["summary_id"] == summary_id
        assert records[0]["memories_merged"] == 3
        assert records[0]["strategy"] == "similarity"
        assert set(records[0]["source_ids"]) == set(ids)

    async def test_stale_cluster_writes_nothing(self, tmp_storage, clustered):
        ids, _ = clustered
        cluster = find_clusters(tmp_storage, min_similarity=0.9, min_cluster_size=3)[0]
        tmp_storage.deactivate_memory(ids[1])
        before = tmp_storage.stats()["total_memories"]

        assert await consolidate_cluster(tmp_storage, cluster, "recap") is None
        assert tmp_storage.stats()["total_memories"] == before
        assert get_consolidations(tmp_storage) == []
        assert tmp_storage.get_memory(ids[0])["is_active"] is True

    async def test_failed_audit_insert_rolls_back(self, tmp_storage, clustered):
        ids, _ = clustered
        cluster = find_clusters(tmp_storage, min_similarity=0.9, min_cluster_size=3)[0]
        before = tmp_storage.stats()["total_memories"]
        conn = tmp_storage._get_conn()
        conn.execute(
            """CREATE TRIGGER fail_audit BEFORE INSERT ON consolidations
               BEGIN SELECT RAISE(ABORT, 'audit unavailable'); END"""
        )
        conn.commit()

        with pytest.raises(sqlite3.IntegrityError):
            await consolidate_cluster(tmp_storage, cluster, "Schema migration recap")

        assert tmp_storage.stats()["total_memories"] == before
        assert get_consolidations(tmp_storage) == []
        for mid in ids:
            mem = tmp_storage.get_memory(mid)
            assert mem["is_active"] is True
            assert mem["parent_id"] is None

    async def test_missing_member(self, tmp_storage, clustered):
        ids, _ = clustered
        cluster = Cluster(centroid_id=ids[0], member_ids=ids + ["nope"], avg_similarity=1.0, topic="t")
        assert await consolidate_cluster(tmp_storage, cluster, "recap") is None

    async def test_empty_summary_rejected(self, tmp_storage, clustered):
        ids, _ = clustered
        cluster = Cluster(centroid_id=ids[0], member_ids=ids, avg_similarity=1.0, topic="t")
        with pytest.raises(ValueError):
            await consolidate_cluster(tmp_storage, cluster, "   ")

    async def test_embedding_failure_still_consolidates(self, tmp_storage, clustered, fake_embedder):
        ids, _ = clustered
        fake_embedder.fail = True
        cluster = Cluster(centroid_id=ids[0], member_ids=ids, avg_similarity=1.0, topic="t")
        summary_id = await consolidate_cluster(tmp_storage, cluster, "recap", fake_embedder)
        assert tmp_storage.get_memory(summary_id)["vector_rowid"] is None


@pytest.mark.asyncio
class TestRunConsolidation:
    async def test_dry_run_lists_clusters_only(self, tmp_storage, clustered):
        result = await run_consolidation(tmp_storage, min_similarity=0.9, dry_run=True)
        assert result["dry_run"] is True
        assert len(result["clusters"]) == 1
        assert result["summaries_created"] == 0
        assert get_consolidations(tmp_storage) == []

    async def test_consolidates_and_is_stable(self, tmp_storage, clustered):
        result = await run_consolidation(tmp_storage, min_similarity=0.9)
        assert result["summaries_created"] == 1
        assert tmp_storage.stats()["active_memories"] == 2

        again = await run_consolidation(tmp_storage, min_similarity=0.9)
        assert again["clusters"] == []

    async def test_history_newest_first(self, tmp_storage):
        for group in range(2):
            for i in range(3):
                vec = [0.0, 0.0, 0.0, 0.0]
                vec[group] = 1.0
                vec[group + 1] = 0.01 * i
                tmp_storage.store_memory(content=f"group {group} item {i}", vector=vec)
            await run_consolidation(tmp_storage, min_similarity=0.95)

        records = get_consolidations(tmp_storage)
        assert len(records) == 2
        assert records[0]["created_at"] >= records[1]["created_at"]
