"""Tests for chunk persistence and similarity search (SQLite backend)."""

from datetime import timedelta

import pytest

from app.models.knowledge_chunk import ChunkMetadata
from app.services.vector_store import ChunkRecord, SearchFilter, cosine_distance, similarity_from_distance
from tests.fakes import BASE_TIME, keyword_vector

ORG = "org-1"


def _chunk(record_id, index, content, org=ORG, collection="incident", folder_id=None, updated_at=BASE_TIME):
    return ChunkRecord(
        organization_id=org,
        collection=collection,
        source_record_id=record_id,
        chunk_index=index,
        content=content,
        embedding=keyword_vector(content),
        metadata=ChunkMetadata(status="resolved"),
        source_updated_at=updated_at,
        reference=f"I-{record_id}",
        title=f"Record {record_id}",
        folder_id=folder_id,
    )


class TestDistanceHelpers:
    def test_identical_vectors_have_zero_distance(self):
        assert cosine_distance([1.0, 2.0], [1.0, 2.0]) == pytest.approx(0.0)

    def test_zero_vector_is_maximally_distant(self):
        assert cosine_distance([0.0, 0.0], [1.0, 0.0]) == 1.0

    def test_similarity_is_clamped(self):
        assert similarity_from_distance(1.7) == 0.0
        assert similarity_from_distance(-0.0000001) == 1.0
        assert similarity_from_distance(0.25) == pytest.approx(0.75)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_upsert_twice_keeps_one_row(self, store):
        await store.upsert(_chunk("1", 0, "vpn outage"))
        await store.upsert(_chunk("1", 0, "vpn outage resolved by firewall change"))

        assert await store.stats(ORG, "incident") == (1, 1)
        results = await store.search(keyword_vector("firewall"), SearchFilter(organization_id=ORG))
        assert results[0].content == "vpn outage resolved by firewall change"

    @pytest.mark.asyncio
    async def test_replace_record_chunks_drops_leftovers(self, store):
        chunks = [_chunk("1", i, f"database part {i}") for i in range(3)]
        await store.replace_record_chunks(ORG, "incident", "1", chunks)

        await store.replace_record_chunks(ORG, "incident", "1", [_chunk("1", 0, "database summary")])

        assert await store.stats(ORG, "incident") == (1, 1)

    @pytest.mark.asyncio
    async def test_replace_with_no_chunks_removes_record(self, store):
        await store.replace_record_chunks(ORG, "incident", "1", [_chunk("1", 0, "printer jam")])

        await store.replace_record_chunks(ORG, "incident", "1", [])

        assert await store.stats(ORG, "incident") == (0, 0)

    @pytest.mark.asyncio
    async def test_delete_all_chunks(self, store):
        await store.replace_record_chunks(ORG, "incident", "1", [_chunk("1", i, "email") for i in range(2)])
        await store.upsert(_chunk("2", 0, "email bounce"))

        assert await store.delete_all_chunks(ORG, "incident", "1") == 2
        assert await store.stats(ORG, "incident") == (1, 1)

    @pytest.mark.asyncio
    async def test_max_watermark(self, store):
        assert await store.max_watermark(ORG, "incident") is None

        await store.upsert(_chunk("1", 0, "disk", updated_at=BASE_TIME))
        await store.upsert(_chunk("2", 0, "disk", updated_at=BASE_TIME + timedelta(hours=3)))
        await store.upsert(_chunk("3", 0, "disk", collection="change", updated_at=BASE_TIME + timedelta(days=1)))

        assert await store.max_watermark(ORG, "incident") == BASE_TIME + timedelta(hours=3)


class TestSearch:
    @pytest.mark.asyncio
    async def test_results_are_ordered_by_similarity(self, store):
        await store.upsert(_chunk("1", 0, "printer toner empty"))
        await store.upsert(_chunk("2", 0, "vpn vpn tunnel down"))
        await store.upsert(_chunk("3", 0, "vpn and firewall rules"))

        results = await store.search(keyword_vector("vpn"), SearchFilter(organization_id=ORG), limit=10)

        assert [r.source_record_id for r in results] == ["2", "3", "1"]
        similarities = [r.similarity for r in results]
        assert similarities == sorted(similarities, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in similarities)

    @pytest.mark.asyncio
    async def test_limit_and_filters(self, store):
        await store.upsert(_chunk("1", 0, "network outage", folder_id="A"))
        await store.upsert(_chunk("2", 0, "network outage", folder_id="B"))
        await store.upsert(_chunk("3", 0, "network outage", org="org-2"))
        await store.upsert(_chunk("4", 0, "network outage", collection="change"))

        query = keyword_vector("network")
        assert len(await store.search(query, SearchFilter(organization_id=ORG), limit=1)) == 1
        in_folder = await store.search(query, SearchFilter(organization_id=ORG, folder_id="B"))
        assert [r.source_record_id for r in in_folder] == ["2"]
        incidents = await store.search(query, SearchFilter(organization_id=ORG, collection="incident"))
        assert sorted(r.source_record_id for r in incidents) == ["1", "2"]

    @pytest.mark.asyncio
    async def test_ties_break_by_chunk_id(self, store):
        for record_id in ("1", "2", "3"):
            await store.upsert(_chunk(record_id, 0, "login failure"))

        results = await store.search(keyword_vector("login"), SearchFilter(organization_id=ORG))

        ids = [r.chunk_id for r in results]
        assert ids == sorted(ids)

    @pytest.mark.asyncio
    async def test_non_positive_limit_returns_nothing(self, store):
        await store.upsert(_chunk("1", 0, "vpn"))

        assert await store.search(keyword_vector("vpn"), SearchFilter(organization_id=ORG), limit=0) == []


class TestNearestToRecord:
    @pytest.mark.asyncio
    async def test_unknown_record_returns_empty(self, store):
        assert await store.nearest_to_record(ORG, "incident", "missing") == []

    @pytest.mark.asyncio
    async def test_compares_first_chunks_and_excludes_self(self, store):
        await store.replace_record_chunks(
            ORG, "incident", "1", [_chunk("1", 0, "vpn tunnel down"), _chunk("1", 1, "database")]
        )
        await store.replace_record_chunks(
            ORG, "incident", "2", [_chunk("2", 0, "printer offline"), _chunk("2", 1, "vpn vpn vpn")]
        )
        await store.upsert(_chunk("3", 0, "vpn gateway restart"))

        results = await store.nearest_to_record(ORG, "incident", "1", limit=5)

        assert [r.source_record_id for r in results] == ["3", "2"]
        assert all(r.chunk_index == 0 for r in results)
