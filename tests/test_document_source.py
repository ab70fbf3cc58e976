"""
Tests for the document library and folder-scoped retrieval.

Covers:
- Saving, replacing and deleting documents per organization
- Paging documents to sync jobs
- Folder filters on search, answers and the HTTP routes
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import httpx
import pytest
import pytest_asyncio

from app.main import app
from app.models.knowledge_chunk import Collection
from app.models.sync_job import SyncStatus
from app.services.answer_composer import SYSTEM_PROMPTS, AnswerComposer
from app.services.document_source import DocumentSource
from app.services.errors import ConfigurationError
from app.services.knowledge_base import KnowledgeBase, get_knowledge_base
from app.services.retriever import Retriever
from app.services.sources import CollectionSources
from app.services.sync_manager import SyncJobManager
from app.utils.dates import as_utc
from tests.fakes import chat_completion

ORG = "org-1"

POLICIES = [
    ("pol-vpn", "VPN Access Policy", "network", "Remote vpn access requires a managed device.\n\nVpn sessions expire after 8 hours."),
    ("pol-fw", "Firewall Standard", "network", "Firewall rules are reviewed quarterly.\n\nVpn gateways sit behind the firewall."),
    ("pol-hr", "Onboarding Procedure", "hr", "New starters receive an email account and a login on day one. Vpn access is requested by the manager."),
]


@pytest.fixture
def documents(session_maker) -> DocumentSource:
    return DocumentSource(session_maker)


@pytest.fixture
def manager(session_maker, documents, embedder, store) -> SyncJobManager:
    return SyncJobManager(
        session_maker,
        CollectionSources({Collection.DOCUMENT: documents}),
        embedder,
        store,
        page_size=2,
        page_delay_seconds=0,
        cooldown_seconds=0,
    )


async def _save_policies(documents, organization_id=ORG):
    for external_id, name, folder_id, content in POLICIES:
        await documents.save_document(organization_id, external_id, name, content, folder_id=folder_id)


async def _sync(manager, mode="full"):
    result = await manager.start_sync(ORG, Collection.DOCUMENT, mode)
    return await manager.wait_for_job(result.job_id)


class TestDocumentLibrary:
    @pytest.mark.asyncio
    async def test_save_and_get(self, documents):
        saved = await documents.save_document(ORG, "pol-vpn", "VPN Access Policy", "vpn rules", folder_id="network")

        fetched = await documents.get_document(ORG, "pol-vpn")

        assert fetched.id == saved.id
        assert (fetched.name, fetched.folder_id, fetched.mime_type) == ("VPN Access Policy", "network", "text/plain")
        assert await documents.get_document("org-2", "pol-vpn") is None

    @pytest.mark.asyncio
    async def test_unchanged_save_keeps_watermark(self, documents):
        first = await documents.save_document(ORG, "pol-vpn", "VPN Access Policy", "vpn rules")
        again = await documents.save_document(ORG, "pol-vpn", "VPN Access Policy", "vpn rules")

        assert again.id == first.id
        assert as_utc(again.updated_at) == as_utc(first.updated_at)

    @pytest.mark.asyncio
    async def test_changed_save_moves_watermark(self, documents):
        first = await documents.save_document(ORG, "pol-vpn", "VPN Access Policy", "vpn rules")
        edited = await documents.save_document(ORG, "pol-vpn", "VPN Access Policy", "vpn rules, revised", folder_id="network")

        assert edited.id == first.id
        assert edited.folder_id == "network"
        assert as_utc(edited.updated_at) > as_utc(first.updated_at)

    @pytest.mark.asyncio
    async def test_delete(self, documents):
        await documents.save_document(ORG, "pol-vpn", "VPN Access Policy", "vpn rules")

        assert await documents.delete_document(ORG, "pol-vpn") is True
        assert await documents.delete_document(ORG, "pol-vpn") is False
        assert await documents.get_document(ORG, "pol-vpn") is None

    @pytest.mark.asyncio
    async def test_pages_are_scoped_to_the_organization(self, documents):
        await _save_policies(documents)
        await documents.save_document("org-2", "other", "Other tenant", "vpn vpn vpn")

        assert await documents.count(Collection.DOCUMENT, organization_id=ORG) == 3
        first = await documents.fetch_page(Collection.DOCUMENT, 1, 2, organization_id=ORG)
        second = await documents.fetch_page(Collection.DOCUMENT, 2, 2, organization_id=ORG)

        assert [r.record_id for r in first.records + second.records] == ["pol-vpn", "pol-fw", "pol-hr"]
        assert first.records[0].folder_id == "network"
        assert first.records[0].collection == Collection.DOCUMENT
        assert first.records[0].updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_only_serves_documents(self, documents):
        with pytest.raises(ConfigurationError):
            await documents.count(Collection.INCIDENT, organization_id=ORG)

    @pytest.mark.asyncio
    async def test_unrouted_collection_is_a_configuration_error(self, documents):
        sources = CollectionSources({Collection.DOCUMENT: documents})

        with pytest.raises(ConfigurationError, match="incident"):
            await sources.fetch_page(Collection.INCIDENT, 1, 10, organization_id=ORG)


class TestDocumentSync:
    @pytest.mark.asyncio
    async def test_documents_are_indexed_with_their_folder(self, manager, documents, store):
        await _save_policies(documents)

        job = await _sync(manager)

        assert job.status == SyncStatus.COMPLETED.value
        assert (job.progress, job.total) == (3, 3)
        assert await store.stats(ORG, "document") == (3, 3)

    @pytest.mark.asyncio
    async def test_incremental_sync_picks_up_edits_only(self, manager, documents, embedder):
        await _save_policies(documents)
        await _sync(manager)
        embedder.calls.clear()

        await documents.save_document(ORG, "pol-hr", "Onboarding Procedure", "Laptops ship with disk encryption.", folder_id="hr")
        job = await _sync(manager, mode="incremental")

        assert (job.mode, job.progress, job.total) == ("incremental", 1, 1)
        assert embedder.calls == [["Document pol-hr: Onboarding Procedure\n\nLaptops ship with disk encryption."]]


class TestFolderScopedRetrieval:
    @pytest_asyncio.fixture
    async def indexed(self, manager, documents):
        await _save_policies(documents)
        await _sync(manager)

    @pytest.mark.asyncio
    async def test_search_honours_folder(self, indexed, embedder, store):
        retriever = Retriever(embedder, store)

        network = await retriever.search("vpn", ORG, collection=Collection.DOCUMENT, folder_id="network")
        everything = await retriever.search("vpn", ORG, collection=Collection.DOCUMENT)
        missing = await retriever.search("vpn", ORG, collection=Collection.DOCUMENT, folder_id="finance")

        assert {r.source_record_id for r in network} == {"pol-vpn", "pol-fw"}
        assert {r.folder_id for r in network} == {"network"}
        assert {r.source_record_id for r in everything} == {"pol-vpn", "pol-fw", "pol-hr"}
        assert missing == []

    @pytest.mark.asyncio
    async def test_answer_uses_policy_prompt_and_folder(self, indexed, embedder, store):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=chat_completion("Sessions expire after 8 hours [Source 1]."))
        composer = AnswerComposer(Retriever(embedder, store), client=client)

        answer = await composer.ask("vpn", ORG, collection="document", folder_id="hr")

        assert [source.source_record_id for source in answer.sources] == ["pol-hr"]
        system, user = client.chat.completions.create.await_args.kwargs["messages"]
        assert system["content"] == SYSTEM_PROMPTS[Collection.DOCUMENT]
        assert "Based on these ISMS policy excerpts, answer:" in user["content"]
        assert "[Source 1: pol-hr - Onboarding Procedure]" in user["content"]


class TestDocumentRoutes:
    @pytest_asyncio.fixture
    async def api(self, session_maker, documents, manager, embedder, store):
        retriever = Retriever(embedder, store)
        kb = KnowledgeBase(
            store,
            retriever,
            AnswerComposer(retriever, client=MagicMock()),
            sync_manager=manager,
            documents=documents,
        )
        app.dependency_overrides[get_knowledge_base] = lambda: kb
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            yield client
        app.dependency_overrides.clear()

    @pytest.mark.asyncio
    async def test_save_sync_and_search_by_folder(self, api, manager):
        for external_id, name, folder_id, content in POLICIES:
            response = await api.put(
                f"/v1/knowledge/documents/{external_id}",
                json={"organization_id": ORG, "name": name, "content": content, "folder_id": folder_id},
            )
            assert response.status_code == 200
        assert response.json()["data"]["folder_id"] == "hr"

        started = await api.post("/v1/knowledge/document/sync", json={"organization_id": ORG, "mode": "full"})
        assert started.status_code == 202
        await manager.wait_for_job(UUID(started.json()["data"]["job_id"]))

        response = await api.get(
            "/v1/knowledge/document/search",
            params={"organization_id": ORG, "q": "firewall", "folder_id": "network"},
        )

        assert response.status_code == 200
        results = response.json()["data"]["results"]
        assert results[0]["source_record_id"] == "pol-fw"
        assert {hit["folder_id"] for hit in results} == {"network"}

    @pytest.mark.asyncio
    async def test_delete_removes_chunks(self, api, documents, manager, store):
        await _save_policies(documents)
        await _sync(manager)

        response = await api.delete("/v1/knowledge/documents/pol-vpn", params={"organization_id": ORG})

        assert response.status_code == 200
        assert response.json()["message"] == "Document deleted (1 chunks removed)"
        assert await store.stats(ORG, "document") == (2, 2)

    @pytest.mark.asyncio
    async def test_unknown_document_is_404(self, api):
        response = await api.get("/v1/knowledge/documents/nope", params={"organization_id": ORG})

        assert response.status_code == 404
        assert response.json()["error"] == "DocumentNotFoundError"
