"""Wires the knowledge services together and exposes them as a singleton."""

from __future__ import annotations

from typing import Optional

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config.logger import app_logger
from app.config.settings import settings
from app.db.db import get_session_maker
from app.models.knowledge_chunk import Collection
from app.services.answer_composer import AnswerComposer
from app.services.document_source import DocumentSource
from app.services.embeddings import EmbeddingClient
from app.services.errors import ConfigurationError
from app.services.itop_source import ITopSource
from app.services.retriever import Retriever
from app.services.sources import CollectionSources, RecordSource
from app.services.sync_manager import SyncJobManager
from app.services.vector_store import VectorStore

_knowledge_base: Optional["KnowledgeBase"] = None


class KnowledgeBase:
    """Holds the store, retrieval services, the document library and the sync manager."""

    def __init__(
        self,
        store: VectorStore,
        retriever: Retriever,
        composer: AnswerComposer,
        sync_manager: Optional[SyncJobManager] = None,
        source: Optional[RecordSource] = None,
        documents: Optional[DocumentSource] = None,
    ):
        self.store = store
        self.retriever = retriever
        self.composer = composer
        self._sync_manager = sync_manager
        self._source = source
        self._documents = documents

    @property
    def sync_manager(self) -> SyncJobManager:
        if self._sync_manager is None:
            raise ConfigurationError("No record source is configured; syncs are disabled")
        return self._sync_manager

    @property
    def documents(self) -> DocumentSource:
        if self._documents is None:
            raise ConfigurationError("The document library is not configured")
        return self._documents

    async def aclose(self) -> None:
        close = getattr(self._source, "aclose", None)
        if close is not None:
            await close()


def build_record_sources(documents: DocumentSource) -> CollectionSources:
    """Documents come from the library; incidents and changes from iTop when configured."""
    sources = {Collection.DOCUMENT: documents}
    if settings.ITOP_BASE_URL:
        itop = ITopSource()
        sources[Collection.INCIDENT] = itop
        sources[Collection.CHANGE] = itop
    else:
        app_logger.warning("ITOP_BASE_URL not set; incident and change syncs are disabled")
    return CollectionSources(sources)


def build_knowledge_base(
    session_maker: async_sessionmaker,
    source: Optional[RecordSource] = None,
    openai_client: Optional[AsyncOpenAI] = None,
) -> KnowledgeBase:
    """Assemble the services. Raises ConfigurationError without an OpenAI key."""
    if openai_client is None:
        if not settings.OPENAI_API_KEY:
            raise ConfigurationError("OPENAI_API_KEY must be configured")
        openai_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)

    documents = DocumentSource(session_maker)
    if source is None:
        source = build_record_sources(documents)

    store = VectorStore(session_maker)
    embedder = EmbeddingClient(client=openai_client)
    retriever = Retriever(embedder, store)
    composer = AnswerComposer(retriever, client=openai_client)
    sync_manager = SyncJobManager(session_maker, source, embedder, store)

    return KnowledgeBase(
        store,
        retriever,
        composer,
        sync_manager=sync_manager,
        source=source,
        documents=documents,
    )


def get_knowledge_base() -> KnowledgeBase:
    """FastAPI dependency returning the process-wide knowledge base."""
    global _knowledge_base
    if _knowledge_base is None:
        try:
            session_maker = get_session_maker()
        except RuntimeError as exc:
            raise ConfigurationError(str(exc)) from exc
        _knowledge_base = build_knowledge_base(session_maker)
        app_logger.info("Knowledge base services initialized")
    return _knowledge_base


async def shutdown_knowledge_base() -> None:
    global _knowledge_base
    if _knowledge_base is not None:
        await _knowledge_base.aclose()
        _knowledge_base = None
