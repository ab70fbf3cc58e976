"""Database-backed document library exposed as a paginated record source."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.config.logger import app_logger
from app.models.document import Document
from app.models.knowledge_chunk import Collection
from app.services.errors import ConfigurationError
from app.services.sources import SourcePage, SourceRecord
from app.utils.dates import as_utc, utcnow


def to_source_record(document: Document) -> SourceRecord:
    return SourceRecord(
        record_id=document.external_id,
        collection=Collection.DOCUMENT,
        reference=document.external_id,
        title=document.name,
        body=document.content,
        updated_at=as_utc(document.updated_at),
        folder_id=document.folder_id,
    )


class DocumentSource:
    """Stores extracted document text per organization and serves it to sync jobs.

    Documents are paged in (updated_at, id) order so an incremental run
    sees edits in the order they were saved.
    """

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def save_document(
        self,
        organization_id: str,
        external_id: str,
        name: str,
        content: str,
        folder_id: Optional[str] = None,
        mime_type: str = "text/plain",
    ) -> Document:
        """Insert or replace a document.

        updated_at only moves when the name, folder or text changed, so an
        unchanged save does not trigger re-indexing.
        """
        async with self._session_maker() as session:
            result = await session.execute(
                select(Document).where(
                    Document.organization_id == organization_id,
                    Document.external_id == external_id,
                )
            )
            document = result.scalars().first()
            if document is None:
                document = Document(
                    organization_id=organization_id,
                    external_id=external_id,
                    name=name,
                    folder_id=folder_id,
                    mime_type=mime_type,
                    content=content,
                )
                session.add(document)
                app_logger.info(f"Document {external_id} registered for {organization_id}")
            elif (document.name, document.folder_id, document.content) != (name, folder_id, content):
                document.name = name
                document.folder_id = folder_id
                document.mime_type = mime_type
                document.content = content
                document.updated_at = utcnow()
                app_logger.info(f"Document {external_id} updated for {organization_id}")
            await session.commit()
            await session.refresh(document)
            return document

    async def get_document(self, organization_id: str, external_id: str) -> Optional[Document]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Document).where(
                    Document.organization_id == organization_id,
                    Document.external_id == external_id,
                )
            )
            return result.scalars().first()

    async def delete_document(self, organization_id: str, external_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Document).where(
                    Document.organization_id == organization_id,
                    Document.external_id == external_id,
                )
            )
            document = result.scalars().first()
            if document is None:
                return False
            await session.delete(document)
            await session.commit()
        app_logger.info(f"Document {external_id} deleted for {organization_id}")
        return True

    @staticmethod
    def _conditions(
        collection: Collection,
        modified_after: Optional[datetime],
        organization_id: Optional[str],
    ) -> list:
        if collection != Collection.DOCUMENT:
            raise ConfigurationError(f"The document library holds no {collection.value} records")
        conditions = []
        if organization_id is not None:
            conditions.append(Document.organization_id == organization_id)
        if modified_after is not None:
            conditions.append(Document.updated_at > modified_after)
        return conditions

    async def count(
        self,
        collection: Collection,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> int:
        conditions = self._conditions(collection, modified_after, organization_id)
        async with self._session_maker() as session:
            result = await session.execute(select(func.count(Document.id)).where(*conditions))
            return result.scalar() or 0

    async def fetch_page(
        self,
        collection: Collection,
        page: int,
        limit: int,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> SourcePage:
        """Fetch one page (1-based) of documents."""
        conditions = self._conditions(collection, modified_after, organization_id)
        async with self._session_maker() as session:
            result = await session.execute(
                select(Document)
                .where(*conditions)
                .order_by(Document.updated_at, Document.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            documents = result.scalars().all()
        return SourcePage(records=[to_source_record(doc) for doc in documents], page=page, limit=limit)
