"""Source record types and the paginated source contract used by sync jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from app.models.knowledge_chunk import Collection
from app.services.errors import ConfigurationError


@dataclass
class LogEntry:
    """One entry of a ticket's public or private log."""

    date: str
    user_login: str
    message: str = ""
    message_html: str = ""


@dataclass
class SourceRecord:
    """An external textual entity owned by the source system (read-only here)."""

    record_id: str
    collection: Collection
    reference: str
    title: str
    body: str = ""
    updated_at: Optional[datetime] = None
    folder_id: Optional[str] = None
    status: Optional[str] = None
    severity: Optional[str] = None
    priority: Optional[str] = None
    impact: Optional[str] = None
    urgency: Optional[str] = None
    team: Optional[str] = None
    agent: Optional[str] = None
    service: Optional[str] = None
    origin: Optional[str] = None
    caller: Optional[str] = None
    supervisor: Optional[str] = None
    change_type: Optional[str] = None
    outage: Optional[str] = None
    fallback: Optional[str] = None
    start_date: Optional[str] = None
    log_entries: List[LogEntry] = field(default_factory=list)


@dataclass
class SourcePage:
    records: List[SourceRecord]
    page: int
    limit: int


class RecordSource(Protocol):
    """Paginated, filterable access to one collection in the source system.

    ``organization_id`` scopes sources that hold several tenants' records;
    a single-tenant source such as iTop ignores it.
    """

    async def count(
        self,
        collection: Collection,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> int:
        ...

    async def fetch_page(
        self,
        collection: Collection,
        page: int,
        limit: int,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> SourcePage:
        ...


class CollectionSources:
    """RecordSource that hands each collection to the source that owns it."""

    def __init__(self, sources: Dict[Collection, RecordSource]):
        self._sources = dict(sources)

    def source_for(self, collection: Collection) -> RecordSource:
        try:
            return self._sources[collection]
        except KeyError:
            raise ConfigurationError(f"No record source configured for {collection.value} records") from None

    async def count(
        self,
        collection: Collection,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> int:
        return await self.source_for(collection).count(collection, modified_after, organization_id)

    async def fetch_page(
        self,
        collection: Collection,
        page: int,
        limit: int,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> SourcePage:
        return await self.source_for(collection).fetch_page(
            collection, page, limit, modified_after, organization_id
        )

    async def aclose(self) -> None:
        closed = set()
        for source in self._sources.values():
            close = getattr(source, "aclose", None)
            if close is not None and id(source) not in closed:
                closed.add(id(source))
                await close()
