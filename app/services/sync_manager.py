"""Sync job lifecycle: start, run, resume and report ingestion runs.

A sync job pulls one collection from the source system page by page,
builds record text, chunks it, embeds each page in a single batched call
and replaces each record's chunks in the vector store. Job rows in
``sync_jobs`` are the durable audit trail; the running asyncio task is only
an in-process handle.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.config.logger import app_logger, log_performance
from app.config.settings import settings
from app.models.knowledge_chunk import Collection
from app.models.sync_job import SyncJob, SyncMode, SyncStatus
from app.services.chunker import chunk_text
from app.services.embeddings import EmbeddingClient
from app.services.errors import EmbeddingError, JobNotFoundError, PerRecordError, RunFailure, SyncCooldownError
from app.services.record_text import build_chunk_metadata, build_record_text, record_header
from app.services.sources import RecordSource, SourceRecord
from app.services.vector_store import ChunkRecord, VectorStore
from app.utils.dates import as_utc, utcnow


@dataclass
class SyncStartResult:
    job_id: UUID
    mode: str
    reused: bool = False
    resumed: bool = False


@dataclass
class SyncJobStatus:
    """Read-only snapshot of a sync job row."""

    id: UUID
    organization_id: str
    type: str
    mode: str
    status: str
    progress: int
    total: int
    error: Optional[str]
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]
    resumed_from_job_id: Optional[UUID] = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobStatus":
        return cls(
            id=job.id,
            organization_id=job.organization_id,
            type=job.type,
            mode=job.mode,
            status=job.status,
            progress=job.progress,
            total=job.total,
            error=job.error,
            started_at=as_utc(job.started_at),
            updated_at=as_utc(job.updated_at),
            completed_at=as_utc(job.completed_at),
            resumed_from_job_id=job.resumed_from_job_id,
        )


@dataclass
class IncompleteSync:
    progress: int
    total: int


@dataclass
class KnowledgeBaseStatus:
    indexed_records: int
    total_chunks: int
    last_sync: Optional[SyncJobStatus]
    incomplete_sync: Optional[IncompleteSync]


@dataclass
class PageResult:
    processed: int
    errors: int
    chunks: int


class SyncJobManager:
    """Starts and tracks sync jobs for (organization, collection) pairs.

    Guarantees:
      * at most one running job per pair (partial unique index on sync_jobs)
      * a new run is refused within ``cooldown_seconds`` of the last one ending
      * a job that stopped heartbeating for ``stale_after_seconds`` is marked
        failed so it no longer blocks new runs
      * an interrupted full run is resumed from the page after its last
        completed one
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        source: RecordSource,
        embedder: EmbeddingClient,
        store: VectorStore,
        page_size: int = settings.SYNC_PAGE_SIZE,
        page_delay_seconds: float = settings.SYNC_PAGE_DELAY_SECONDS,
        cooldown_seconds: int = settings.SYNC_COOLDOWN_SECONDS,
        stale_after_seconds: int = settings.SYNC_STALE_AFTER_SECONDS,
        max_single_chunk_chars: int = settings.MAX_SINGLE_CHUNK_CHARS,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._session_maker = session_maker
        self._source = source
        self._embedder = embedder
        self._store = store
        self.page_size = page_size
        self.page_delay_seconds = page_delay_seconds
        self.cooldown_seconds = cooldown_seconds
        self.stale_after_seconds = stale_after_seconds
        self.max_single_chunk_chars = max_single_chunk_chars
        self._tasks: Dict[UUID, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Starting jobs
    # ------------------------------------------------------------------

    async def start_sync(
        self,
        organization_id: str,
        collection: Union[Collection, str],
        mode: Union[SyncMode, str] = SyncMode.INCREMENTAL,
    ) -> SyncStartResult:
        """Start (or join) a sync run and return its job id immediately.

        Raises:
            SyncCooldownError: the previous run ended less than
                ``cooldown_seconds`` ago.
            SourceError: the source could not be counted.
        """
        collection = Collection(collection)
        mode = SyncMode(mode)
        if mode == SyncMode.RESUME:
            raise ValueError("Resume is chosen automatically; request 'full' or 'incremental'")

        await self.reap_abandoned_jobs(organization_id, collection)

        async with self._session_maker() as session:
            running = await self._running_job(session, organization_id, collection)
            if running:
                app_logger.info(
                    f"SYNC already running for {organization_id}/{collection.value}: job {running.id}"
                )
                return SyncStartResult(job_id=running.id, mode=running.mode, reused=True)
            await self._check_cooldown(session, organization_id, collection)

        modified_after: Optional[datetime] = None
        effective_mode = mode
        if mode == SyncMode.INCREMENTAL:
            modified_after = await self._store.max_watermark(organization_id, collection.value)
            if modified_after is None:
                app_logger.info(
                    f"SYNC no watermark for {organization_id}/{collection.value}, running full sync"
                )
                effective_mode = SyncMode.FULL

        total = await self._source.count(collection, modified_after, organization_id)

        if mode == SyncMode.INCREMENTAL and total == 0:
            incomplete = await self._latest_incomplete_job(organization_id, collection)
            if incomplete:
                return await self._resume(organization_id, collection, incomplete)

            job = SyncJob(
                organization_id=organization_id,
                type=collection.value,
                mode=SyncMode.INCREMENTAL.value,
                status=SyncStatus.COMPLETED.value,
                completed_at=utcnow(),
            )
            async with self._session_maker() as session:
                session.add(job)
                await session.commit()
            app_logger.info(f"SYNC {organization_id}/{collection.value} already up to date")
            return SyncStartResult(job_id=job.id, mode=SyncMode.INCREMENTAL.value)

        job, reused = await self._insert_running_job(
            SyncJob(
                organization_id=organization_id,
                type=collection.value,
                mode=effective_mode.value,
                total=total,
            )
        )
        if reused:
            return SyncStartResult(job_id=job.id, mode=job.mode, reused=True)

        app_logger.info(
            f"SYNC started {effective_mode.value} job {job.id} for "
            f"{organization_id}/{collection.value}: {total} records"
        )
        self._launch(job.id, organization_id, collection, total, modified_after)
        return SyncStartResult(job_id=job.id, mode=effective_mode.value)

    async def _resume(
        self,
        organization_id: str,
        collection: Collection,
        incomplete: SyncJob,
    ) -> SyncStartResult:
        start_page = incomplete.progress // self.page_size + 1
        total = await self._source.count(collection, None, organization_id)
        job, reused = await self._insert_running_job(
            SyncJob(
                organization_id=organization_id,
                type=collection.value,
                mode=SyncMode.RESUME.value,
                total=total,
                progress=min(incomplete.progress, total),
                resumed_from_job_id=incomplete.id,
            )
        )
        if reused:
            return SyncStartResult(job_id=job.id, mode=job.mode, reused=True)

        app_logger.info(
            f"SYNC resuming job {incomplete.id} as {job.id} for {organization_id}/{collection.value} "
            f"from page {start_page} ({incomplete.progress}/{total} done)"
        )
        self._launch(
            job.id,
            organization_id,
            collection,
            total,
            modified_after=None,
            start_page=start_page,
            initial_processed=(start_page - 1) * self.page_size,
        )
        return SyncStartResult(job_id=job.id, mode=SyncMode.RESUME.value, resumed=True)

    async def _insert_running_job(self, job: SyncJob) -> Tuple[SyncJob, bool]:
        """Insert a running job; on a lost race return the winner instead."""
        async with self._session_maker() as session:
            session.add(job)
            try:
                await session.commit()
                return job, False
            except IntegrityError:
                await session.rollback()
                existing = await self._running_job(session, job.organization_id, Collection(job.type))
                if existing is None:
                    raise
                app_logger.info(f"SYNC concurrent start detected, joining job {existing.id}")
                return existing, True

    def _launch(
        self,
        job_id: UUID,
        organization_id: str,
        collection: Collection,
        total: int,
        modified_after: Optional[datetime] = None,
        start_page: int = 1,
        initial_processed: int = 0,
    ) -> None:
        task = asyncio.create_task(
            self.run_job(job_id, organization_id, collection, total, modified_after, start_page, initial_processed),
            name=f"sync-{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda done: self._forget_task(job_id, done))

    def _forget_task(self, job_id: UUID, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            app_logger.warning(f"SYNC job {job_id}: task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            app_logger.error(f"SYNC job {job_id}: task ended with {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    async def _running_job(session: AsyncSession, organization_id: str, collection: Collection) -> Optional[SyncJob]:
        result = await session.execute(
            select(SyncJob).where(
                SyncJob.organization_id == organization_id,
                SyncJob.type == collection.value,
                SyncJob.status == SyncStatus.RUNNING.value,
            ).limit(1)
        )
        return result.scalars().first()

    async def _check_cooldown(self, session: AsyncSession, organization_id: str, collection: Collection) -> None:
        if self.cooldown_seconds <= 0:
            return
        now = utcnow()
        result = await session.execute(
            select(SyncJob.completed_at)
            .where(
                SyncJob.organization_id == organization_id,
                SyncJob.type == collection.value,
                SyncJob.status != SyncStatus.RUNNING.value,
                SyncJob.completed_at.is_not(None),
            )
            .order_by(SyncJob.completed_at.desc())
            .limit(1)
        )
        last_completed = as_utc(result.scalar())
        if last_completed is None:
            return
        elapsed = (now - last_completed).total_seconds()
        if elapsed < self.cooldown_seconds:
            wait_seconds = max(1, math.ceil(self.cooldown_seconds - elapsed))
            app_logger.info(f"SYNC cooldown for {organization_id}/{collection.value}: {wait_seconds}s left")
            raise SyncCooldownError(wait_seconds)

    async def reap_abandoned_jobs(self, organization_id: str, collection: Union[Collection, str]) -> int:
        """Fail running jobs whose heartbeat is older than ``stale_after_seconds``.

        The job's completion time is set to its last heartbeat so reaping a
        long-dead job does not start a fresh cooldown window. Jobs with a live
        task in this process are left alone.
        """
        collection = Collection(collection)
        threshold = utcnow() - timedelta(seconds=self.stale_after_seconds)
        async with self._session_maker() as session:
            result = await session.execute(
                select(SyncJob).where(
                    SyncJob.organization_id == organization_id,
                    SyncJob.type == collection.value,
                    SyncJob.status == SyncStatus.RUNNING.value,
                    SyncJob.updated_at < threshold,
                )
            )
            reaped = 0
            for job in result.scalars().all():
                if job.id in self._tasks:
                    continue
                heartbeat = as_utc(job.updated_at)
                job.status = SyncStatus.FAILED.value
                job.error = f"Abandoned: no progress since {heartbeat.isoformat()}"
                job.completed_at = heartbeat
                reaped += 1
                app_logger.warning(
                    f"SYNC reaped abandoned job {job.id} for {organization_id}/{collection.value} "
                    f"at {job.progress}/{job.total}"
                )
            if reaped:
                await session.commit()
        return reaped

    async def _latest_incomplete_job(self, organization_id: str, collection: Collection) -> Optional[SyncJob]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(SyncJob)
                .where(
                    SyncJob.organization_id == organization_id,
                    SyncJob.type == collection.value,
                    SyncJob.status != SyncStatus.RUNNING.value,
                    SyncJob.total > 0,
                )
                .order_by(SyncJob.started_at.desc())
                .limit(1)
            )
            job = result.scalars().first()
        if job and job.progress < job.total:
            return job
        return None

    # ------------------------------------------------------------------
    # Running jobs
    # ------------------------------------------------------------------

    async def run_job(
        self,
        job_id: UUID,
        organization_id: str,
        collection: Collection,
        total: int,
        modified_after: Optional[datetime] = None,
        start_page: int = 1,
        initial_processed: int = 0,
    ) -> SyncJobStatus:
        """Process pages until the source is exhausted; record the outcome on the job row."""
        started = time.time()
        processed = initial_processed
        errors = 0
        chunks = 0
        total_pages = math.ceil(total / self.page_size)

        try:
            for page in range(start_page, total_pages + 1):
                batch = await self._source.fetch_page(
                    collection, page, self.page_size, modified_after, organization_id
                )
                if not batch.records:
                    app_logger.warning(f"SYNC job {job_id}: page {page} came back empty, stopping early")
                    break

                result = await self._process_page(batch.records, organization_id, collection)
                processed += result.processed
                errors += result.errors
                chunks += result.chunks
                await self._record_progress(job_id, min(processed, total))
                app_logger.info(
                    f"SYNC job {job_id}: page {page}/{total_pages} done, "
                    f"{min(processed, total)}/{total} records, {errors} errors"
                )

                if page < total_pages:
                    await asyncio.sleep(self.page_delay_seconds)

            if processed < total:
                app_logger.warning(
                    f"SYNC job {job_id}: source yielded {processed} of {total} counted records"
                )
                total = processed
            error = f"Completed with {errors} errors" if errors else None
            await self._finish(job_id, SyncStatus.COMPLETED, min(processed, total), total, error)
            log_performance(
                "sync_job",
                time.time() - started,
                job_id=str(job_id),
                collection=collection.value,
                records=processed,
                chunks=chunks,
                errors=errors,
            )
        except Exception as exc:
            app_logger.error(f"SYNC job {job_id} failed after {processed}/{total} records: {exc}")
            try:
                await self._finish(job_id, SyncStatus.FAILED, min(processed, total), total, str(exc) or type(exc).__name__)
            except SQLAlchemyError as db_exc:
                app_logger.error(f"SYNC job {job_id}: could not record failure: {db_exc}")
                raise RunFailure(str(exc)) from exc

        return await self.get_job_status(job_id)

    def _record_texts(self, record: SourceRecord) -> List[str]:
        text = build_record_text(record)
        if not text:
            return []
        if len(text) <= self.max_single_chunk_chars:
            return [text]
        header = record_header(record) + "\n"
        return [header + chunk.content for chunk in chunk_text(text)]

    async def _process_page(
        self,
        records: List[SourceRecord],
        organization_id: str,
        collection: Collection,
    ) -> PageResult:
        """Index one page. Per-record failures are counted; an embedding failure aborts the run."""
        errors = 0
        prepared: List[Tuple[SourceRecord, List[str]]] = []
        for record in records:
            try:
                prepared.append((record, self._record_texts(record)))
            except Exception as exc:
                errors += 1
                app_logger.warning(f"SYNC {PerRecordError(record.record_id, str(exc))}")

        texts = [text for _, record_texts in prepared for text in record_texts]
        vectors = await self._embedder.embed(texts)
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")

        cursor = 0
        now = utcnow()
        for record, record_texts in prepared:
            record_vectors = vectors[cursor:cursor + len(record_texts)]
            cursor += len(record_texts)
            metadata = build_chunk_metadata(record)
            chunk_records = [
                ChunkRecord(
                    organization_id=organization_id,
                    collection=collection.value,
                    source_record_id=record.record_id,
                    chunk_index=index,
                    content=content,
                    embedding=vector,
                    metadata=metadata,
                    source_updated_at=record.updated_at or now,
                    reference=record.reference,
                    title=record.title,
                    folder_id=record.folder_id,
                )
                for index, (content, vector) in enumerate(zip(record_texts, record_vectors))
            ]
            try:
                await self._store.replace_record_chunks(
                    organization_id, collection.value, record.record_id, chunk_records
                )
            except SQLAlchemyError as exc:
                errors += 1
                app_logger.warning(f"SYNC {PerRecordError(record.record_id, str(exc))}")

        return PageResult(processed=len(records), errors=errors, chunks=len(texts))

    async def _record_progress(self, job_id: UUID, progress: int) -> None:
        async with self._session_maker() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Sync job {job_id} not found")
            job.progress = max(job.progress, progress)
            job.updated_at = utcnow()
            await session.commit()

    async def _finish(
        self,
        job_id: UUID,
        status: SyncStatus,
        progress: int,
        total: int,
        error: Optional[str],
    ) -> None:
        async with self._session_maker() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Sync job {job_id} not found")
            now = utcnow()
            job.status = status.value
            job.total = total
            # never below what earlier pages or the resumed job already recorded
            job.progress = min(max(job.progress, progress), total)
            job.error = error
            job.updated_at = now
            job.completed_at = now
            await session.commit()
        app_logger.info(f"SYNC job {job_id} {status.value}: {progress}/{total}" + (f" ({error})" if error else ""))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: Union[UUID, str]) -> SyncJobStatus:
        if not isinstance(job_id, UUID):
            try:
                job_id = UUID(str(job_id))
            except ValueError:
                raise JobNotFoundError(f"Sync job {job_id} not found")
        async with self._session_maker() as session:
            job = await session.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        return SyncJobStatus.from_job(job)

    async def wait_for_job(self, job_id: UUID, raise_on_failure: bool = False) -> SyncJobStatus:
        """Wait for a job started in this process and return its final status."""
        task = self._tasks.get(job_id)
        if task is not None:
            status = await task
        else:
            status = await self.get_job_status(job_id)
        if raise_on_failure and status.status == SyncStatus.FAILED.value:
            raise RunFailure(status.error or f"Sync job {job_id} failed")
        return status

    async def get_knowledge_base_status(
        self,
        organization_id: str,
        collection: Union[Collection, str],
    ) -> KnowledgeBaseStatus:
        """Indexed record and chunk counts plus the latest job and any unfinished run."""
        collection = Collection(collection)
        indexed, total_chunks = await self._store.stats(organization_id, collection.value)

        async with self._session_maker() as session:
            result = await session.execute(
                select(SyncJob)
                .where(
                    SyncJob.organization_id == organization_id,
                    SyncJob.type == collection.value,
                )
                .order_by(SyncJob.started_at.desc())
                .limit(1)
            )
            last = result.scalars().first()

        # a running resume still leaves its predecessor reported as incomplete
        unfinished = await self._latest_incomplete_job(organization_id, collection)
        incomplete = IncompleteSync(progress=unfinished.progress, total=unfinished.total) if unfinished else None

        return KnowledgeBaseStatus(
            indexed_records=indexed,
            total_chunks=total_chunks,
            last_sync=SyncJobStatus.from_job(last) if last else None,
            incomplete_sync=incomplete,
        )
