"""Knowledge base endpoints: sync control, status, semantic search, Q&A and the document library."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from app.api.knowledge.schemas import (
    AnswerSourceResponse,
    AskRequest,
    AskResponse,
    DocumentRequest,
    DocumentResponse,
    IncompleteSyncResponse,
    KnowledgeStatusResponse,
    SearchHit,
    SearchResponse,
    SimilarResponse,
    SyncJobResponse,
    SyncRequest,
    SyncStartResponse,
)
from app.config.logger import app_logger
from app.config.settings import settings
from app.models.document import Document
from app.models.knowledge_chunk import Collection
from app.services.errors import (
    ConfigurationError,
    DocumentNotFoundError,
    JobNotFoundError,
    KnowledgeBaseError,
    ProviderError,
    SourceError,
    SyncCooldownError,
)
from app.services.knowledge_base import KnowledgeBase, get_knowledge_base
from app.services.sync_manager import SyncJobStatus
from app.services.vector_store import ScoredChunk
from app.utils.dates import as_utc
from app.utils.responses import SuccessResponse, error_response, success_response

router = APIRouter(prefix="/v1/knowledge", tags=["knowledge"])

_ERROR_STATUS = [
    (SyncCooldownError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (SourceError, status.HTTP_502_BAD_GATEWAY),
]


async def knowledge_error_handler(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
    """Translate service errors into the standard error envelope."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    headers = None
    retry_after = None
    if isinstance(exc, SyncCooldownError):
        retry_after = exc.wait_seconds
        headers = {"Retry-After": str(retry_after)}
    if status_code >= 500:
        app_logger.error(f"{request.method} {request.url.path} failed: {exc}")

    body = error_response(error=type(exc).__name__, detail=str(exc), retry_after_seconds=retry_after)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def _job_response(job: SyncJobStatus) -> SyncJobResponse:
    return SyncJobResponse(
        id=job.id,
        organization_id=job.organization_id,
        type=job.type,
        mode=job.mode,
        status=job.status,
        progress=job.progress,
        total=job.total,
        error=job.error,
        started_at=job.started_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
        resumed_from_job_id=job.resumed_from_job_id,
    )


def _hit(chunk: ScoredChunk) -> SearchHit:
    return SearchHit(
        chunk_id=chunk.chunk_id,
        source_record_id=chunk.source_record_id,
        chunk_index=chunk.chunk_index,
        reference=chunk.reference,
        title=chunk.title,
        content=chunk.content,
        folder_id=chunk.folder_id,
        similarity=chunk.similarity,
        status=chunk.metadata.status,
        team=chunk.metadata.team,
    )


@router.post(
    "/{collection}/sync",
    response_model=SuccessResponse[SyncStartResponse],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start (or join) a background sync for a collection",
)
async def start_sync(
    collection: Collection,
    request: SyncRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[SyncStartResponse]:
    """Kick off ingestion and return the job id immediately.

    If a sync is already running for the organization and collection its id
    is returned instead of starting a second one.
    """
    app_logger.info(
        f"Sync requested for {request.organization_id}/{collection.value} (mode={request.mode.value})"
    )
    result = await kb.sync_manager.start_sync(request.organization_id, collection, request.mode)

    if result.reused:
        message = "Sync already in progress"
    elif result.resumed:
        message = "Resuming interrupted sync"
    else:
        message = "Sync started"
    return success_response(
        data=SyncStartResponse(
            job_id=result.job_id,
            reused=result.reused,
            resumed=result.resumed,
            mode=result.mode,
        ),
        message=message,
    )


@router.get(
    "/sync/{job_id}",
    response_model=SuccessResponse[SyncJobResponse],
    summary="Get the status of a sync job",
)
async def get_sync_job(
    job_id: UUID,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[SyncJobResponse]:
    job = await kb.sync_manager.get_job_status(job_id)
    return success_response(data=_job_response(job), message="Sync job retrieved")


@router.get(
    "/{collection}/status",
    response_model=SuccessResponse[KnowledgeStatusResponse],
    summary="Indexed counts and last sync for a collection",
)
async def get_knowledge_status(
    collection: Collection,
    organization_id: str = Query(..., min_length=1),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[KnowledgeStatusResponse]:
    kb_status = await kb.sync_manager.get_knowledge_base_status(organization_id, collection)
    incomplete = None
    if kb_status.incomplete_sync:
        incomplete = IncompleteSyncResponse(
            progress=kb_status.incomplete_sync.progress,
            total=kb_status.incomplete_sync.total,
        )
    return success_response(
        data=KnowledgeStatusResponse(
            indexed_records=kb_status.indexed_records,
            total_chunks=kb_status.total_chunks,
            last_sync=_job_response(kb_status.last_sync) if kb_status.last_sync else None,
            incomplete_sync=incomplete,
        ),
        message="Knowledge base status retrieved",
    )


@router.get(
    "/{collection}/search",
    response_model=SuccessResponse[SearchResponse],
    summary="Semantic search over indexed records",
)
async def search_knowledge(
    collection: Collection,
    organization_id: str = Query(..., min_length=1),
    q: str = Query(..., min_length=1, max_length=1000),
    limit: int = Query(default=settings.DEFAULT_SEARCH_LIMIT, ge=1, le=50),
    folder_id: Optional[str] = Query(default=None),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[SearchResponse]:
    results = await kb.retriever.search(
        q,
        organization_id,
        collection=collection,
        folder_id=folder_id,
        limit=limit,
    )
    hits = [_hit(chunk) for chunk in results]
    return success_response(
        data=SearchResponse(query=q, results=hits, total_results=len(hits)),
        message="Search completed successfully",
    )


@router.post(
    "/{collection}/ask",
    response_model=SuccessResponse[AskResponse],
    summary="Answer a question from indexed records with citations",
)
async def ask_knowledge(
    collection: Collection,
    request: AskRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[AskResponse]:
    answer = await kb.composer.ask(
        request.question,
        request.organization_id,
        collection=collection,
        folder_id=request.folder_id,
    )
    return success_response(
        data=AskResponse(
            answer=answer.answer,
            sources=[
                AnswerSourceResponse(
                    reference=source.reference,
                    title=source.title,
                    source_record_id=source.source_record_id,
                    similarity=source.similarity,
                    snippet=source.snippet,
                )
                for source in answer.sources
            ],
        ),
        message="Answer generated",
    )


@router.get(
    "/{collection}/similar/{record_id}",
    response_model=SuccessResponse[SimilarResponse],
    summary="Records most similar to a given record",
)
async def similar_records(
    collection: Collection,
    record_id: str,
    organization_id: str = Query(..., min_length=1),
    limit: int = Query(default=settings.DEFAULT_SIMILAR_LIMIT, ge=1, le=20),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[SimilarResponse]:
    results = await kb.retriever.find_similar(organization_id, collection, record_id, limit=limit)
    hits = [_hit(chunk) for chunk in results]
    return success_response(
        data=SimilarResponse(record_id=record_id, results=hits, total_results=len(hits)),
        message="Similar records retrieved",
    )


def _document_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        document_id=document.external_id,
        organization_id=document.organization_id,
        name=document.name,
        folder_id=document.folder_id,
        mime_type=document.mime_type,
        updated_at=as_utc(document.updated_at),
    )


@router.put(
    "/documents/{document_id}",
    response_model=SuccessResponse[DocumentResponse],
    summary="Register or replace a document for indexing",
)
async def save_document(
    document_id: str,
    request: DocumentRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[DocumentResponse]:
    """Store the document text; the next document sync indexes it."""
    document = await kb.documents.save_document(
        request.organization_id,
        document_id,
        name=request.name,
        content=request.content,
        folder_id=request.folder_id,
        mime_type=request.mime_type,
    )
    return success_response(data=_document_response(document), message="Document saved")


@router.get(
    "/documents/{document_id}",
    response_model=SuccessResponse[DocumentResponse],
    summary="Get a registered document",
)
async def get_document(
    document_id: str,
    organization_id: str = Query(..., min_length=1),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[DocumentResponse]:
    document = await kb.documents.get_document(organization_id, document_id)
    if document is None:
        raise DocumentNotFoundError(f"Document {document_id} not found")
    return success_response(data=_document_response(document), message="Document retrieved")


@router.delete(
    "/documents/{document_id}",
    response_model=SuccessResponse[None],
    summary="Remove a document and its indexed chunks",
)
async def delete_document(
    document_id: str,
    organization_id: str = Query(..., min_length=1),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SuccessResponse[None]:
    if not await kb.documents.delete_document(organization_id, document_id):
        raise DocumentNotFoundError(f"Document {document_id} not found")
    removed = await kb.store.delete_all_chunks(organization_id, Collection.DOCUMENT.value, document_id)
    return success_response(data=None, message=f"Document deleted ({removed} chunks removed)")
