"""
Knowledge document endpoints: ingest, register, list, inspect, download, delete, sync.
"""

import logging
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from pydantic import BaseModel

from ..core.auth import AuthenticatedUser
from ..core.config import get_settings
from ..core.dependencies import (
    get_invalidator,
    get_rag_client_dep,
    get_storage_dep,
    get_store,
    http_error,
    require_tenant,
)
from ..core.errors import IngestionError
from ..core.storage import StorageBackend
from ..models.document import DocumentStatus, KnowledgeDocument
from ..services.cache import CacheInvalidator
from ..services.deletion import delete_document as _delete_document
from ..services.document_store import DocumentStore, Placement, ScopeFilter
from ..services.ingestion import FileMeta, IngestionOrchestrator
from ..services.rag_client import RagServiceClient
from ..services.sweeper import ReconciliationSweeper

logger = logging.getLogger(__name__)

documents_router = APIRouter(tags=["documents"])

MAX_UPLOAD_SIZE = 100 * 1024 * 1024  # 100 MB


class DocumentResponse(BaseModel):
    id: str
    school_id: str
    class_id: Optional[str] = None
    section_id: Optional[str] = None
    subject_id: Optional[str] = None
    title: Optional[str] = None
    original_name: Optional[str] = None
    status: str
    external_ref: Optional[str] = None
    result_count: int = 0
    error_detail: Optional[str] = None
    file_size_bytes: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IngestResponse(BaseModel):
    document_id: str
    is_duplicate: bool
    status: str
    submission: str
    external_ref: Optional[str] = None
    submit_error: Optional[str] = None
    warnings: list[str] = []


class RegisterRequest(BaseModel):
    storage_key: str
    original_name: str
    school_id: Optional[str] = None
    class_id: Optional[str] = None
    section_id: Optional[str] = None
    subject_id: Optional[str] = None
    title: Optional[str] = None
    subject: Optional[str] = None
    content_type: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DocumentListResponse(BaseModel):
    data: list[DocumentResponse]
    pagination: Pagination


class SyncRequest(BaseModel):
    school_id: Optional[str] = None


class SyncResponse(BaseModel):
    updated: int
    still_processing: int
    failed: int
    errors: int
    unsubmitted: int
    already_terminal: int


class DownloadUrlResponse(BaseModel):
    title: Optional[str] = None
    download_url: str


def _to_response(d: KnowledgeDocument) -> DocumentResponse:
    return DocumentResponse(
        id=d.id,
        school_id=d.school_id,
        class_id=d.class_id,
        section_id=d.section_id,
        subject_id=d.subject_id,
        title=d.title,
        original_name=d.original_name,
        status=d.status,
        external_ref=d.external_ref,
        result_count=len(d.result_refs or []),
        error_detail=d.error_detail,
        file_size_bytes=d.file_size_bytes,
        created_at=d.created_at,
        updated_at=d.updated_at,
    )


def _ingest_response(result) -> IngestResponse:
    return IngestResponse(
        document_id=result.document_id,
        is_duplicate=result.is_duplicate,
        status=result.status,
        submission=result.submission,
        external_ref=result.external_ref,
        submit_error=result.submit_error,
        warnings=result.warnings,
    )


def _orchestrator(request, store, storage, rag_client, invalidator) -> IngestionOrchestrator:
    settings = get_settings()
    return IngestionOrchestrator(
        store=store,
        storage=storage,
        rag_client=rag_client,
        invalidator=invalidator,
        callback_url=settings.callback_url(str(request.base_url)),
        storage_prefix=settings.storage_prefix,
    )


@documents_router.post("/documents/ingest", response_model=IngestResponse, status_code=202)
async def ingest_document(
    request: Request,
    response: Response,
    file: UploadFile = File(...),
    school_id: Optional[str] = Form(None),
    class_id: Optional[str] = Form(None),
    section_id: Optional[str] = Form(None),
    subject_id: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
    storage: StorageBackend = Depends(get_storage_dep),
    rag_client: RagServiceClient = Depends(get_rag_client_dep),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """
    Register a document and hand it to the RAG service.

    202 when a new document was registered (submission accepted or
    unconfirmed), 200 when the content was already indexed for this tenant.
    """
    school = school_id or user.school_id
    if not school:
        raise HTTPException(status_code=400, detail="school_id is required")

    file_bytes = await file.read()
    if not file_bytes:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(file_bytes) > MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File too large (max {MAX_UPLOAD_SIZE // (1024 * 1024)}MB)",
        )

    orchestrator = _orchestrator(request, store, storage, rag_client, invalidator)
    try:
        result = await orchestrator.ingest(
            tenant_id=user.tenant_id,
            school_id=school,
            placement=Placement(class_id=class_id, section_id=section_id, subject_id=subject_id),
            file_bytes=file_bytes,
            file_meta=FileMeta(
                original_name=file.filename or "document",
                content_type=file.content_type,
                title=title,
                subject=subject,
            ),
            uploader_id=user.user_id,
        )
    except IngestionError as e:
        raise http_error(e)

    if result.is_duplicate:
        response.status_code = 200
    return _ingest_response(result)


@documents_router.post("/documents/register", response_model=IngestResponse, status_code=201)
async def register_document(
    body: RegisterRequest,
    request: Request,
    response: Response,
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
    storage: StorageBackend = Depends(get_storage_dep),
    rag_client: RagServiceClient = Depends(get_rag_client_dep),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """
    Register a file the client already uploaded to object storage.

    201 when a new document was registered, 200 when the content was
    already indexed for this tenant, 404 for a key with no object (or one
    outside the caller's tenant), 409 if the key is already registered.
    """
    school = body.school_id or user.school_id
    if not school:
        raise HTTPException(status_code=400, detail="school_id is required")

    orchestrator = _orchestrator(request, store, storage, rag_client, invalidator)
    try:
        result = await orchestrator.register(
            tenant_id=user.tenant_id,
            school_id=school,
            placement=Placement(
                class_id=body.class_id, section_id=body.section_id, subject_id=body.subject_id
            ),
            storage_key=body.storage_key,
            file_meta=FileMeta(
                original_name=body.original_name,
                content_type=body.content_type,
                title=body.title,
                subject=body.subject,
            ),
            uploader_id=user.user_id,
        )
    except IngestionError as e:
        raise http_error(e)

    if result.is_duplicate:
        response.status_code = 200
    return _ingest_response(result)


@documents_router.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    school_id: Optional[str] = None,
    class_id: Optional[str] = None,
    section_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    status: Optional[DocumentStatus] = None,
    unsubmitted: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
):
    """List the tenant's documents, newest first, filtered by placement and state."""
    docs, total = await store.list_by_scope(
        ScopeFilter(
            tenant_id=user.tenant_id,
            school_id=school_id,
            class_id=class_id,
            section_id=section_id,
            subject_id=subject_id,
            status=status,
            unsubmitted=unsubmitted,
            offset=(page - 1) * limit,
            limit=limit,
        )
    )
    return DocumentListResponse(
        data=[_to_response(d) for d in docs],
        pagination=Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0,
        ),
    )


@documents_router.post("/documents/sync", response_model=SyncResponse)
async def sync_documents(
    body: SyncRequest,
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
    rag_client: RagServiceClient = Depends(get_rag_client_dep),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """Poll the RAG service now for every processing document of this tenant."""
    settings = get_settings()
    sweeper = ReconciliationSweeper(
        store, rag_client, invalidator,
        concurrency=settings.sweep_concurrency,
        unsubmitted_grace_seconds=settings.unsubmitted_grace_seconds,
    )
    result = await sweeper.sweep(user.tenant_id, body.school_id)
    return SyncResponse(**result.as_dict())


async def _get_owned(store: DocumentStore, user: AuthenticatedUser, document_id: str) -> KnowledgeDocument:
    doc = await store.find_by_id(document_id)
    if not doc or doc.tenant_id != user.tenant_id:
        raise HTTPException(status_code=404, detail="Document not found")
    return doc


@documents_router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
):
    return _to_response(await _get_owned(store, user, document_id))


@documents_router.get("/documents/{document_id}/url", response_model=DownloadUrlResponse)
async def get_document_url(
    document_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
    storage: StorageBackend = Depends(get_storage_dep),
):
    """Short-lived download link for the original upload."""
    doc = await _get_owned(store, user, document_id)
    url = await storage.presigned_url(doc.storage_key, expires_in=get_settings().presigned_url_ttl)
    return DownloadUrlResponse(title=doc.title, download_url=url)


@documents_router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
    rag_client: RagServiceClient = Depends(get_rag_client_dep),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """Soft delete. The RAG service copy is removed on a best-effort basis."""
    try:
        doc = await _delete_document(store, rag_client, invalidator, user.tenant_id, document_id)
    except IngestionError as e:
        raise http_error(e)
    return {"status": "deleted", "id": doc.id}
