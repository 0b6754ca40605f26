"""
Soft delete. The row stays for audit; the RAG service copy is removed on a
best-effort basis so a dead service never blocks the delete.
"""

import logging

from ..core.errors import AlreadyDeletedError, DocumentNotFoundError
from ..models.document import KnowledgeDocument
from . import realtime
from .cache import CacheInvalidator
from .document_store import DocumentStore
from .rag_client import RagServiceClient

logger = logging.getLogger(__name__)


async def delete_document(
    store: DocumentStore,
    rag_client: RagServiceClient,
    invalidator: CacheInvalidator,
    tenant_id: str,
    document_id: str,
) -> KnowledgeDocument:
    doc = await store.find_by_id(document_id, include_deleted=True)
    if doc is None or doc.tenant_id != tenant_id:
        raise DocumentNotFoundError(document_id)
    if doc.is_deleted:
        raise AlreadyDeletedError(document_id)

    if doc.external_ref:
        removed = await rag_client.delete(doc.external_ref, doc.tenant_id, doc.school_id)
        if not removed.ok:
            logger.warning(
                "RAG delete failed for %s (ref=%s), soft-deleting anyway: %s",
                doc.id, doc.external_ref, removed.error,
            )

    if not await store.soft_delete(doc.id):
        # Lost a race with another delete
        raise AlreadyDeletedError(document_id)
    await store.commit()

    await invalidator.invalidate(doc.tenant_id, doc.school_id)
    await realtime.document_deleted(doc.tenant_id, doc.id)
    logger.info("Document %s soft-deleted", doc.id)
    return doc
