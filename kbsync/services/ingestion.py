"""
Ingestion orchestrator, the registration entry point.

    hash → dedup → object storage → document row → submit to RAG service

The caller always gets an answer right away: a duplicate, an accepted
submission, or an accepted-but-unconfirmed one. The processing outcome
arrives later through the webhook or the sweeper.

register() is the same flow for a file the client already put in object
storage: the bytes are read back by key instead of uploaded.

A failed submit does not mark the document failed and is not retried
automatically. The row stays `processing` without an external_ref, shows up
in sweep reports as unsubmitted, and the caller re-ingests when ready.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..core.errors import AlreadyRegisteredError, StorageUnavailableError, StoredObjectNotFoundError
from ..core.storage import StorageBackend, guess_content_type
from ..models.document import DocumentStatus
from .cache import CacheInvalidator
from .dedup import DeduplicationResolver
from .document_store import DocumentStore, Placement
from .hashing import content_hash
from .rag_client import RagServiceClient

logger = logging.getLogger(__name__)

SUBMISSION_ACCEPTED = "accepted"
SUBMISSION_UNCONFIRMED = "unconfirmed"
SUBMISSION_DUPLICATE = "duplicate"


@dataclass
class FileMeta:
    original_name: str
    content_type: Optional[str] = None
    title: Optional[str] = None
    subject: Optional[str] = None
    category: str = "knowledge-base"


@dataclass
class IngestResult:
    document_id: str
    is_duplicate: bool
    status: str
    submission: str
    external_ref: Optional[str] = None
    submit_error: Optional[str] = None
    content_hash: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.submission != SUBMISSION_UNCONFIRMED


def build_storage_key(prefix: str, tenant_id: str, school_id: str, original_name: str) -> str:
    """
    {prefix}/{tenant}/{school}/{epoch_ms}_{rand}_{name}. Tenant first so keys
    never collide across tenants; the random part keeps same-name uploads in
    the same millisecond apart.
    """
    name = original_name.replace("/", "_").replace("\\", "_").strip() or "document"
    key = f"{tenant_id}/{school_id}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}_{name}"
    return f"{prefix.strip('/')}/{key}" if prefix else key


class IngestionOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        storage: StorageBackend,
        rag_client: RagServiceClient,
        invalidator: CacheInvalidator,
        callback_url: str,
        storage_prefix: str = "knowledge-base",
    ):
        self.store = store
        self.storage = storage
        self.rag_client = rag_client
        self.invalidator = invalidator
        self.callback_url = callback_url
        self.storage_prefix = storage_prefix
        self.resolver = DeduplicationResolver(store)

    async def ingest(
        self,
        tenant_id: str,
        school_id: str,
        placement: Placement,
        file_bytes: bytes,
        file_meta: FileMeta,
        uploader_id: Optional[str] = None,
    ) -> IngestResult:
        digest = content_hash(file_bytes)

        existing = await self.resolver.resolve(tenant_id, digest)
        if existing is not None:
            return await self._replace_duplicate(existing, school_id, placement, file_meta, uploader_id, digest)

        content_type = file_meta.content_type or guess_content_type(file_meta.original_name)
        storage_key = build_storage_key(self.storage_prefix, tenant_id, school_id, file_meta.original_name)
        try:
            await self.storage.put(storage_key, file_bytes, content_type)
        except Exception as e:
            logger.error("Object storage put failed for %s: %s", storage_key, e)
            raise StorageUnavailableError(
                "Could not store the uploaded file", storage_key=storage_key
            ) from e

        return await self._create_and_submit(
            tenant_id, school_id, placement, file_bytes, file_meta, uploader_id,
            digest, storage_key, content_type,
        )

    async def register(
        self,
        tenant_id: str,
        school_id: str,
        placement: Placement,
        storage_key: str,
        file_meta: FileMeta,
        uploader_id: Optional[str] = None,
    ) -> IngestResult:
        """
        Register a file the client already put in object storage.

        The bytes are read back so the row carries the same content hash an
        upload through ingest() would; after that the flow is identical.
        """
        prefix = self.storage_prefix.strip("/")
        tenant_root = f"{prefix}/{tenant_id}/" if prefix else f"{tenant_id}/"
        if not storage_key.startswith(tenant_root) or ".." in storage_key.split("/"):
            # Same answer as a missing object: keys of other tenants are not confirmed
            raise StoredObjectNotFoundError(storage_key)

        if await self.store.find_by_storage_key(storage_key) is not None:
            raise AlreadyRegisteredError(storage_key)

        try:
            file_bytes = await self.storage.get(storage_key)
        except ValueError:
            raise StoredObjectNotFoundError(storage_key)
        except Exception as e:
            logger.error("Object storage get failed for %s: %s", storage_key, e)
            raise StorageUnavailableError(
                "Could not read the stored file", storage_key=storage_key
            ) from e
        if file_bytes is None:
            raise StoredObjectNotFoundError(storage_key)

        digest = content_hash(file_bytes)
        existing = await self.resolver.resolve(tenant_id, digest)
        if existing is not None:
            logger.info(
                "Registered object %s duplicates document %s; the stored copy is left unused",
                storage_key, existing.id,
            )
            return await self._replace_duplicate(existing, school_id, placement, file_meta, uploader_id, digest)

        content_type = file_meta.content_type or guess_content_type(file_meta.original_name)
        return await self._create_and_submit(
            tenant_id, school_id, placement, file_bytes, file_meta, uploader_id,
            digest, storage_key, content_type,
        )

    async def _create_and_submit(
        self,
        tenant_id: str,
        school_id: str,
        placement: Placement,
        file_bytes: bytes,
        file_meta: FileMeta,
        uploader_id: Optional[str],
        digest: str,
        storage_key: str,
        content_type: str,
    ) -> IngestResult:
        doc = await self.store.create(
            tenant_id=tenant_id,
            school_id=school_id,
            class_id=placement.class_id,
            section_id=placement.section_id,
            subject_id=placement.subject_id,
            title=file_meta.title or file_meta.original_name,
            original_name=file_meta.original_name,
            content_type=content_type,
            file_size_bytes=len(file_bytes),
            content_hash=digest,
            storage_key=storage_key,
            uploaded_by=uploader_id,
            doc_metadata={"category": file_meta.category, "subject": file_meta.subject},
        )
        # The row must survive a submit that hangs or crashes the request
        await self.store.commit()
        # A rollback below expires `doc`; only this id is used afterwards
        doc_id = doc.id

        result = IngestResult(
            document_id=doc_id,
            is_duplicate=False,
            status=DocumentStatus.PROCESSING.value,
            submission=SUBMISSION_UNCONFIRMED,
            content_hash=digest,
        )

        submitted = await self.rag_client.submit(
            file_bytes=file_bytes,
            filename=file_meta.original_name,
            tenant_id=tenant_id,
            school_id=school_id,
            callback_url=self.callback_url,
            content_type=content_type,
        )
        if not submitted.ok:
            result.submit_error = submitted.error
            logger.warning(
                "Submission of %s unconfirmed (transient=%s): %s",
                doc_id, submitted.transient, submitted.error,
            )
            return result

        external_ref = submitted.external_ref
        if not external_ref:
            result.warnings.append("RAG service accepted the upload without a document id")
            logger.warning("RAG service accepted %s without a document id", doc_id)
            return result

        try:
            await self.store.set_external_ref(doc_id, external_ref)
            await self.store.commit()
        except IntegrityError:
            await self.store.rollback()
            result.warnings.append(f"external_ref {external_ref} already belongs to another document")
            logger.error(
                "RAG service returned external_ref %s already in use; %s left unconfirmed",
                external_ref, doc_id,
            )
            return result
        result.external_ref = external_ref
        result.submission = SUBMISSION_ACCEPTED

        logger.info(
            "Ingested %s for %s/%s → doc=%s ref=%s",
            file_meta.original_name, tenant_id, school_id, doc_id, external_ref,
        )
        return result

    async def _replace_duplicate(self, existing, school_id, placement, file_meta, uploader_id, digest) -> IngestResult:
        previous_school = existing.school_id
        doc = await self.store.replace(
            existing,
            school_id=school_id,
            placement=placement,
            title=file_meta.title or file_meta.original_name,
            subject=file_meta.subject,
            updated_by=uploader_id,
        )
        await self.store.commit()

        await self.invalidator.invalidate(doc.tenant_id, doc.school_id)
        if previous_school and previous_school != doc.school_id:
            await self.invalidator.invalidate(doc.tenant_id, previous_school)

        logger.info("Duplicate upload re-placed document %s (no reprocessing)", doc.id)
        return IngestResult(
            document_id=doc.id,
            is_duplicate=True,
            status=doc.status,
            submission=SUBMISSION_DUPLICATE,
            external_ref=doc.external_ref,
            content_hash=digest,
        )
