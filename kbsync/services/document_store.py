"""
Document store, the single source of truth for document lifecycle state.

All state changes go through apply_update(), a conditional UPDATE that only
matches rows still in `processing`. Terminal states are therefore sticky and
concurrent writers (webhook vs. sweeper) converge without locks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import utcnow
from ..models.document import DocumentStatus, KnowledgeDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """A move out of `processing` into a terminal state."""

    target: DocumentStatus
    result_refs: tuple[str, ...] = ()
    extracted_text: Optional[str] = None
    error_detail: Optional[str] = None

    def __post_init__(self):
        if not self.target.is_terminal:
            raise ValueError("Transition target must be a terminal state")
        if self.target is DocumentStatus.INDEXED and not self.result_refs:
            raise ValueError("An indexed transition needs at least one result ref")


@dataclass
class Placement:
    """Where a document sits in the school hierarchy. Used for filtering only."""

    class_id: Optional[str] = None
    section_id: Optional[str] = None
    subject_id: Optional[str] = None


@dataclass
class ScopeFilter:
    tenant_id: str
    school_id: Optional[str] = None
    class_id: Optional[str] = None
    section_id: Optional[str] = None
    subject_id: Optional[str] = None
    status: Optional[DocumentStatus] = None
    unsubmitted: bool = False
    offset: int = 0
    limit: int = 10


@dataclass
class SubjectRollup:
    subject_id: Optional[str]
    documents: int = 0
    result_chunks: int = 0
    last_sync: Optional[datetime] = None


class DocumentStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Writes ───────────────────────────────────────────────────────

    async def create(self, **fields) -> KnowledgeDocument:
        fields.setdefault("status", DocumentStatus.PROCESSING.value)
        fields.setdefault("result_refs", [])
        fields.setdefault("doc_metadata", {})
        doc = KnowledgeDocument(**fields)
        self.session.add(doc)
        await self.session.flush()
        return doc

    async def apply_update(self, document_id: str, transition: Transition) -> bool:
        """
        Move a processing document to a terminal state.

        Returns True if this call changed the row, False if the document was
        already terminal (or missing). Never raises for a repeated transition.
        """
        values = {"status": transition.target.value, "updated_at": utcnow()}
        if transition.target is DocumentStatus.INDEXED:
            values["result_refs"] = list(transition.result_refs)
            values["error_detail"] = None
            if transition.extracted_text:
                values["extracted_text"] = transition.extracted_text
        else:
            values["error_detail"] = transition.error_detail

        result = await self.session.execute(
            update(KnowledgeDocument)
            .where(
                KnowledgeDocument.id == document_id,
                KnowledgeDocument.status == DocumentStatus.PROCESSING.value,
            )
            .values(**values)
        )
        applied = result.rowcount == 1
        if not applied:
            logger.debug(
                "No-op transition to %s for %s (already terminal)",
                transition.target.value, document_id,
            )
        return applied

    async def set_external_ref(self, document_id: str, external_ref: str) -> None:
        await self.session.execute(
            update(KnowledgeDocument)
            .where(KnowledgeDocument.id == document_id)
            .values(external_ref=external_ref, updated_at=utcnow())
        )

    async def replace(
        self,
        doc: KnowledgeDocument,
        school_id: str,
        placement: Placement,
        title: Optional[str] = None,
        subject: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> KnowledgeDocument:
        """Move an already-indexed document to a new placement. State is untouched."""
        doc.school_id = school_id
        if placement.class_id:
            doc.class_id = placement.class_id
        if placement.section_id:
            doc.section_id = placement.section_id
        if placement.subject_id:
            doc.subject_id = placement.subject_id
        if title:
            doc.title = title

        metadata = dict(doc.doc_metadata or {})
        metadata["subject"] = subject or metadata.get("subject") or metadata.get("category")
        metadata["updated_by"] = updated_by
        metadata["last_updated"] = utcnow().isoformat()
        doc.doc_metadata = metadata
        doc.updated_at = utcnow()

        await self.session.flush()
        return doc

    async def soft_delete(self, document_id: str) -> bool:
        result = await self.session.execute(
            update(KnowledgeDocument)
            .where(
                KnowledgeDocument.id == document_id,
                KnowledgeDocument.is_deleted.is_(False),
            )
            .values(is_deleted=True, updated_at=utcnow())
        )
        return result.rowcount == 1

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # ── Reads ────────────────────────────────────────────────────────

    async def find_by_id(self, document_id: str, include_deleted: bool = False) -> Optional[KnowledgeDocument]:
        stmt = select(KnowledgeDocument).where(KnowledgeDocument.id == document_id)
        if not include_deleted:
            stmt = stmt.where(KnowledgeDocument.is_deleted.is_(False))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_storage_key(self, storage_key: str) -> Optional[KnowledgeDocument]:
        result = await self.session.execute(
            select(KnowledgeDocument).where(KnowledgeDocument.storage_key == storage_key)
        )
        return result.scalar_one_or_none()

    async def find_by_external_ref(self, external_ref: str) -> Optional[KnowledgeDocument]:
        """Live document first; a soft-deleted one is returned only if no live one exists."""
        result = await self.session.execute(
            select(KnowledgeDocument)
            .where(KnowledgeDocument.external_ref == external_ref)
            .order_by(KnowledgeDocument.is_deleted.asc(), KnowledgeDocument.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_duplicate(self, tenant_id: str, content_hash: str) -> Optional[KnowledgeDocument]:
        """Most recent live, indexed document of this tenant with identical content."""
        result = await self.session.execute(
            select(KnowledgeDocument)
            .where(
                KnowledgeDocument.tenant_id == tenant_id,
                KnowledgeDocument.content_hash == content_hash,
                KnowledgeDocument.status == DocumentStatus.INDEXED.value,
                KnowledgeDocument.is_deleted.is_(False),
            )
            .order_by(KnowledgeDocument.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_processing(
        self, tenant_id: Optional[str] = None, school_id: Optional[str] = None
    ) -> Sequence[KnowledgeDocument]:
        """Processing documents the RAG service knows about (external_ref set)."""
        stmt = select(KnowledgeDocument).where(
            KnowledgeDocument.status == DocumentStatus.PROCESSING.value,
            KnowledgeDocument.is_deleted.is_(False),
            KnowledgeDocument.external_ref.is_not(None),
        )
        if tenant_id:
            stmt = stmt.where(KnowledgeDocument.tenant_id == tenant_id)
        if school_id:
            stmt = stmt.where(KnowledgeDocument.school_id == school_id)
        result = await self.session.execute(stmt.order_by(KnowledgeDocument.created_at.asc()))
        return result.scalars().all()

    async def list_unsubmitted(
        self,
        tenant_id: Optional[str] = None,
        school_id: Optional[str] = None,
        older_than: Optional[datetime] = None,
    ) -> Sequence[KnowledgeDocument]:
        """Processing documents that never got an external_ref. The sweeper cannot reach these."""
        stmt = select(KnowledgeDocument).where(
            KnowledgeDocument.status == DocumentStatus.PROCESSING.value,
            KnowledgeDocument.is_deleted.is_(False),
            KnowledgeDocument.external_ref.is_(None),
        )
        if tenant_id:
            stmt = stmt.where(KnowledgeDocument.tenant_id == tenant_id)
        if school_id:
            stmt = stmt.where(KnowledgeDocument.school_id == school_id)
        if older_than is not None:
            stmt = stmt.where(KnowledgeDocument.created_at < older_than)
        result = await self.session.execute(stmt.order_by(KnowledgeDocument.created_at.asc()))
        return result.scalars().all()

    async def processing_tenants(self) -> list[str]:
        result = await self.session.execute(
            select(KnowledgeDocument.tenant_id)
            .where(
                KnowledgeDocument.status == DocumentStatus.PROCESSING.value,
                KnowledgeDocument.is_deleted.is_(False),
            )
            .distinct()
        )
        return list(result.scalars().all())

    async def list_by_scope(self, filters: ScopeFilter) -> tuple[Sequence[KnowledgeDocument], int]:
        conditions = [
            KnowledgeDocument.tenant_id == filters.tenant_id,
            KnowledgeDocument.is_deleted.is_(False),
        ]
        if filters.school_id:
            conditions.append(KnowledgeDocument.school_id == filters.school_id)
        if filters.class_id:
            conditions.append(KnowledgeDocument.class_id == filters.class_id)
        if filters.section_id:
            conditions.append(KnowledgeDocument.section_id == filters.section_id)
        if filters.subject_id:
            conditions.append(KnowledgeDocument.subject_id == filters.subject_id)
        if filters.status is not None:
            conditions.append(KnowledgeDocument.status == filters.status.value)
        if filters.unsubmitted:
            conditions.append(KnowledgeDocument.external_ref.is_(None))

        total = await self.session.scalar(
            select(func.count()).select_from(KnowledgeDocument).where(*conditions)
        )
        result = await self.session.execute(
            select(KnowledgeDocument)
            .where(*conditions)
            .order_by(KnowledgeDocument.created_at.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        return result.scalars().all(), int(total or 0)

    async def indexed_chunk_counts(self, tenant_id: str, school_id: str) -> list[SubjectRollup]:
        """Per-subject counts of indexed documents and their result chunks."""
        result = await self.session.execute(
            select(
                KnowledgeDocument.subject_id,
                KnowledgeDocument.result_refs,
                KnowledgeDocument.updated_at,
            ).where(
                KnowledgeDocument.tenant_id == tenant_id,
                KnowledgeDocument.school_id == school_id,
                KnowledgeDocument.status == DocumentStatus.INDEXED.value,
                KnowledgeDocument.is_deleted.is_(False),
            )
        )

        rollups: dict[Optional[str], SubjectRollup] = {}
        for subject_id, refs, updated_at in result.all():
            entry = rollups.setdefault(subject_id, SubjectRollup(subject_id=subject_id))
            entry.documents += 1
            entry.result_chunks += len(refs or [])
            if updated_at and (entry.last_sync is None or updated_at > entry.last_sync):
                entry.last_sync = updated_at
        return sorted(rollups.values(), key=lambda r: r.subject_id or "")
