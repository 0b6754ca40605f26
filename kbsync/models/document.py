"""
Knowledge documents. One row per uploaded file, tracking its life at the
RAG processing service. Rows are never hard-deleted.
"""

from enum import Enum

from sqlalchemy import String, Text, BigInteger, Boolean, JSON, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import TenantBase


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DocumentStatus.PROCESSING


class KnowledgeDocument(TenantBase):
    __tablename__ = "knowledge_documents"
    __table_args__ = (
        Index("ix_knowledge_documents_scope", "tenant_id", "school_id", "class_id", "section_id"),
        Index("ix_knowledge_documents_tenant_hash", "tenant_id", "content_hash"),
        Index(
            "uq_knowledge_documents_live_external_ref",
            "external_ref",
            unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
    )

    # RAG service id, set once the service accepts the upload
    external_ref: Mapped[str] = mapped_column(String, nullable=True)

    # Placement
    class_id: Mapped[str] = mapped_column(String, nullable=True)
    section_id: Mapped[str] = mapped_column(String, nullable=True)
    subject_id: Mapped[str] = mapped_column(String, nullable=True, index=True)

    title: Mapped[str] = mapped_column(String, nullable=True)
    original_name: Mapped[str] = mapped_column(String, nullable=True)
    content_type: Mapped[str] = mapped_column(String, nullable=True)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=True)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=DocumentStatus.PROCESSING.value
    )  # processing, indexed, failed
    result_refs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    extracted_text: Mapped[str] = mapped_column(Text, nullable=True)
    error_detail: Mapped[str] = mapped_column(Text, nullable=True)

    uploaded_by: Mapped[str] = mapped_column(String, nullable=True)
    doc_metadata: Mapped[dict] = mapped_column(JSON, nullable=True, default=dict)
    # category, subject, updated_by, last_updated

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
