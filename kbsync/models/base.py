"""
Base model for school-scoped rows. Every query, cache key and storage key
in kbsync is scoped by (tenant_id, school_id), so both live here.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class TenantBase(Base):
    __abstract__ = True

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_uuid)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    school_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # Unsubmitted age checks compare against utcnow()
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
