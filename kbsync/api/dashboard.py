"""
School dashboard: cached per-subject rollups of indexed knowledge.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..core.auth import AuthenticatedUser
from ..core.cache import CacheStore
from ..core.config import get_settings
from ..core.dependencies import get_cache_dep, get_store, require_tenant
from ..services.dashboard import subject_rollup
from ..services.document_store import DocumentStore

dashboard_router = APIRouter(tags=["dashboard"])


@dashboard_router.get("/dashboard/subjects")
async def dashboard_subjects(
    school_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user: AuthenticatedUser = Depends(require_tenant),
    store: DocumentStore = Depends(get_store),
    cache: CacheStore = Depends(get_cache_dep),
):
    school = school_id or user.school_id
    if not school:
        raise HTTPException(status_code=400, detail="school_id is required")

    return await subject_rollup(
        store,
        cache,
        tenant_id=user.tenant_id,
        school_id=school,
        offset=(page - 1) * limit,
        limit=limit,
        ttl_seconds=get_settings().cache_ttl_seconds,
    )
