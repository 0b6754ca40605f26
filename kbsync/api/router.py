"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter, Depends

from ..core.dependencies import require_tenant

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "kbsync"}


# ── V1 routes ───────────────────────────────────────────────────────

from .dashboard import dashboard_router
from .documents import documents_router
from .webhooks import webhooks_router

router.include_router(documents_router, prefix="/v1", dependencies=[Depends(require_tenant)])
router.include_router(dashboard_router, prefix="/v1", dependencies=[Depends(require_tenant)])
# Called by the RAG service, not by users: shared-secret check only
router.include_router(webhooks_router, prefix="/v1")
