"""
Realtime notifications. Thin wrapper around core.redis.
"""

from ..core import redis as _redis


async def document_status(tenant_id: str, doc_id: str, status: str):
    await _redis.notify_tenant(
        tenant_id, "document.status", {"document_id": doc_id, "status": status}
    )


async def document_deleted(tenant_id: str, doc_id: str):
    await _redis.notify_tenant(tenant_id, "document.deleted", {"document_id": doc_id})
