"""
Dashboard rollups: per-subject indexed documents and chunk counts for one
school. Cached under the "ct" prefix; CacheInvalidator clears them whenever
a document in that school changes state, moves, or is deleted.
"""

import logging
from typing import Optional

from ..core.cache import CacheStore
from .cache import DASHBOARD_PREFIX, build_cache_key
from .document_store import DocumentStore

logger = logging.getLogger(__name__)


async def subject_rollup(
    store: DocumentStore,
    cache: CacheStore,
    tenant_id: str,
    school_id: str,
    offset: int = 0,
    limit: int = 50,
    ttl_seconds: int = 3600,
) -> dict:
    key = build_cache_key(DASHBOARD_PREFIX, tenant_id, school_id, f"p{offset}:l{limit}")
    cached: Optional[dict] = await cache.get(key)
    if cached is not None:
        return cached

    rollups = await store.indexed_chunk_counts(tenant_id, school_id)
    page = rollups[offset:offset + limit]
    result = {
        "data": [
            {
                "subject_id": r.subject_id,
                "documents": r.documents,
                "vector_chunks": r.result_chunks,
                "last_sync": r.last_sync.isoformat() if r.last_sync else None,
            }
            for r in page
        ],
        "total": len(rollups),
    }

    await cache.set(key, result, ttl_seconds)
    logger.debug("Cached dashboard rollup %s (%d subjects)", key, len(page))
    return result
