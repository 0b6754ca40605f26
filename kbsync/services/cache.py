"""
Cache keys and scoped invalidation for tenant-facing aggregate views.

Every cached variant of a view is stored under
    {namespace}:{prefix}:{tenant_id}:{school_id}:{variant}
so one glob per prefix clears all of them without enumerating variants.
"""

import logging
from typing import Iterable, Optional

from ..core.cache import CacheStore
from ..core.config import get_settings

logger = logging.getLogger(__name__)

# Dashboard ("control tower") subject rollups
DASHBOARD_PREFIX = "ct"


def build_cache_key(
    prefix: str,
    tenant_id: str,
    school_id: str,
    variant: Optional[str] = None,
    namespace: Optional[str] = None,
) -> str:
    ns = namespace if namespace is not None else get_settings().cache_namespace
    key = f"{ns}:{prefix}:{tenant_id}:{school_id}"
    if variant:
        key = f"{key}:{variant}"
    return key


class CacheInvalidator:
    """Clears every cached view for one tenant/school scope."""

    def __init__(
        self,
        store: CacheStore,
        prefixes: Iterable[str] = (DASHBOARD_PREFIX,),
        namespace: Optional[str] = None,
    ):
        self.store = store
        self.prefixes = tuple(prefixes)
        self.namespace = namespace

    async def invalidate(self, tenant_id: str, school_id: str) -> int:
        removed = 0
        for prefix in self.prefixes:
            pattern = build_cache_key(prefix, tenant_id, school_id, "*", namespace=self.namespace)
            removed += await self.store.delete_pattern(pattern)
        logger.debug("Invalidated cache for %s/%s (%d keys)", tenant_id, school_id, removed)
        return removed
