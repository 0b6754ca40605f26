"""
Deduplication resolver. A re-upload of content the tenant has already
indexed is matched back to the existing document instead of being
processed again.
"""

import logging
from typing import Optional

from ..models.document import KnowledgeDocument
from .document_store import DocumentStore

logger = logging.getLogger(__name__)


class DeduplicationResolver:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def resolve(self, tenant_id: str, content_hash: str) -> Optional[KnowledgeDocument]:
        """Indexed, live document with the same content under the same tenant, or None."""
        if not tenant_id or not content_hash:
            return None
        match = await self.store.find_duplicate(tenant_id, content_hash)
        if match:
            logger.info(
                "Duplicate content for tenant %s matches document %s", tenant_id, match.id
            )
        return match
