"""
The one state-transition path shared by the webhook and the sweeper.

Both turn whatever the RAG service told them into a CanonicalUpdate and hand
it to Transitioner.apply(). Whichever path arrives first wins; the other is
a no-op with no side effects.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.errors import MalformedPayloadError
from ..models.document import DocumentStatus, KnowledgeDocument
from . import realtime
from .cache import CacheInvalidator
from .document_store import DocumentStore, Transition

logger = logging.getLogger(__name__)

EXTERNAL_COMPLETED = "completed"
EXTERNAL_FAILED = "failed"
DEFAULT_FAILURE_DETAIL = "Processing failed (no detail reported by the RAG service)"


@dataclass(frozen=True)
class CanonicalUpdate:
    external_ref: str
    status: str
    result_refs: tuple[str, ...] = ()
    error_detail: Optional[str] = None
    extracted_text: Optional[str] = None


class ApplyOutcome(str, Enum):
    APPLIED = "applied"  # state changed
    NOOP = "noop"        # document already terminal
    HELD = "held"        # status is not terminal, nothing to do


def transition_for(update: CanonicalUpdate) -> Optional[Transition]:
    """
    Map the service's status vocabulary to a transition.

    completed → indexed (needs result refs), failed → failed,
    anything else → None (stay in processing).
    """
    if update.status == EXTERNAL_COMPLETED:
        if not update.result_refs:
            raise MalformedPayloadError(
                "Completed update carries no result refs",
                external_ref=update.external_ref,
            )
        return Transition(
            target=DocumentStatus.INDEXED,
            result_refs=update.result_refs,
            extracted_text=update.extracted_text,
        )
    if update.status == EXTERNAL_FAILED:
        return Transition(
            target=DocumentStatus.FAILED,
            error_detail=update.error_detail or DEFAULT_FAILURE_DETAIL,
        )
    return None


class Transitioner:
    def __init__(self, store: DocumentStore, invalidator: CacheInvalidator):
        self.store = store
        self.invalidator = invalidator

    async def apply(self, doc: KnowledgeDocument, update: CanonicalUpdate) -> ApplyOutcome:
        transition = transition_for(update)
        if transition is None:
            logger.debug(
                "Holding %s in processing (external status %r)", doc.id, update.status
            )
            return ApplyOutcome.HELD

        if not await self.store.apply_update(doc.id, transition):
            return ApplyOutcome.NOOP

        # Commit before invalidating so a concurrent reader cannot re-cache old rollups
        await self.store.commit()
        await self.invalidator.invalidate(doc.tenant_id, doc.school_id)
        await realtime.document_status(doc.tenant_id, doc.id, transition.target.value)

        logger.info(
            "Document %s (ref=%s) → %s (%d result refs)",
            doc.id, update.external_ref, transition.target.value, len(transition.result_refs),
        )
        return ApplyOutcome.APPLIED
