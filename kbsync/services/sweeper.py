"""
Reconciliation sweeper. Polls the RAG service for every document still in
`processing` and feeds the answers through the same transition path the
webhook uses. It is the backstop for lost callbacks.

Polls fan out under a semaphore; writes go through one session, one at a
time. A failed poll is counted and retried on the next sweep.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import MalformedPayloadError
from ..models.base import utcnow
from ..models.document import KnowledgeDocument
from .cache import CacheInvalidator
from .document_store import DocumentStore
from .rag_client import RagResult, RagServiceClient
from .transitions import EXTERNAL_COMPLETED, ApplyOutcome, Transitioner
from .webhook import normalize

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    updated: int = 0      # transitions this sweep applied to indexed
    still_processing: int = 0
    failed: int = 0       # reported failed by the service, plus poll errors
    errors: int = 0       # poll errors only
    unsubmitted: int = 0  # processing without external_ref, past the grace period
    already_terminal: int = 0  # polled, but a webhook had already applied a terminal state

    def merge(self, other: "SweepResult") -> None:
        self.updated += other.updated
        self.still_processing += other.still_processing
        self.failed += other.failed
        self.errors += other.errors
        self.unsubmitted += other.unsubmitted
        self.already_terminal += other.already_terminal

    def as_dict(self) -> dict:
        return asdict(self)


class ReconciliationSweeper:
    def __init__(
        self,
        store: DocumentStore,
        rag_client: RagServiceClient,
        invalidator: CacheInvalidator,
        concurrency: int = 8,
        unsubmitted_grace_seconds: int = 900,
    ):
        self.store = store
        self.rag_client = rag_client
        self.transitioner = Transitioner(store, invalidator)
        self.concurrency = max(1, concurrency)
        self.unsubmitted_grace = timedelta(seconds=unsubmitted_grace_seconds)

    async def sweep(self, tenant_id: str, school_id: Optional[str] = None) -> SweepResult:
        result = SweepResult()
        docs = list(await self.store.list_processing(tenant_id, school_id))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def poll(doc: KnowledgeDocument) -> RagResult:
            async with semaphore:
                return await self.rag_client.query_status(doc.external_ref, doc.tenant_id, doc.school_id)

        polled = await asyncio.gather(*(poll(d) for d in docs))
        for doc, answer in zip(docs, polled):
            await self._reconcile(doc, answer, result)

        result.unsubmitted = await self._report_unsubmitted(tenant_id, school_id)

        logger.info(
            "Sweep %s/%s: %d polled, %s", tenant_id, school_id or "*", len(docs), result.as_dict()
        )
        return result

    async def _reconcile(self, doc: KnowledgeDocument, answer: RagResult, result: SweepResult) -> None:
        if not answer.ok:
            logger.error("Failed to sync doc %s (ref=%s): %s", doc.id, doc.external_ref, answer.error)
            result.failed += 1
            result.errors += 1
            return

        try:
            update = normalize(answer.data, fallback_ref=doc.external_ref)
            outcome = await self.transitioner.apply(doc, update)
        except MalformedPayloadError as e:
            logger.warning(
                "Unusable status for doc %s (ref=%s): %s. Body: %s",
                doc.id, doc.external_ref, e.message, answer.data,
            )
            result.failed += 1
            result.errors += 1
            return

        if update.external_ref != doc.external_ref:
            logger.warning(
                "Status poll for %s answered with ref %s", doc.external_ref, update.external_ref
            )

        if outcome is ApplyOutcome.HELD:
            result.still_processing += 1
        elif outcome is ApplyOutcome.NOOP:
            # Another writer (usually the webhook) applied this one first
            result.already_terminal += 1
            logger.debug("Doc %s already terminal, nothing to update", doc.id)
        elif update.status == EXTERNAL_COMPLETED:
            result.updated += 1
        else:
            result.failed += 1

    async def _report_unsubmitted(self, tenant_id: str, school_id: Optional[str]) -> int:
        stuck = await self.store.list_unsubmitted(
            tenant_id, school_id, older_than=utcnow() - self.unsubmitted_grace
        )
        if stuck:
            logger.warning(
                "%d document(s) for %s never reached the RAG service and need re-ingestion: %s",
                len(stuck), tenant_id, ", ".join(d.id for d in stuck[:20]),
            )
        return len(stuck)


async def sweep_all(
    session_factory: async_sessionmaker[AsyncSession],
    rag_client: RagServiceClient,
    invalidator: CacheInvalidator,
    concurrency: int = 8,
    unsubmitted_grace_seconds: int = 900,
) -> SweepResult:
    """One pass over every tenant with processing documents. Each tenant gets its own session."""
    async with session_factory() as session:
        tenants = await DocumentStore(session).processing_tenants()

    total = SweepResult()
    for tenant_id in tenants:
        async with session_factory() as session:
            sweeper = ReconciliationSweeper(
                DocumentStore(session), rag_client, invalidator,
                concurrency=concurrency,
                unsubmitted_grace_seconds=unsubmitted_grace_seconds,
            )
            try:
                total.merge(await sweeper.sweep(tenant_id))
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception("Sweep failed for tenant %s", tenant_id)
    return total


async def run_forever(
    session_factory: async_sessionmaker[AsyncSession],
    rag_client: RagServiceClient,
    invalidator: CacheInvalidator,
    interval_seconds: int,
    concurrency: int = 8,
    unsubmitted_grace_seconds: int = 900,
) -> None:
    """Background loop started by the app factory. Cancelled on shutdown."""
    logger.info("Reconciliation sweeper running every %ds", interval_seconds)
    while True:
        try:
            total = await sweep_all(
                session_factory, rag_client, invalidator,
                concurrency=concurrency,
                unsubmitted_grace_seconds=unsubmitted_grace_seconds,
            )
            logger.info("Scheduled sweep done: %s", total.as_dict())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled sweep failed")
        await asyncio.sleep(interval_seconds)
