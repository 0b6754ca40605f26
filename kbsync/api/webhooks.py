"""
Inbound status callbacks from the RAG service. No user auth; optionally
guarded by a shared secret (WEBHOOK_SECRET).

    200  applied, or an idempotent no-op / hold
    400  unparseable or incomplete payload
    404  external_ref not known here
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..core.dependencies import get_invalidator, get_store, http_error, verify_webhook_token
from ..core.errors import IngestionError
from ..services.cache import CacheInvalidator
from ..services.document_store import DocumentStore
from ..services.transitions import Transitioner
from ..services.webhook import WebhookApplier

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(tags=["webhooks"], dependencies=[Depends(verify_webhook_token)])


@webhooks_router.post("/webhooks/ai-ingestion")
async def ai_ingestion_webhook(
    request: Request,
    store: DocumentStore = Depends(get_store),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    body = await request.body()
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        logger.warning("Rejected webhook: body is not JSON: %r", body[:2000])
        raise HTTPException(status_code=400, detail="Body must be JSON")

    applier = WebhookApplier(store, Transitioner(store, invalidator))
    try:
        outcome = await applier.handle(payload)
    except IngestionError as e:
        raise http_error(e)

    return {"message": "Webhook received and processed", "outcome": outcome.value}
