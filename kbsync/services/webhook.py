"""
Webhook normalizer & applier.

The RAG service has sent status callbacks in several shapes over time:

    flat            {"document_id", "status", "vector_ids", "error"}
    nested document {"status", "document": {"id", "content", "chunks"}}
    nested data     {"data": {"document_id", "status", "segments"}}
    synonyms        vectorIds / chunks / segments for the result list

normalize() reads them through the ordered tables below; the first
non-empty value wins. The same function normalizes sweeper poll responses.
"""

import json
import logging
from typing import Any, Callable, Iterable, Optional

from ..core.errors import MalformedPayloadError, UnknownReferenceError
from .document_store import DocumentStore
from .transitions import ApplyOutcome, CanonicalUpdate, Transitioner

logger = logging.getLogger(__name__)

TOP = ()
DOCUMENT = ("document",)
DATA = ("data",)

# (path, key) pairs, checked in order
EXTERNAL_REF_SOURCES = (
    (TOP, "document_id"),
    (TOP, "id"),
    (DOCUMENT, "id"),
    (DATA, "document_id"),
    (DATA, "id"),
)
STATUS_SOURCES = (
    (TOP, "status"),
    (DOCUMENT, "status"),
    (DATA, "status"),
)
RESULT_REF_KEYS = ("vector_ids", "vectorIds", "chunks", "segments")
RESULT_REF_SOURCES = tuple(
    (scope, key) for scope in (TOP, DOCUMENT, DATA) for key in RESULT_REF_KEYS
)
ERROR_SOURCES = tuple(
    (scope, key) for scope in (TOP, DOCUMENT, DATA) for key in ("error", "error_message")
)
TEXT_SOURCES = tuple(
    (scope, key) for scope in (DOCUMENT, TOP, DATA) for key in ("content", "extracted_text", "text")
)

# Keys that identify a chunk when the service sends objects instead of ids
CHUNK_ID_KEYS = ("id", "vector_id", "chunk_id")


def _lookup(payload: dict, path: tuple, key: str) -> Any:
    node: Any = payload
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    if not isinstance(node, dict):
        return None
    return node.get(key)


def _first(payload: dict, sources: Iterable[tuple], coerce: Callable[[Any], Any]) -> Any:
    for path, key in sources:
        value = coerce(_lookup(payload, path, key))
        if value:
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _as_status(value: Any) -> Optional[str]:
    text = _as_text(value)
    return text.lower() if text else None


def _as_detail(value: Any) -> Optional[str]:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str) if value else None
    return _as_text(value)


def _as_refs(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    refs: list[str] = []
    for item in value:
        if isinstance(item, dict):
            item = next((item[k] for k in CHUNK_ID_KEYS if item.get(k)), None)
        ref = _as_text(item)
        if ref and ref not in refs:
            refs.append(ref)
    return tuple(refs)


def normalize(raw: Any, fallback_ref: Optional[str] = None) -> CanonicalUpdate:
    """
    Reduce any known payload shape to a CanonicalUpdate.

    Raises MalformedPayloadError when neither an external ref nor a status
    can be found. Nothing is inferred from a partial payload.
    """
    if not isinstance(raw, dict):
        raise MalformedPayloadError("Payload must be a JSON object", payload=None)

    external_ref = _first(raw, EXTERNAL_REF_SOURCES, _as_text) or fallback_ref
    status = _first(raw, STATUS_SOURCES, _as_status)
    if not external_ref or not status:
        raise MalformedPayloadError("document_id and status are required", payload=raw)

    return CanonicalUpdate(
        external_ref=external_ref,
        status=status,
        result_refs=_first(raw, RESULT_REF_SOURCES, _as_refs) or (),
        error_detail=_first(raw, ERROR_SOURCES, _as_detail),
        extracted_text=_first(raw, TEXT_SOURCES, _as_text),
    )


class WebhookApplier:
    def __init__(self, store: DocumentStore, transitioner: Transitioner):
        self.store = store
        self.transitioner = transitioner

    async def apply(self, update: CanonicalUpdate) -> ApplyOutcome:
        doc = await self.store.find_by_external_ref(update.external_ref)
        if doc is None:
            logger.warning(
                "Webhook for unknown external_ref %s (status=%s); misrouted or lost registration",
                update.external_ref, update.status,
            )
            raise UnknownReferenceError(update.external_ref)

        if doc.is_deleted:
            logger.info("Ignoring webhook for deleted document %s", doc.id)
            return ApplyOutcome.NOOP

        return await self.transitioner.apply(doc, update)

    async def handle(self, raw: Any) -> ApplyOutcome:
        """Normalize and apply one inbound callback."""
        try:
            update = normalize(raw)
            outcome = await self.apply(update)
        except MalformedPayloadError as e:
            logger.warning("Rejected webhook (%s). Raw payload: %s", e.message, _dump(raw))
            raise

        logger.info(
            "Webhook ref=%s status=%s → %s", update.external_ref, update.status, outcome.value
        )
        return outcome


def _dump(raw: Any) -> str:
    try:
        return json.dumps(raw, default=str)[:4000]
    except (TypeError, ValueError):
        return repr(raw)[:4000]
