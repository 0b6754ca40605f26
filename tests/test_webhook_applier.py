import pytest

from kbsync.core.errors import MalformedPayloadError, UnknownReferenceError
from kbsync.services.cache import build_cache_key
from kbsync.services.transitions import ApplyOutcome, Transitioner
from kbsync.services.webhook import WebhookApplier


@pytest.fixture
def applier(store, invalidator):
    return WebhookApplier(store, Transitioner(store, invalidator))


async def _registered(store, ref="rag-1", **overrides):
    fields = {
        "tenant_id": "t1",
        "school_id": "s1",
        "content_hash": "a" * 64,
        "storage_key": f"knowledge-base/t1/s1/{ref}.pdf",
        "external_ref": ref,
    }
    fields.update(overrides)
    doc = await store.create(**fields)
    await store.commit()
    return doc


@pytest.mark.asyncio
async def test_completed_callback_indexes_and_invalidates_once(store, cache, applier):
    doc = await _registered(store)
    dashboard_key = build_cache_key("ct", "t1", "s1", "p0:l50")
    cache.data[dashboard_key] = {"data": [], "total": 0}

    payload = {"document_id": "rag-1", "status": "completed", "vector_ids": ["v1", "v2"]}
    assert await applier.handle(payload) is ApplyOutcome.APPLIED

    reloaded = await store.find_by_id(doc.id)
    assert reloaded.status == "indexed"
    assert reloaded.result_refs == ["v1", "v2"]
    assert dashboard_key not in cache.data
    assert cache.pattern_deletes == ["ai:ct:t1:s1:*"]

    # Redelivery changes nothing and touches no cache
    assert await applier.handle(payload) is ApplyOutcome.NOOP
    assert cache.pattern_deletes == ["ai:ct:t1:s1:*"]


@pytest.mark.asyncio
async def test_failed_callback_records_error(store, applier):
    doc = await _registered(store)
    outcome = await applier.handle({"data": {"id": "rag-1", "status": "failed", "error": "corrupt PDF"}})
    assert outcome is ApplyOutcome.APPLIED

    reloaded = await store.find_by_id(doc.id)
    assert reloaded.status == "failed"
    assert reloaded.error_detail == "corrupt PDF"


@pytest.mark.asyncio
async def test_failed_without_detail_gets_default(store, applier):
    doc = await _registered(store)
    await applier.handle({"id": "rag-1", "status": "failed"})
    assert (await store.find_by_id(doc.id)).error_detail


@pytest.mark.asyncio
async def test_failed_then_completed_stays_failed(store, cache, applier):
    doc = await _registered(store)
    await applier.handle({"id": "rag-1", "status": "failed", "error": "boom"})
    outcome = await applier.handle({"id": "rag-1", "status": "completed", "vector_ids": ["v1"]})

    assert outcome is ApplyOutcome.NOOP
    reloaded = await store.find_by_id(doc.id)
    assert reloaded.status == "failed"
    assert reloaded.result_refs == []
    assert len(cache.pattern_deletes) == 1


@pytest.mark.asyncio
async def test_non_terminal_status_is_held(store, cache, applier):
    doc = await _registered(store)
    assert await applier.handle({"id": "rag-1", "status": "embedding"}) is ApplyOutcome.HELD
    assert (await store.find_by_id(doc.id)).status == "processing"
    assert cache.pattern_deletes == []


@pytest.mark.asyncio
async def test_unknown_ref_raises(store, cache, applier):
    await _registered(store)
    with pytest.raises(UnknownReferenceError):
        await applier.handle({"document_id": "rag-404", "status": "completed", "vector_ids": ["v"]})
    assert cache.pattern_deletes == []


@pytest.mark.asyncio
async def test_completed_without_results_is_malformed(store, applier):
    doc = await _registered(store)
    with pytest.raises(MalformedPayloadError):
        await applier.handle({"document_id": "rag-1", "status": "completed"})
    assert (await store.find_by_id(doc.id)).status == "processing"


@pytest.mark.asyncio
async def test_deleted_document_is_a_noop(store, cache, applier):
    doc = await _registered(store)
    await store.soft_delete(doc.id)
    await store.commit()

    outcome = await applier.handle({"document_id": "rag-1", "status": "completed", "vector_ids": ["v"]})
    assert outcome is ApplyOutcome.NOOP
    assert cache.pattern_deletes == []
