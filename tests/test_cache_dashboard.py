import pytest

from kbsync.core.cache import NullCacheStore
from kbsync.models.document import DocumentStatus
from kbsync.services.cache import CacheInvalidator, build_cache_key
from kbsync.services.dashboard import subject_rollup
from kbsync.services.document_store import Transition


def test_cache_key_layout():
    assert build_cache_key("ct", "t1", "s1") == "ai:ct:t1:s1"
    assert build_cache_key("ct", "t1", "s1", "p0:l50") == "ai:ct:t1:s1:p0:l50"
    assert build_cache_key("ct", "t1", "s1", namespace="staging") == "staging:ct:t1:s1"


@pytest.mark.asyncio
async def test_invalidation_is_scoped(cache):
    cache.data = {
        "ai:ct:t1:s1:p0:l50": 1,
        "ai:ct:t1:s1:p1:l50": 2,
        "ai:ct:t1:s2:p0:l50": 3,
        "ai:ct:t2:s1:p0:l50": 4,
        "ai:other:t1:s1:x": 5,
    }

    removed = await CacheInvalidator(cache).invalidate("t1", "s1")

    assert removed == 2
    assert sorted(cache.data) == ["ai:ct:t1:s2:p0:l50", "ai:ct:t2:s1:p0:l50", "ai:other:t1:s1:x"]


@pytest.mark.asyncio
async def test_invalidator_covers_every_prefix(cache):
    invalidator = CacheInvalidator(cache, prefixes=("ct", "kb"))
    await invalidator.invalidate("t1", "s1")
    assert cache.pattern_deletes == ["ai:ct:t1:s1:*", "ai:kb:t1:s1:*"]


@pytest.mark.asyncio
async def test_null_cache_is_silent():
    null = NullCacheStore()
    await null.set("k", {"a": 1}, 60)
    assert await null.get("k") is None
    assert await CacheInvalidator(null).invalidate("t1", "s1") == 0


async def _indexed(store, subject, refs, school="s1"):
    doc = await store.create(
        tenant_id="t1",
        school_id=school,
        subject_id=subject,
        content_hash=subject * 8,
        storage_key=f"knowledge-base/t1/{school}/{subject}-{len(refs)}.pdf",
    )
    await store.apply_update(doc.id, Transition(target=DocumentStatus.INDEXED, result_refs=tuple(refs)))
    await store.commit()
    return doc


@pytest.mark.asyncio
async def test_subject_rollup_is_cached_until_invalidated(store, cache, invalidator):
    await _indexed(store, "bio", ["v1", "v2"])
    await _indexed(store, "bio", ["v3"])
    await _indexed(store, "chem", ["v4"])
    await _indexed(store, "phys", ["v5"], school="s2")

    first = await subject_rollup(store, cache, "t1", "s1")
    assert first["total"] == 2
    assert [(r["subject_id"], r["documents"], r["vector_chunks"]) for r in first["data"]] == [
        ("bio", 2, 3),
        ("chem", 1, 1),
    ]
    assert build_cache_key("ct", "t1", "s1", "p0:l50") in cache.data

    await _indexed(store, "math", ["v6"])
    assert await subject_rollup(store, cache, "t1", "s1") == first

    await invalidator.invalidate("t1", "s1")
    fresh = await subject_rollup(store, cache, "t1", "s1")
    assert fresh["total"] == 3
