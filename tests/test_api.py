"""
HTTP surface, driven in-process through httpx.ASGITransport.
"""

import httpx
import pytest
import pytest_asyncio

from kbsync.core.config import get_settings
from kbsync.core.dependencies import get_cache_dep, get_db, get_rag_client_dep, get_storage_dep
from kbsync.factory import create_app

PDF = b"%PDF-1.7 The water cycle: evaporation, condensation, precipitation."


@pytest_asyncio.fixture
async def api(session_factory, storage, rag_client, cache):
    app = create_app()

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_storage_dep] = lambda: storage
    app.dependency_overrides[get_rag_client_dep] = lambda: rag_client
    app.dependency_overrides[get_cache_dep] = lambda: cache

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://kb.test") as client:
        yield client


async def _upload(api, data=PDF, name="water.pdf", **form):
    return await api.post(
        "/v1/documents/ingest",
        files={"file": (name, data, "application/pdf")},
        data={"subject_id": "geo", **form},
    )


@pytest.mark.asyncio
async def test_health(api):
    resp = await api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_ingest_webhook_duplicate_round(api, rag_service):
    first = await _upload(api)
    assert first.status_code == 202
    body = first.json()
    assert body["submission"] == "accepted"
    assert body["external_ref"] == "rag-1"
    assert b"http://kb.test/v1/webhooks/ai-ingestion" in rag_service.submissions[0]["content"]
    assert rag_service.submissions[0]["path"] == "/api/v1/rag/documents/dev-tenant/dev-school"

    hook = await api.post(
        "/v1/webhooks/ai-ingestion",
        json={"document_id": "rag-1", "status": "completed", "vector_ids": ["v1", "v2"]},
    )
    assert hook.status_code == 200
    assert hook.json()["outcome"] == "applied"

    again = await api.post(
        "/v1/webhooks/ai-ingestion",
        json={"document_id": "rag-1", "status": "completed", "vector_ids": ["v1", "v2"]},
    )
    assert again.status_code == 200
    assert again.json()["outcome"] == "noop"

    dup = await _upload(api, name="water-copy.pdf", class_id="c2")
    assert dup.status_code == 200
    assert dup.json()["is_duplicate"] is True
    assert dup.json()["document_id"] == body["document_id"]
    assert len(rag_service.submissions) == 1

    doc = (await api.get(f"/v1/documents/{body['document_id']}")).json()
    assert doc["status"] == "indexed"
    assert doc["result_count"] == 2

    rollup = (await api.get("/v1/dashboard/subjects")).json()
    assert rollup["data"][0]["subject_id"] == "geo"
    assert rollup["data"][0]["vector_chunks"] == 2


@pytest.mark.asyncio
async def test_ingest_rejects_empty_file(api):
    resp = await _upload(api, data=b"")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unconfirmed_submission_still_202(api, rag_service):
    rag_service.submit_error = "timeout"
    resp = await _upload(api)
    assert resp.status_code == 202
    assert resp.json()["submission"] == "unconfirmed"

    listed = (await api.get("/v1/documents", params={"unsubmitted": "true"})).json()
    assert listed["pagination"]["total"] == 1
    assert listed["data"][0]["status"] == "processing"


@pytest.mark.asyncio
async def test_webhook_errors(api):
    not_json = await api.post(
        "/v1/webhooks/ai-ingestion", content=b"{oops", headers={"content-type": "application/json"}
    )
    assert not_json.status_code == 400

    incomplete = await api.post("/v1/webhooks/ai-ingestion", json={"vector_ids": ["v"]})
    assert incomplete.status_code == 400

    unknown = await api.post(
        "/v1/webhooks/ai-ingestion", json={"document_id": "rag-999", "status": "completed", "vector_ids": ["v"]}
    )
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_webhook_shared_secret(api, monkeypatch):
    monkeypatch.setattr(get_settings(), "webhook_secret", "s3cret")
    payload = {"document_id": "rag-999", "status": "processing"}

    denied = await api.post("/v1/webhooks/ai-ingestion", json=payload)
    assert denied.status_code == 401

    allowed = await api.post(
        "/v1/webhooks/ai-ingestion", json=payload, headers={"X-Webhook-Token": "s3cret"}
    )
    assert allowed.status_code == 404


@pytest.mark.asyncio
async def test_sync_endpoint_reports_counts(api, rag_service):
    await _upload(api)
    rag_service.statuses = {"rag-1": {"status": "failed", "error": "encrypted PDF"}}

    resp = await api.post("/v1/documents/sync", json={})
    assert resp.status_code == 200
    assert resp.json() == {
        "updated": 0, "still_processing": 0, "failed": 1, "errors": 0, "unsubmitted": 0,
        "already_terminal": 0,
    }

    listed = (await api.get("/v1/documents", params={"status": "failed"})).json()
    assert listed["data"][0]["error_detail"] == "encrypted PDF"


@pytest.mark.asyncio
async def test_delete_and_download(api, rag_service):
    doc_id = (await _upload(api)).json()["document_id"]

    url = await api.get(f"/v1/documents/{doc_id}/url")
    assert url.status_code == 200
    assert url.json()["download_url"].startswith("file://")

    deleted = await api.delete(f"/v1/documents/{doc_id}")
    assert deleted.status_code == 200
    assert rag_service.deleted == ["rag-1"]

    assert (await api.delete(f"/v1/documents/{doc_id}")).status_code == 400
    assert (await api.get(f"/v1/documents/{doc_id}")).status_code == 404
    assert (await api.delete("/v1/documents/nope")).status_code == 404


@pytest.mark.asyncio
async def test_register_already_stored_object(api, storage, rag_service):
    key = "knowledge-base/dev-tenant/dev-school/1700000000000_client_map.pdf"
    await storage.put(key, PDF, "application/pdf")
    body = {"storage_key": key, "original_name": "map.pdf", "subject_id": "geo"}

    created = await api.post("/v1/documents/register", json=body)
    assert created.status_code == 201
    assert created.json()["submission"] == "accepted"
    assert len(rag_service.submissions) == 1

    assert (await api.post("/v1/documents/register", json=body)).status_code == 409

    missing = await api.post(
        "/v1/documents/register",
        json={"storage_key": "knowledge-base/dev-tenant/dev-school/none.pdf", "original_name": "none.pdf"},
    )
    assert missing.status_code == 404
