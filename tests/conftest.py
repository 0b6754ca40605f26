"""
Shared fixtures: a throwaway SQLite file store, a recording cache, a fake RAG
service behind httpx.MockTransport, and local object storage in tmp_path.
"""

import fnmatch
import os

# Local fallbacks for every external dependency; must be set before kbsync imports
os.environ.setdefault("FF_USE_AUTH0", "false")
os.environ.setdefault("FF_USE_S3", "false")
os.environ.setdefault("FF_USE_REDIS", "false")
os.environ.setdefault("FF_USE_SWEEPER", "false")
os.environ.setdefault("CACHE_NAMESPACE", "ai")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from kbsync.core.cache import CacheStore
from kbsync.core.database import Base
from kbsync.core.storage import LocalStorage
from kbsync.models import document  # noqa: F401
from kbsync.services.cache import CacheInvalidator
from kbsync.services.document_store import DocumentStore
from kbsync.services.ingestion import IngestionOrchestrator
from kbsync.services.rag_client import RagServiceClient

CALLBACK_URL = "http://kb.test/v1/webhooks/ai-ingestion"


class RecordingCache(CacheStore):
    """Dict-backed cache that remembers every pattern delete."""

    def __init__(self):
        self.data: dict = {}
        self.pattern_deletes: list[str] = []

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def delete_pattern(self, pattern):
        self.pattern_deletes.append(pattern)
        doomed = [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]
        for key in doomed:
            del self.data[key]
        return len(doomed)


class FakeRagService:
    """Stands in for the RAG service at the HTTP level."""

    def __init__(self):
        self.submissions: list[dict] = []
        self.status_calls: list[str] = []
        self.deleted: list[str] = []
        self.statuses: dict[str, dict] = {}
        self.submit_error = None      # "timeout", "connect" or an HTTP status code
        self.submit_body = None       # override the accept response body
        self.unreachable_refs: set[str] = set()
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST":
            if self.submit_error == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.submit_error == "connect":
                raise httpx.ConnectError("connection refused", request=request)
            if isinstance(self.submit_error, int):
                return httpx.Response(self.submit_error, json={"detail": "rejected"})
            self._counter += 1
            ref = f"rag-{self._counter}"
            self.submissions.append(
                {"path": path, "ref": ref, "content": request.content, "headers": request.headers}
            )
            body = self.submit_body if self.submit_body is not None else {
                "document_id": ref, "status": "processing"
            }
            return httpx.Response(202, json=body)

        if request.method == "GET" and "/status/" in path:
            ref = path.rsplit("/", 1)[-1]
            self.status_calls.append(ref)
            if ref in self.unreachable_refs:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=self.statuses.get(ref, {"status": "processing"}))

        if request.method == "DELETE":
            self.deleted.append(path.rsplit("/", 1)[-1])
            return httpx.Response(200, json={"deleted": True})

        return httpx.Response(404, json={"detail": "not found"})


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'kbsync.db'}", connect_args={"timeout": 30}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session):
    return DocumentStore(session)


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def invalidator(cache):
    return CacheInvalidator(cache)


@pytest.fixture
def rag_service():
    return FakeRagService()


@pytest_asyncio.fixture
async def rag_client(rag_service):
    client = RagServiceClient(
        base_url="http://rag.test",
        service_key="svc-key",
        x_token="x-token",
        client=httpx.AsyncClient(transport=httpx.MockTransport(rag_service.handler)),
    )
    yield client
    await client.close()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(base_path=str(tmp_path / "objects"))


@pytest.fixture
def orchestrator(store, storage, rag_client, invalidator):
    return IngestionOrchestrator(
        store=store,
        storage=storage,
        rag_client=rag_client,
        invalidator=invalidator,
        callback_url=CALLBACK_URL,
    )
