"""
RAG processing service client.

Submits raw documents for extraction/embedding and polls their status.
Every call returns a RagResult instead of raising, so callers can tell a
transient network failure from a rejection without parsing messages.

API: {RAG_SERVICE_URL}/api/v1/rag/documents/{tenant_id}/{school_id}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class RagResult:
    ok: bool
    data: dict = field(default_factory=dict)
    error: str = ""
    status_code: Optional[int] = None
    transient: bool = False

    @property
    def external_ref(self) -> Optional[str]:
        """Document id the service assigned, if the response carries one."""
        for key in ("document_id", "id"):
            value = self.data.get(key)
            if value:
                return str(value)
        return None


class RagServiceClient:
    def __init__(
        self,
        base_url: str,
        service_key: str = "",
        x_token: str = "",
        submit_timeout: float = 30.0,
        status_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.x_token = x_token
        self.submit_timeout = submit_timeout
        self.status_timeout = status_timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=10, read=30, write=30, pool=10),
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.x_token:
            headers["X-TOKEN"] = self.x_token
        if self.service_key:
            headers["x-key"] = self.service_key
        return headers

    def _documents_url(self, tenant_id: str, school_id: str) -> str:
        return f"{self.base_url}/api/v1/rag/documents/{tenant_id}/{school_id}"

    async def _send(self, method: str, url: str, timeout: float, **kwargs: Any) -> RagResult:
        try:
            resp = await self._get_client().request(
                method, url, headers=self._headers(), timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            logger.warning("RAG service %s %s timed out after %.1fs", method, url, timeout)
            return RagResult(ok=False, error=f"timeout: {e.__class__.__name__}", transient=True)
        except httpx.HTTPError as e:
            logger.warning("RAG service %s %s failed: %s", method, url, e)
            return RagResult(ok=False, error=str(e) or e.__class__.__name__, transient=True)

        if resp.status_code >= 400:
            logger.error(
                "RAG service %s %s error %d: %s", method, url, resp.status_code, resp.text[:500]
            )
            return RagResult(
                ok=False,
                error=resp.text[:500] or resp.reason_phrase,
                status_code=resp.status_code,
                transient=resp.status_code >= 500 or resp.status_code == 429,
            )

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            logger.error("RAG service %s %s returned non-JSON body", method, url)
            return RagResult(ok=False, error="invalid JSON response", status_code=resp.status_code)

        if not isinstance(body, dict):
            body = {"data": body}
        # v2 wraps responses in {"success": true, "data": {...}}
        if body.get("success") and isinstance(body.get("data"), dict):
            body = body["data"]
        return RagResult(ok=True, data=body, status_code=resp.status_code)

    async def submit(
        self,
        file_bytes: bytes,
        filename: str,
        tenant_id: str,
        school_id: str,
        callback_url: str,
        content_type: str = "application/pdf",
    ) -> RagResult:
        """
        Hand a document to the service. Only acceptance is awaited; the
        processing result arrives later through the webhook or a status poll.
        """
        url = self._documents_url(tenant_id, school_id)
        logger.info("RAG submit: POST %s file=%s (%d bytes)", url, filename, len(file_bytes))
        result = await self._send(
            "POST",
            url,
            self.submit_timeout,
            files={"file": (filename, file_bytes, content_type)},
            data={"webhook_url": callback_url},
        )
        if result.ok:
            logger.info("RAG accepted %s: external_ref=%s", filename, result.external_ref)
        return result

    async def query_status(self, external_ref: str, tenant_id: str, school_id: str) -> RagResult:
        url = f"{self._documents_url(tenant_id, school_id)}/status/{external_ref}"
        return await self._send("GET", url, self.status_timeout)

    async def delete(self, external_ref: str, tenant_id: str, school_id: str) -> RagResult:
        url = f"{self._documents_url(tenant_id, school_id)}/{external_ref}"
        result = await self._send("DELETE", url, self.status_timeout)
        if result.ok:
            logger.info("RAG document %s deleted", external_ref)
        return result


_client: Optional[RagServiceClient] = None


def get_rag_client() -> RagServiceClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = RagServiceClient(
            base_url=settings.rag_service_url,
            service_key=settings.rag_service_key,
            x_token=settings.rag_x_token,
            submit_timeout=settings.rag_submit_timeout,
            status_timeout=settings.rag_status_timeout,
        )
    return _client


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
