"""
FastAPI dependencies. Injected into route handlers.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.cache import CacheInvalidator
from ..services.document_store import DocumentStore
from ..services.rag_client import RagServiceClient, get_rag_client
from .auth import AuthenticatedUser, get_current_user
from .cache import CacheStore, get_cache_store
from .config import get_settings
from .database import get_db as _get_db
from .errors import IngestionError
from .storage import StorageBackend, get_storage as _get_storage


async def get_db() -> AsyncSession:
    """Yields an async DB session per request."""
    async for session in _get_db():
        yield session


async def get_user(
    authorization: str = Header(default=""),
) -> AuthenticatedUser:
    """
    Resolve authenticated user from Authorization header.
    Returns dev user if FF_USE_AUTH0=false.
    """
    try:
        return await get_current_user(authorization)
    except PermissionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_tenant(
    user: AuthenticatedUser = Depends(get_user),
) -> AuthenticatedUser:
    """Same as get_user, but enforces tenant_id is present."""
    if not user.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tenant_id associated with this user",
        )
    return user


async def verify_webhook_token(
    x_webhook_token: str = Header(default=""),
) -> None:
    """Shared-secret check for RAG service callbacks. Open when WEBHOOK_SECRET is unset."""
    expected = get_settings().webhook_secret
    if expected and not secrets.compare_digest(x_webhook_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )


def get_storage_dep() -> StorageBackend:
    """Returns the active storage backend (S3 or local)."""
    return _get_storage()


def get_cache_dep() -> CacheStore:
    return get_cache_store()


def get_rag_client_dep() -> RagServiceClient:
    return get_rag_client()


def get_store(db: AsyncSession = Depends(get_db)) -> DocumentStore:
    return DocumentStore(db)


def get_invalidator(cache: CacheStore = Depends(get_cache_dep)) -> CacheInvalidator:
    return CacheInvalidator(cache)


def http_error(e: IngestionError) -> HTTPException:
    """Translate a domain error into the HTTP response the caller sees."""
    return HTTPException(status_code=e.status_code, detail=e.message)
