"""
Domain errors. Raised by services, translated to HTTP status codes by the
API layer. Transport exceptions from collaborators never cross this line.
"""

from typing import Any, Optional


class IngestionError(Exception):
    """Base class for every error the engine reports to its callers."""

    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class MalformedPayloadError(IngestionError):
    """Webhook or status payload without a usable reference or status."""

    status_code = 400

    def __init__(self, message: str, payload: Optional[dict] = None, **context: Any):
        super().__init__(message, **context)
        self.payload = payload


class UnknownReferenceError(IngestionError):
    """A callback or poll names an external_ref no document carries."""

    status_code = 404

    def __init__(self, external_ref: str):
        super().__init__(f"No document with external_ref {external_ref!r}", external_ref=external_ref)
        self.external_ref = external_ref


class StorageUnavailableError(IngestionError):
    """Object storage rejected or could not accept the upload."""

    status_code = 503


class DocumentNotFoundError(IngestionError):
    status_code = 404

    def __init__(self, document_id: str):
        super().__init__("Document not found", document_id=document_id)
        self.document_id = document_id


class AlreadyDeletedError(IngestionError):
    status_code = 400

    def __init__(self, document_id: str):
        super().__init__("Document is already deleted", document_id=document_id)
        self.document_id = document_id


class StoredObjectNotFoundError(IngestionError):
    """Registration names a storage key with no object, or one outside the caller's tenant."""

    status_code = 404

    def __init__(self, storage_key: str):
        super().__init__("No stored object at this key", storage_key=storage_key)
        self.storage_key = storage_key


class AlreadyRegisteredError(IngestionError):
    status_code = 409

    def __init__(self, storage_key: str):
        super().__init__("A document is already registered for this key", storage_key=storage_key)
        self.storage_key = storage_key
