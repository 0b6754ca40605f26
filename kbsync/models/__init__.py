"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TenantBase
from .document import DocumentStatus, KnowledgeDocument

__all__ = [
    "TenantBase",
    "DocumentStatus",
    "KnowledgeDocument",
]
