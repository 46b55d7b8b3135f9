"""Database models for forgetter."""

from .audit import ErasureAuditRecord
from .base import Base

__all__ = [
    "Base",
    "ErasureAuditRecord",
]
