"""Erasure audit records kept for compliance."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ErasureAuditRecord(Base):
    """One row per identifier erased by a committed chunk.

    Rows are written in the same transaction as the deletion itself, so an
    audit row exists exactly when the chunk's deletions are durable. The
    unique constraint makes re-running the same request a no-op for the
    audit trail.
    """

    __tablename__ = "gdpr_deletion_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(255), nullable=False)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deleted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    deleted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    rows_affected: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("public_id", "request_id", name="uq_gdpr_audit_public_request"),
        Index("idx_gdpr_audit_public_id", "public_id"),
        Index("idx_gdpr_audit_request_id", "request_id"),
        Index("idx_gdpr_audit_deleted_at", "deleted_at"),
    )

    def __repr__(self) -> str:
        return f"<ErasureAuditRecord {self.public_id} request={self.request_id}>"
