"""Create gdpr_deletion_audit table

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "gdpr_deletion_audit",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("public_id", sa.String(255), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=False),
        sa.Column(
            "deleted_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("deleted_by", sa.String(255), nullable=False),
        sa.Column("rows_affected", sa.Integer, nullable=False, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.UniqueConstraint("public_id", "request_id", name="uq_gdpr_audit_public_request"),
    )

    op.create_index("idx_gdpr_audit_public_id", "gdpr_deletion_audit", ["public_id"])
    op.create_index("idx_gdpr_audit_request_id", "gdpr_deletion_audit", ["request_id"])
    op.create_index("idx_gdpr_audit_deleted_at", "gdpr_deletion_audit", ["deleted_at"])


def downgrade() -> None:
    op.drop_table("gdpr_deletion_audit")
