"""slips core schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:30:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "slips",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("filename", sa.String(length=255)),
        sa.Column("file_url", sa.Text()),
        sa.Column("storage_key", sa.String(length=512)),
        sa.Column("content_type", sa.String(length=128)),
        sa.Column("source", sa.String(length=16), nullable=False, server_default=sa.text("'pos'")),
        sa.Column("uploaded_by", sa.String(length=64)),
        sa.Column("uploaded_by_name", sa.String(length=255)),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'processing'")),
        sa.Column("ocr_text", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("ocr_confidence", sa.Float()),
        sa.Column("entered_reference", sa.String(length=128)),
        sa.Column("expected_amount", sa.Numeric(14, 2)),
        sa.Column("detected_amount", sa.Numeric(14, 2)),
        sa.Column("detected_reference", sa.String(length=128)),
        sa.Column("reference_match", sa.Boolean()),
        sa.Column("amount_match", sa.Boolean()),
        sa.Column(
            "validation_result",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "review_events",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('pending','processing','validated','failed')",
            name="ck_slips_status",
        ),
        sa.CheckConstraint("source IN ('pos','website')", name="ck_slips_source"),
    )
    op.create_index("idx_slips_status_created", "slips", ["status", "created_at"])
    op.create_index("idx_slips_source_created", "slips", ["source", "created_at"])

    op.create_table(
        "audit_logs",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("new_value", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=64)),
        sa.Column("ip_address", postgresql.INET()),
        sa.Column("user_agent", sa.Text()),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_logs_timestamp", "audit_logs", ["timestamp"])


def downgrade() -> None:
    op.drop_index("idx_audit_logs_timestamp", table_name="audit_logs")
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("idx_slips_source_created", table_name="slips")
    op.drop_index("idx_slips_status_created", table_name="slips")
    op.drop_table("slips")
