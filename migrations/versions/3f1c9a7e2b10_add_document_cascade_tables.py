"""add_document_cascade_tables

Create the document graph and change review tables:
root_documents, derived_documents, apply_batches, pending_changes,
cascade_events.

Revision ID: 3f1c9a7e2b10
Revises:
Create Date: 2026-10-12 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "3f1c9a7e2b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "root_documents" not in existing_tables:
        op.create_table(
            "root_documents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("fields", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if "derived_documents" not in existing_tables:
        op.create_table(
            "derived_documents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("root_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("type", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="not_started"),
            sa.Column("inherited_fields", sa.JSON(), nullable=False),
            sa.Column("outstanding_fields", sa.JSON(), nullable=False),
            sa.Column("needs_update_reason", sa.Text(), nullable=True),
            sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["root_id"], ["root_documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_derived_documents_root_id", "derived_documents", ["root_id"])

    if "apply_batches" not in existing_tables:
        op.create_table(
            "apply_batches",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("root_id", sa.String(length=36), nullable=False),
            sa.Column("root_version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["root_id"], ["root_documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_apply_batches_root_id", "apply_batches", ["root_id"])

    if "pending_changes" not in existing_tables:
        op.create_table(
            "pending_changes",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("root_id", sa.String(length=36), nullable=False),
            sa.Column("field_path", sa.String(length=255), nullable=False),
            sa.Column("old_value", sa.JSON(), nullable=True),
            sa.Column("field_existed", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("new_value", sa.JSON(), nullable=True),
            sa.Column("related_values", sa.JSON(), nullable=False),
            sa.Column("proposed_by", sa.String(length=20), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("resolution", sa.String(length=20), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("apply_batch_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["root_id"], ["root_documents.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["apply_batch_id"], ["apply_batches.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_pending_changes_root_id", "pending_changes", ["root_id"])
        op.create_index("ix_pending_changes_apply_batch_id", "pending_changes", ["apply_batch_id"])
        op.create_index(
            "ix_pending_changes_root_resolution", "pending_changes", ["root_id", "resolution"],
        )

    if "cascade_events" not in existing_tables:
        op.create_table(
            "cascade_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("batch_id", sa.Integer(), nullable=False),
            sa.Column("derived_document_id", sa.String(length=36), nullable=False),
            sa.Column("outcome", sa.String(length=20), nullable=False),
            sa.Column("triggering_fields", sa.JSON(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["batch_id"], ["apply_batches.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(
                ["derived_document_id"], ["derived_documents.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_cascade_events_batch_id", "cascade_events", ["batch_id"])
        op.create_index(
            "ix_cascade_events_derived_document_id", "cascade_events", ["derived_document_id"],
        )


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "cascade_events" in existing_tables:
        op.drop_index("ix_cascade_events_derived_document_id", table_name="cascade_events")
        op.drop_index("ix_cascade_events_batch_id", table_name="cascade_events")
        op.drop_table("cascade_events")

    if "pending_changes" in existing_tables:
        op.drop_index("ix_pending_changes_root_resolution", table_name="pending_changes")
        op.drop_index("ix_pending_changes_apply_batch_id", table_name="pending_changes")
        op.drop_index("ix_pending_changes_root_id", table_name="pending_changes")
        op.drop_table("pending_changes")

    if "apply_batches" in existing_tables:
        op.drop_index("ix_apply_batches_root_id", table_name="apply_batches")
        op.drop_table("apply_batches")

    if "derived_documents" in existing_tables:
        op.drop_index("ix_derived_documents_root_id", table_name="derived_documents")
        op.drop_table("derived_documents")

    if "root_documents" in existing_tables:
        op.drop_table("root_documents")
