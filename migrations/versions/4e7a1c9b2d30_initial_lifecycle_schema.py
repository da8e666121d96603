"""Initial lifecycle schema.

Revision ID: 4e7a1c9b2d30
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4e7a1c9b2d30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _table_exists("organizations"):
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _table_exists("organization_settings"):
        op.create_table(
            "organization_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("approval_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("organization_id"),
        )

    if not _table_exists("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("role", sa.String(32), nullable=False, server_default="surveyor"),
            sa.Column("can_edit", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("email"),
        )

    if not _table_exists("documents"):
        op.create_table(
            "documents",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("lineage_id", sa.String(36), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("document_type", sa.String(64), nullable=False),
            sa.Column("scope_description", sa.Text(), nullable=True),
            sa.Column("limitations_assumptions", sa.Text(), nullable=True),
            sa.Column("standards_json", sa.Text(), nullable=True),
            sa.Column("issue_status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("issued_at", sa.DateTime(), nullable=True),
            sa.Column("issued_by_user_id", sa.Integer(), nullable=True),
            sa.Column("change_note", sa.String(1024), nullable=True),
            sa.Column("superseded_by_id", sa.String(36), nullable=True),
            sa.Column("superseded_at", sa.DateTime(), nullable=True),
            sa.Column("approval_status", sa.String(16), nullable=False, server_default="not_required"),
            sa.Column("approval_requested_at", sa.DateTime(), nullable=True),
            sa.Column("approval_requested_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approval_decided_at", sa.DateTime(), nullable=True),
            sa.Column("approval_decided_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approval_notes", sa.String(2048), nullable=True),
            sa.Column("locked_output_path", sa.String(512), nullable=True),
            sa.Column("locked_output_sha256", sa.String(64), nullable=True),
            sa.Column("locked_output_generated_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_by_user_id", sa.Integer(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["issued_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["superseded_by_id"], ["documents.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["approval_requested_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approval_decided_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["deleted_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("lineage_id", "version_number", name="uq_documents_lineage_version"),
            sa.CheckConstraint(
                "issue_status IN ('draft', 'issued', 'superseded')",
                name="ck_documents_issue_status",
            ),
            sa.CheckConstraint(
                "approval_status IN ('not_required', 'pending', 'approved', 'rejected')",
                name="ck_documents_approval_status",
            ),
            sa.CheckConstraint(
                "issue_status != 'superseded' OR superseded_by_id IS NOT NULL",
                name="ck_documents_superseded_has_successor",
            ),
            sa.CheckConstraint(
                "deleted_at IS NULL OR issue_status = 'draft'",
                name="ck_documents_only_drafts_discarded",
            ),
        )
        op.create_index("ix_documents_lineage_id", "documents", ["lineage_id"])
        op.create_index("idx_documents_org_status", "documents", ["organization_id", "issue_status"])
        op.create_index(
            "uq_documents_lineage_single_issued",
            "documents",
            ["lineage_id"],
            unique=True,
            sqlite_where=sa.text("issue_status = 'issued'"),
            postgresql_where=sa.text("issue_status = 'issued'"),
        )
        op.create_index(
            "uq_documents_lineage_single_draft",
            "documents",
            ["lineage_id"],
            unique=True,
            sqlite_where=sa.text("issue_status = 'draft' AND deleted_at IS NULL"),
            postgresql_where=sa.text("issue_status = 'draft' AND deleted_at IS NULL"),
        )

    if not _table_exists("module_instances"):
        op.create_table(
            "module_instances",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("document_id", sa.String(36), nullable=False),
            sa.Column("module_key", sa.String(64), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("outcome", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("document_id", "module_key", name="uq_module_instances_document_key"),
        )

    if not _table_exists("actions"):
        op.create_table(
            "actions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("document_id", sa.String(36), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("module_key", sa.String(64), nullable=True),
            sa.Column("reference_number", sa.String(32), nullable=True),
            sa.Column("recommended_action", sa.Text(), nullable=False),
            sa.Column("priority_band", sa.String(8), nullable=True),
            sa.Column("timescale", sa.String(64), nullable=True),
            sa.Column("target_date", sa.Date(), nullable=True),
            sa.Column("owner_user_id", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="open"),
            sa.Column("closed_at", sa.DateTime(), nullable=True),
            sa.Column("closed_by_user_id", sa.Integer(), nullable=True),
            sa.Column("closure_note", sa.String(2048), nullable=True),
            sa.Column("reopened_at", sa.DateTime(), nullable=True),
            sa.Column("reopened_by_user_id", sa.Integer(), nullable=True),
            sa.Column("reopen_note", sa.String(2048), nullable=True),
            sa.Column("origin_action_id", sa.String(36), nullable=True),
            sa.Column("carried_from_document_id", sa.String(36), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["closed_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["reopened_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["origin_action_id"], ["actions.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["carried_from_document_id"], ["documents.id"], ondelete="SET NULL"),
            sa.CheckConstraint(
                "status IN ('open', 'in_progress', 'closed', 'deferred')",
                name="ck_actions_status",
            ),
        )
        op.create_index("idx_actions_document_status", "actions", ["document_id", "status"])
        op.create_index("idx_actions_origin", "actions", ["origin_action_id"])

    if not _table_exists("document_change_summaries"):
        op.create_table(
            "document_change_summaries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("document_id", sa.String(36), nullable=False),
            sa.Column("previous_document_id", sa.String(36), nullable=True),
            sa.Column("new_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("closed_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reopened_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("outstanding_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("has_material_changes", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("generated_at", sa.DateTime(), nullable=False),
            sa.Column("generated_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["previous_document_id"], ["documents.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["generated_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("document_id"),
        )

    if not _table_exists("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("occurred_at", sa.DateTime(), nullable=False),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("document_id", sa.String(36), nullable=False),
            sa.Column("lineage_id", sa.String(36), nullable=True),
            sa.Column("revision_number", sa.Integer(), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("event_type", sa.String(32), nullable=False),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_audit_events_document_occurred", "audit_events", ["document_id", "occurred_at"])
        op.create_index("idx_audit_events_lineage_occurred", "audit_events", ["lineage_id", "occurred_at"])
        op.create_index("idx_audit_events_org_occurred", "audit_events", ["organization_id", "occurred_at"])

        # Append-only at the database level too (Postgres only).
        if op.get_bind().dialect.name == "postgresql":
            op.execute(
                """
                CREATE OR REPLACE FUNCTION audit_events_block_mutation() RETURNS trigger AS $$
                BEGIN
                    RAISE EXCEPTION 'audit_events is append-only';
                END;
                $$ LANGUAGE plpgsql;
                """
            )
            op.execute(
                """
                CREATE TRIGGER audit_events_no_update_delete
                BEFORE UPDATE OR DELETE ON audit_events
                FOR EACH ROW EXECUTE FUNCTION audit_events_block_mutation();
                """
            )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS audit_events_no_update_delete ON audit_events")
        op.execute("DROP FUNCTION IF EXISTS audit_events_block_mutation()")
    op.drop_index("idx_audit_events_org_occurred", table_name="audit_events")
    op.drop_index("idx_audit_events_lineage_occurred", table_name="audit_events")
    op.drop_index("idx_audit_events_document_occurred", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("document_change_summaries")
    op.drop_index("idx_actions_origin", table_name="actions")
    op.drop_index("idx_actions_document_status", table_name="actions")
    op.drop_table("actions")
    op.drop_table("module_instances")
    op.drop_index("uq_documents_lineage_single_draft", table_name="documents")
    op.drop_index("uq_documents_lineage_single_issued", table_name="documents")
    op.drop_index("idx_documents_org_status", table_name="documents")
    op.drop_index("ix_documents_lineage_id", table_name="documents")
    op.drop_table("documents")
    op.drop_table("users")
    op.drop_table("organization_settings")
    op.drop_table("organizations")
