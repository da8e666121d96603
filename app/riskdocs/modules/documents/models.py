from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.riskdocs.constants import APPROVAL_NOT_REQUIRED, ISSUE_DRAFT
from app.riskdocs.models import Base


def new_id() -> str:
    return str(uuid.uuid4())


_ISSUED_ONLY = text("issue_status = 'issued'")
_DRAFT_ONLY = text("issue_status = 'draft' AND deleted_at IS NULL")


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("lineage_id", "version_number", name="uq_documents_lineage_version"),
        # At most one issued and one draft member per lineage; enforced by the DB so
        # concurrent issuers cannot both commit.
        Index(
            "uq_documents_lineage_single_issued",
            "lineage_id",
            unique=True,
            sqlite_where=_ISSUED_ONLY,
            postgresql_where=_ISSUED_ONLY,
        ),
        Index(
            "uq_documents_lineage_single_draft",
            "lineage_id",
            unique=True,
            sqlite_where=_DRAFT_ONLY,
            postgresql_where=_DRAFT_ONLY,
        ),
        Index("idx_documents_org_status", "organization_id", "issue_status"),
        CheckConstraint(
            "issue_status IN ('draft', 'issued', 'superseded')",
            name="ck_documents_issue_status",
        ),
        CheckConstraint(
            "approval_status IN ('not_required', 'pending', 'approved', 'rejected')",
            name="ck_documents_approval_status",
        ),
        CheckConstraint(
            "issue_status != 'superseded' OR superseded_by_id IS NOT NULL",
            name="ck_documents_superseded_has_successor",
        ),
        CheckConstraint(
            "deleted_at IS NULL OR issue_status = 'draft'",
            name="ck_documents_only_drafts_discarded",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    lineage_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False)

    # Content (frozen once the document leaves draft)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[str] = mapped_column(String(64), nullable=False)
    scope_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    limitations_assumptions: Mapped[str | None] = mapped_column(Text, nullable=True)
    standards_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # draft -> issued -> superseded
    issue_status: Mapped[str] = mapped_column(String(16), nullable=False, default=ISSUE_DRAFT)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    issued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    change_note: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    superseded_by_id: Mapped[str | None] = mapped_column(
        ForeignKey("documents.id", ondelete="RESTRICT"),
        nullable=True,
    )
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Internal sign-off; independent axis from issue_status.
    approval_status: Mapped[str] = mapped_column(String(16), nullable=False, default=APPROVAL_NOT_REQUIRED)
    approval_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approval_requested_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    approval_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approval_decided_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    approval_notes: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Finalized output produced by the rendering collaborator after issue.
    locked_output_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    locked_output_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_output_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Discarded drafts stay on disk but leave the lineage.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    modules: Mapped[list["ModuleInstance"]] = relationship(
        "ModuleInstance",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ModuleInstance.module_key",
    )

    @property
    def standards(self) -> list[str]:
        if not self.standards_json:
            return []
        return json.loads(self.standards_json)

    @standards.setter
    def standards(self, value: list[str] | None) -> None:
        self.standards_json = json.dumps(list(value)) if value else None


class ModuleInstance(Base):
    __tablename__ = "module_instances"
    __table_args__ = (
        UniqueConstraint("document_id", "module_key", name="uq_module_instances_document_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[str] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    module_key: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "FRA_1_HAZARDS"
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="modules", lazy="selectin")

    @property
    def payload(self) -> Any:
        if self.payload_json is None:
            return None
        return json.loads(self.payload_json)

    @payload.setter
    def payload(self, value: Any) -> None:
        self.payload_json = None if value is None else json.dumps(value, sort_keys=True)


class DocumentChangeSummary(Base):
    """
    What changed between an issued document and the one it superseded.
    Written in the same transaction as the issue.
    """

    __tablename__ = "document_change_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[str] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    previous_document_id: Mapped[str | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True,
    )

    new_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reopened_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outstanding_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    has_material_changes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    generated_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def details(self) -> dict[str, Any]:
        if not self.details_json:
            return {}
        return json.loads(self.details_json)
