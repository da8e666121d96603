from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.riskdocs.constants import ACTION_OPEN
from app.riskdocs.models import Base
from app.riskdocs.modules.documents.models import new_id


class Action(Base):
    """
    Corrective recommendation raised against a document.
    """

    __tablename__ = "actions"
    __table_args__ = (
        Index("idx_actions_document_status", "document_id", "status"),
        Index("idx_actions_origin", "origin_action_id"),
        CheckConstraint(
            "status IN ('open', 'in_progress', 'closed', 'deferred')",
            name="ck_actions_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    document_id: Mapped[str] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False)
    module_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    reference_number: Mapped[str | None] = mapped_column(String(32), nullable=True)  # e.g. "FRA-003"
    recommended_action: Mapped[str] = mapped_column(Text, nullable=False)
    priority_band: Mapped[str | None] = mapped_column(String(8), nullable=True)  # P1..P4
    timescale: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    owner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # open / in_progress / closed / deferred
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ACTION_OPEN)

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    closure_note: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    reopened_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reopen_note: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Carry-forward lineage
    origin_action_id: Mapped[str | None] = mapped_column(ForeignKey("actions.id", ondelete="SET NULL"), nullable=True)
    carried_from_document_id: Mapped[str | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
