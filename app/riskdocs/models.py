from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.riskdocs.constants import ROLE_SURVEYOR
from app.riskdocs.lifecycle.errors import AuditLogImmutable


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    settings: Mapped["OrganizationSettings | None"] = relationship(
        back_populates="organization",
        uselist=False,
        lazy="selectin",
    )


class OrganizationSettings(Base):
    """
    One row per organization. `approval_required` is the single switch that turns
    the approval gate into a hard prerequisite for issue.
    """

    __tablename__ = "organization_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    organization: Mapped[Organization] = relationship(back_populates="settings", lazy="selectin")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=ROLE_SURVEYOR)  # see constants.ROLES
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AuditEvent(Base):
    """
    Append-only lifecycle audit trail event.
    Rows are written once by the lifecycle engine and never updated or deleted.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_document_occurred", "document_id", "occurred_at"),
        Index("idx_audit_events_lineage_occurred", "lineage_id", "occurred_at"),
        Index("idx_audit_events_org_occurred", "organization_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    document_id: Mapped[str] = mapped_column(String(36), nullable=False)
    lineage_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    revision_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    event_type: Mapped[str] = mapped_column(String(32), nullable=False)  # see constants.EVENT_TYPES
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def details(self) -> dict[str, Any]:
        if not self.details_json:
            return {}
        return json.loads(self.details_json)


@event.listens_for(AuditEvent, "before_update")
def _audit_event_no_update(mapper, connection, target):  # type: ignore[no-untyped-def]
    raise AuditLogImmutable(f"audit event {target.id} cannot be updated")


@event.listens_for(AuditEvent, "before_delete")
def _audit_event_no_delete(mapper, connection, target):  # type: ignore[no-untyped-def]
    raise AuditLogImmutable(f"audit event {target.id} cannot be deleted")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.riskdocs.modules.documents.models import (  # noqa: E402,F401
    Document,
    DocumentChangeSummary,
    ModuleInstance,
)
from app.riskdocs.modules.actions.models import Action  # noqa: E402,F401
