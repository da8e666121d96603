"""
Internal approval gate.

approval_status moves independently of issue_status:

    not_required -> pending -> approved | rejected
    rejected -> pending            (re-request after rework)
    any -> not_required            (reset)

Functions here mutate the document but never commit; the state machine owns the
transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs import rbac
from app.riskdocs.constants import (
    APPROVAL_APPROVED,
    APPROVAL_NOT_REQUIRED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
)
from app.riskdocs.lifecycle.errors import PermissionDenied, TransitionNotAllowed
from app.riskdocs.models import Document, OrganizationSettings, User

logger = logging.getLogger(__name__)

_ALLOWED: dict[str, frozenset[str]] = {
    APPROVAL_PENDING: frozenset({APPROVAL_NOT_REQUIRED, APPROVAL_REJECTED}),
    APPROVAL_APPROVED: frozenset({APPROVAL_PENDING}),
    APPROVAL_REJECTED: frozenset({APPROVAL_PENDING}),
}


def approval_required(s: Session, organization_id: int, *, refresh: bool = False) -> bool:
    """Missing settings row means approval is not required."""
    stmt = select(OrganizationSettings).where(OrganizationSettings.organization_id == organization_id)
    settings = s.scalars(stmt.execution_options(populate_existing=refresh)).one_or_none()
    return bool(settings and settings.approval_required)


def _transition(d: Document, target: str) -> None:
    if d.approval_status not in _ALLOWED[target]:
        raise TransitionNotAllowed(
            f"Cannot move approval from {d.approval_status} to {target}.",
            code="APPROVAL_INVALID_TRANSITION",
        )


def request_approval(d: Document, *, actor: User, note: str | None = None) -> Document:
    if not rbac.can_request_approval(actor, d):
        raise PermissionDenied("You do not have permission to request approval for this document.")
    _transition(d, APPROVAL_PENDING)
    now = datetime.utcnow()
    d.approval_status = APPROVAL_PENDING
    d.approval_requested_at = now
    d.approval_requested_by_user_id = actor.id
    d.approval_decided_at = None
    d.approval_decided_by_user_id = None
    d.approval_notes = (note or "").strip() or None
    d.updated_at = now
    return d


def approve(d: Document, *, actor: User, note: str | None = None) -> Document:
    if not rbac.can_manage_approval(actor, d):
        raise PermissionDenied("Only organization administrators can approve documents.")
    _transition(d, APPROVAL_APPROVED)
    now = datetime.utcnow()
    d.approval_status = APPROVAL_APPROVED
    d.approval_decided_at = now
    d.approval_decided_by_user_id = actor.id
    d.approval_notes = (note or "").strip() or None
    d.updated_at = now
    return d


def reject(d: Document, *, actor: User, reason: str) -> Document:
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("A rejection reason is required.")
    if not rbac.can_manage_approval(actor, d):
        raise PermissionDenied("Only organization administrators can reject documents.")
    _transition(d, APPROVAL_REJECTED)
    now = datetime.utcnow()
    d.approval_status = APPROVAL_REJECTED
    d.approval_decided_at = now
    d.approval_decided_by_user_id = actor.id
    d.approval_notes = reason
    d.updated_at = now
    return d


def reset_approval(d: Document, *, actor: User) -> Document:
    if not rbac.can_manage_approval(actor, d):
        raise PermissionDenied("Only organization administrators can reset approval.")
    d.approval_status = APPROVAL_NOT_REQUIRED
    d.approval_requested_at = None
    d.approval_requested_by_user_id = None
    d.approval_decided_at = None
    d.approval_decided_by_user_id = None
    d.approval_notes = None
    d.updated_at = datetime.utcnow()
    return d
