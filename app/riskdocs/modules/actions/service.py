from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs import rbac
from app.riskdocs.constants import ACTION_OPEN, PRIORITY_BANDS
from app.riskdocs.lifecycle.errors import EditLocked, NotFound, PermissionDenied
from app.riskdocs.models import Action, Document, User

logger = logging.getLogger(__name__)

# Fields that describe the finding itself; these travel with a carried-forward action.
DESCRIPTIVE_FIELDS = (
    "module_key",
    "reference_number",
    "recommended_action",
    "priority_band",
    "timescale",
    "target_date",
    "owner_user_id",
    "notes",
)


def get_action(s: Session, action_id: str) -> Action:
    a = s.get(Action, action_id)
    if not a:
        raise NotFound(f"Action {action_id} not found")
    return a


def list_actions(s: Session, document_id: str, *, status: str | None = None) -> list[Action]:
    stmt = select(Action).where(Action.document_id == document_id)
    if status:
        stmt = stmt.where(Action.status == status)
    stmt = stmt.order_by(Action.created_at.asc(), Action.reference_number.asc())
    return list(s.scalars(stmt).all())


def parse_target_date(v: Any) -> date | None:
    if v is None or isinstance(v, date):
        return v
    v = str(v).strip()
    if not v:
        return None
    return date.fromisoformat(v)


def create_action(
    s: Session,
    document_id: str,
    *,
    actor: User,
    recommended_action: str,
    module_key: str | None = None,
    reference_number: str | None = None,
    priority_band: str | None = None,
    timescale: str | None = None,
    target_date: date | str | None = None,
    owner_user_id: int | None = None,
    notes: str | None = None,
) -> Action:
    """
    Raise a new action against a draft document. Flushes but does not commit.
    """
    d = s.get(Document, document_id)
    if not d:
        raise NotFound(f"Document {document_id} not found")
    if not rbac.can_edit_document(d):
        raise EditLocked(d.id, d.issue_status)
    if not rbac.can_author(actor, d):
        raise PermissionDenied("You do not have permission to add actions to this document.")

    text = (recommended_action or "").strip()
    if not text:
        raise ValueError("recommended_action is required.")
    band = (priority_band or "").strip().upper() or None
    if band and band not in PRIORITY_BANDS:
        raise ValueError(f"priority_band must be one of {', '.join(PRIORITY_BANDS)}.")

    now = datetime.utcnow()
    a = Action(
        document_id=d.id,
        organization_id=d.organization_id,
        module_key=(module_key or "").strip() or None,
        reference_number=(reference_number or "").strip() or None,
        recommended_action=text,
        priority_band=band,
        timescale=(timescale or "").strip() or None,
        target_date=parse_target_date(target_date),
        owner_user_id=owner_user_id,
        notes=(notes or "").strip() or None,
        status=ACTION_OPEN,
        created_at=now,
        updated_at=now,
    )
    s.add(a)
    s.flush()
    return a


def carry_forward(s: Session, source_document_id: str, target_document_id: str) -> list[Action]:
    """
    Copy every open action on the source document onto the target document.

    Only `open` travels: closed items are resolved history, and in-progress or
    deferred items need someone to decide to re-add them. The copies get fresh ids
    and timestamps and point back at their source through origin_action_id; closure
    and reopen history stays behind. Source rows are read, never written.
    Runs inside the caller's transaction.
    """
    target = s.get(Document, target_document_id)
    if target is None:
        raise NotFound(f"Document {target_document_id} not found")

    copies: list[Action] = []
    now = datetime.utcnow()
    for src in list_actions(s, source_document_id, status=ACTION_OPEN):
        fields = {f: getattr(src, f) for f in DESCRIPTIVE_FIELDS}
        c = Action(
            document_id=target.id,
            organization_id=target.organization_id,
            status=ACTION_OPEN,
            origin_action_id=src.id,
            carried_from_document_id=source_document_id,
            created_at=now,
            updated_at=now,
            **fields,
        )
        s.add(c)
        copies.append(c)
    s.flush()
    logger.info(
        "carried forward %d open action(s) from %s to %s",
        len(copies),
        source_document_id,
        target_document_id,
    )
    return copies


def _iso(v: date | datetime | None) -> str | None:
    return v.isoformat() if v else None


def serialize_action(a: Action) -> dict[str, Any]:
    return {
        "id": a.id,
        "document_id": a.document_id,
        "module_key": a.module_key,
        "reference_number": a.reference_number,
        "recommended_action": a.recommended_action,
        "priority_band": a.priority_band,
        "timescale": a.timescale,
        "target_date": _iso(a.target_date),
        "owner_user_id": a.owner_user_id,
        "notes": a.notes,
        "status": a.status,
        "closed_at": _iso(a.closed_at),
        "closed_by_user_id": a.closed_by_user_id,
        "closure_note": a.closure_note,
        "reopened_at": _iso(a.reopened_at),
        "reopened_by_user_id": a.reopened_by_user_id,
        "reopen_note": a.reopen_note,
        "origin_action_id": a.origin_action_id,
        "carried_from_document_id": a.carried_from_document_id,
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
    }
