import json
import logging
from typing import Any

from flask import g, has_request_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.riskdocs.constants import EVENT_TYPES, OPS_LOGGER
from app.riskdocs.models import AuditEvent, Document, User

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger(OPS_LOGGER)


def _request_id() -> str | None:
    if has_request_context():
        return getattr(g, "request_id", None)
    return None


def record_lifecycle_event(
    s: Session,
    *,
    event_type: str,
    document: Document,
    actor: User | None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent | None:
    """
    Append-only audit event helper.

    Called after the business transaction has committed. The event gets its own
    commit; if that fails the failure goes to the ops channel and the caller carries
    on, since the business change already stands.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown audit event type: {event_type!r}")
    document_id = document.id
    actor_user_id = actor.id if actor else None
    try:
        ev = AuditEvent(
            request_id=request_id or _request_id(),
            organization_id=document.organization_id,
            document_id=document_id,
            lineage_id=document.lineage_id,
            revision_number=document.version_number,
            actor_user_id=actor_user_id,
            actor_user_email=actor.email if actor else None,
            event_type=event_type,
            details_json=json.dumps(details, sort_keys=True, default=str) if details else None,
        )
        s.add(ev)
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        ops_logger.exception(
            "AUDIT WRITE FAILED: event_type=%s document_id=%s actor_user_id=%s",
            event_type,
            document_id,
            actor_user_id,
        )
        return None
    logger.info("audit: %s document=%s v%s", event_type, document_id, ev.revision_number)
    return ev


def list_events(
    s: Session,
    *,
    document_id: str | None = None,
    lineage_id: str | None = None,
) -> list[AuditEvent]:
    """Events oldest first, filtered by document or by lineage."""
    stmt = select(AuditEvent)
    if document_id is not None:
        stmt = stmt.where(AuditEvent.document_id == document_id)
    if lineage_id is not None:
        stmt = stmt.where(AuditEvent.lineage_id == lineage_id)
    stmt = stmt.order_by(AuditEvent.occurred_at.asc(), AuditEvent.id.asc())
    return list(s.scalars(stmt).all())
