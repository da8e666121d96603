"""
Lifecycle state machine.

    draft -> issued -> superseded

The only place lifecycle-critical fields (issue_status, superseded_by_id, action
status, approval_status) are written. Each operation is one transaction that this
module commits; the audit event is written after that commit and is best-effort.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.riskdocs import rbac
from app.riskdocs.audit import record_lifecycle_event
from app.riskdocs.constants import (
    ACTION_CLOSED,
    ACTION_DEFERRED,
    ACTION_IN_PROGRESS,
    ACTION_OPEN,
    APPROVAL_NOT_REQUIRED,
    CONTENT_FIELDS,
    EVENT_ACTION_CLOSED,
    EVENT_ACTION_REOPENED,
    EVENT_ISSUED,
    EVENT_REVISION_CREATED,
    ISSUE_DRAFT,
    ISSUE_ISSUED,
)
from app.riskdocs.lifecycle import approval as approval_gate
from app.riskdocs.lifecycle.chain import (
    LineageHealth,
    assert_chain_invariant,
    chain_transaction,
    lineage_health,
    lock_lineage,
    next_version_number,
    supersede,
)
from app.riskdocs.lifecycle.change_summary import build_change_summary, summary_counts
from app.riskdocs.lifecycle.errors import (
    ActionTerminal,
    EditLocked,
    NotFound,
    PermissionDenied,
    TransitionNotAllowed,
    ValidationFailed,
)
from app.riskdocs.lifecycle.validator import check_issue
from app.riskdocs.models import Action, Document, User
from app.riskdocs.modules.actions.service import carry_forward
from app.riskdocs.modules.documents.models import new_id
from app.riskdocs.modules.documents.service import (
    copy_module_instances,
    normalize_module_key,
    upsert_module_instance,
)

logger = logging.getLogger(__name__)

_REQUIRED_CONTENT = ("title", "document_type")
_MOVABLE_ACTION_STATUSES = frozenset({ACTION_OPEN, ACTION_IN_PROGRESS, ACTION_DEFERRED})


@dataclass
class ActionResult:
    action: Action
    changed: bool


def _locked_document(s: Session, document_id: str, *, include_discarded: bool = False) -> Document:
    d = s.get(Document, document_id, with_for_update=True, populate_existing=True)
    if not d or (d.deleted_at is not None and not include_discarded):
        raise NotFound(f"Document {document_id} not found")
    return d


def _locked_action(s: Session, action_id: str) -> Action:
    a = s.get(Action, action_id, with_for_update=True, populate_existing=True)
    if not a:
        raise NotFound(f"Action {action_id} not found")
    return a


def _clean_content(patch: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k in CONTENT_FIELDS:
        if k not in patch:
            continue
        v = patch[k]
        if k == "standards":
            if v is not None and not isinstance(v, (list, tuple)):
                raise ValueError("standards must be a list.")
            out[k] = [str(x).strip() for x in (v or []) if str(x).strip()]
            continue
        v = (v or "").strip() if isinstance(v, str) or v is None else str(v).strip()
        if k in _REQUIRED_CONTENT and not v:
            raise ValueError(f"{k} is required.")
        out[k] = v or None
    return out


# --- documents -------------------------------------------------------------


def create_document(
    s: Session,
    *,
    actor: User,
    title: str,
    document_type: str,
    scope_description: str | None = None,
    limitations_assumptions: str | None = None,
    standards: list[str] | None = None,
    modules: dict[str, Any] | None = None,
) -> Document:
    """Start a new lineage: version 1, draft, lineage_id equal to its own id."""
    if not (rbac.has_edit_role(actor) and actor.organization_id is not None):
        raise PermissionDenied("You do not have permission to create documents.")
    content = _clean_content(
        {
            "title": title,
            "document_type": document_type,
            "scope_description": scope_description,
            "limitations_assumptions": limitations_assumptions,
            "standards": standards or [],
        }
    )
    module_keys = {normalize_module_key(k): v for k, v in (modules or {}).items()}

    doc_id = new_id()
    with chain_transaction(s):
        d = Document(
            id=doc_id,
            lineage_id=doc_id,
            version_number=1,
            organization_id=actor.organization_id,
            issue_status=ISSUE_DRAFT,
            approval_status=APPROVAL_NOT_REQUIRED,
            created_by_user_id=actor.id,
        )
        for k, v in content.items():
            setattr(d, k, v)
        s.add(d)
        s.flush()
        for key, payload in module_keys.items():
            upsert_module_instance(d, module_key=key, payload=payload)
    logger.info("created document %s (%s)", d.id, d.document_type)
    return d


def issue(s: Session, document_id: str, *, actor: User, change_note: str | None = None) -> Document:
    """
    draft -> issued, superseding the lineage's current issued member.

    All pre-flight failures come back together in one ValidationFailed; nothing is
    written unless every check passes. The checklist runs again once the lineage is
    locked, so a rejection or module change committed in between still blocks.
    """
    check = check_issue(s, document_id, actor)
    if not check.ok:
        s.rollback()
        logger.info("issue blocked for %s: %s", document_id, check.codes)
        raise ValidationFailed(check.reasons)

    d = check.document
    lineage_id = d.lineage_id
    note = (change_note or "").strip() or None
    previous: Document | None = None
    summary = None

    with chain_transaction(s):
        members = lock_lineage(s, lineage_id)
        check = check_issue(s, document_id, actor, refresh=True)
        if not check.ok:
            logger.info("issue blocked under lock for %s: %s", document_id, check.codes)
            raise ValidationFailed(check.reasons)
        d = check.document
        previous = next((m for m in members if m.issue_status == ISSUE_ISSUED), None)
        if previous is not None:
            supersede(s, previous.id, d.id)

        now = datetime.utcnow()
        d.issue_status = ISSUE_ISSUED
        d.issued_at = now
        d.issued_by_user_id = actor.id
        d.change_note = note
        d.updated_at = now

        if previous is not None:
            summary = build_change_summary(s, d, previous, actor=actor)
        assert_chain_invariant(s, lineage_id)

    logger.info("issued document %s v%s", d.id, d.version_number)
    details: dict[str, Any] = {"change_note": note}
    if previous is not None:
        details["superseded_document_id"] = previous.id
        details["change_summary"] = summary_counts(summary)
    record_lifecycle_event(s, event_type=EVENT_ISSUED, document=d, actor=actor, details=details)
    return d


def create_revision(s: Session, lineage_id: str, *, actor: User, note: str | None = None) -> Document:
    """
    New draft at max(version)+1, copied from the issued member, with the issued
    member's open actions carried forward.
    """
    note = (note or "").strip() or None
    with chain_transaction(s):
        members = lock_lineage(s, lineage_id)
        if not members:
            raise NotFound(f"Lineage {lineage_id} not found")
        issued = next((m for m in members if m.issue_status == ISSUE_ISSUED), None)
        if not rbac.can_create_revision(actor, issued or members[-1]):
            raise PermissionDenied("You do not have permission to create a new version of this document.")
        if issued is None:
            raise TransitionNotAllowed(
                "A new version can only be created from an issued document.",
                code="NO_ISSUED_VERSION",
            )
        if any(m.issue_status == ISSUE_DRAFT for m in members):
            raise TransitionNotAllowed(
                "A draft version already exists for this document. Issue or discard it first.",
                code="DRAFT_EXISTS",
            )

        new = Document(
            id=new_id(),
            lineage_id=lineage_id,
            version_number=next_version_number(s, lineage_id),
            organization_id=issued.organization_id,
            title=issued.title,
            document_type=issued.document_type,
            scope_description=issued.scope_description,
            limitations_assumptions=issued.limitations_assumptions,
            standards_json=issued.standards_json,
            issue_status=ISSUE_DRAFT,
            approval_status=APPROVAL_NOT_REQUIRED,
            created_by_user_id=actor.id,
        )
        s.add(new)
        s.flush()
        copy_module_instances(s, issued, new)
        carried = carry_forward(s, issued.id, new.id)
        assert_chain_invariant(s, lineage_id)
        source_id = issued.id
        carried_ids = [a.id for a in carried]

    logger.info("created revision %s v%s of lineage %s", new.id, new.version_number, lineage_id)
    record_lifecycle_event(
        s,
        event_type=EVENT_REVISION_CREATED,
        document=new,
        actor=actor,
        details={"note": note, "source_document_id": source_id, "carried_action_ids": carried_ids},
    )
    return new


def edit(s: Session, document_id: str, *, actor: User, patch: dict[str, Any]) -> Document:
    """
    Change content fields and/or module payloads of a draft. Last write wins.

    patch keys: any of CONTENT_FIELDS, plus `modules` mapping module_key -> payload.
    """
    with chain_transaction(s):
        d = _locked_document(s, document_id)
        if not rbac.can_edit_document(d):
            raise EditLocked(d.id, d.issue_status)
        if not rbac.can_author(actor, d):
            raise PermissionDenied("You do not have permission to edit this document.")
        unknown = set(patch) - set(CONTENT_FIELDS) - {"modules"}
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")

        content = _clean_content(patch)
        modules = patch.get("modules") or {}
        if not isinstance(modules, dict):
            raise ValueError("modules must be an object keyed by module key.")
        modules = {normalize_module_key(k): v for k, v in modules.items()}

        for k, v in content.items():
            setattr(d, k, v)
        for key, payload in modules.items():
            upsert_module_instance(d, module_key=key, payload=payload)
        d.updated_at = datetime.utcnow()
    return d


def discard_draft(s: Session, document_id: str, *, actor: User) -> Document:
    """
    Soft-delete a draft so its lineage can take a new revision.

    Discarding an already-discarded draft changes nothing. Issued and superseded
    documents are part of the record and cannot be discarded.
    """
    with chain_transaction(s):
        d = _locked_document(s, document_id, include_discarded=True)
        if not rbac.can_author(actor, d):
            raise PermissionDenied("You do not have permission to discard this document.")
        if d.deleted_at is not None:
            return d
        if d.issue_status != ISSUE_DRAFT:
            raise TransitionNotAllowed(
                f"Only drafts can be discarded (current status: {d.issue_status}). "
                "Create a new version if changes are needed.",
                code="NOT_DRAFT",
            )
        now = datetime.utcnow()
        d.deleted_at = now
        d.deleted_by_user_id = actor.id
        d.updated_at = now
        assert_chain_invariant(s, d.lineage_id)
    logger.info("discarded draft %s v%s of lineage %s", d.id, d.version_number, d.lineage_id)
    return d


# --- actions ---------------------------------------------------------------


def _check_action_access(s: Session, a: Action, actor: User) -> Document:
    if not rbac.can_close_action(actor, a):
        raise PermissionDenied("You do not have permission to change this action.")
    d = s.get(Document, a.document_id)
    if not rbac.can_edit_document(d):
        raise EditLocked(d.id, d.issue_status)
    return d


def close_action(s: Session, action_id: str, *, actor: User, note: str | None = None) -> ActionResult:
    """Closing an already-closed action succeeds without changing anything."""
    note = (note or "").strip() or None
    with chain_transaction(s):
        a = _locked_action(s, action_id)
        d = _check_action_access(s, a, actor)
        if a.status == ACTION_CLOSED:
            return ActionResult(a, False)
        now = datetime.utcnow()
        a.status = ACTION_CLOSED
        a.closed_at = now
        a.closed_by_user_id = actor.id
        a.closure_note = note
        a.updated_at = now

    record_lifecycle_event(
        s,
        event_type=EVENT_ACTION_CLOSED,
        document=d,
        actor=actor,
        details={"action_id": a.id, "title": a.recommended_action, "note": note},
    )
    return ActionResult(a, True)


def _reopen(a: Action, actor: User, note: str | None, status: str = ACTION_OPEN) -> None:
    # Closure fields are kept so the history of the earlier close survives.
    now = datetime.utcnow()
    a.status = status
    a.reopened_at = now
    a.reopened_by_user_id = actor.id
    a.reopen_note = note
    a.updated_at = now


def _reopen_details(a: Action, actor: User, note: str | None) -> dict[str, Any]:
    # Every reopen of a closed action is an elevated override.
    return {
        "action_id": a.id,
        "title": a.recommended_action,
        "note": note,
        "admin_override": True,
        "actor_role": actor.role,
        "previous_status": ACTION_CLOSED,
        "new_status": a.status,
    }


def reopen_action(s: Session, action_id: str, *, actor: User, note: str | None = None) -> ActionResult:
    """Reopening an action that is not closed succeeds without changing anything."""
    note = (note or "").strip() or None
    with chain_transaction(s):
        a = _locked_action(s, action_id)
        d = _check_action_access(s, a, actor)
        if a.status != ACTION_CLOSED:
            return ActionResult(a, False)
        if not rbac.is_elevated(actor):
            raise ActionTerminal(a.id)
        _reopen(a, actor, note)

    record_lifecycle_event(
        s, event_type=EVENT_ACTION_REOPENED, document=d, actor=actor, details=_reopen_details(a, actor, note)
    )
    return ActionResult(a, True)


def set_action_status(s: Session, action_id: str, *, actor: User, status: str) -> ActionResult:
    """
    Move an action between open, in_progress and deferred.

    Closing goes through close_action. Leaving closed is an elevated override and
    is audited like a reopen.
    """
    status = (status or "").strip()
    if status == ACTION_CLOSED:
        raise ValueError("Use close_action to close an action.")
    if status not in _MOVABLE_ACTION_STATUSES:
        raise ValueError(f"Unknown action status: {status!r}")

    reopened = False
    with chain_transaction(s):
        a = _locked_action(s, action_id)
        d = _check_action_access(s, a, actor)
        if a.status == status:
            return ActionResult(a, False)
        if a.status == ACTION_CLOSED:
            if not rbac.is_elevated(actor):
                raise ActionTerminal(a.id)
            _reopen(a, actor, None, status=status)
            reopened = True
        else:
            a.status = status
            a.updated_at = datetime.utcnow()

    if reopened:
        record_lifecycle_event(
            s, event_type=EVENT_ACTION_REOPENED, document=d, actor=actor, details=_reopen_details(a, actor, None)
        )
    return ActionResult(a, True)


# --- approval --------------------------------------------------------------


def request_approval(s: Session, document_id: str, *, actor: User, note: str | None = None) -> Document:
    with chain_transaction(s):
        d = _locked_document(s, document_id)
        approval_gate.request_approval(d, actor=actor, note=note)
    logger.info("approval requested for %s", document_id)
    return d


def approve(s: Session, document_id: str, *, actor: User, note: str | None = None) -> Document:
    with chain_transaction(s):
        d = _locked_document(s, document_id)
        approval_gate.approve(d, actor=actor, note=note)
    logger.info("approval granted for %s", document_id)
    return d


def reject(s: Session, document_id: str, *, actor: User, reason: str) -> Document:
    with chain_transaction(s):
        d = _locked_document(s, document_id)
        approval_gate.reject(d, actor=actor, reason=reason)
    logger.info("approval rejected for %s", document_id)
    return d


def reset_approval(s: Session, document_id: str, *, actor: User) -> Document:
    with chain_transaction(s):
        d = _locked_document(s, document_id)
        approval_gate.reset_approval(d, actor=actor)
    logger.info("approval reset for %s", document_id)
    return d


def get_lifecycle_health(s: Session, lineage_id: str) -> LineageHealth:
    return lineage_health(s, lineage_id)
