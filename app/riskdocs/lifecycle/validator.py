"""
Pre-flight checklist for draft -> issued.

Every applicable check runs and every failure is collected, so the caller can show
the whole list at once.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.riskdocs import rbac
from app.riskdocs.constants import APPROVAL_APPROVED, APPROVAL_REJECTED, ISSUE_DRAFT
from app.riskdocs.lifecycle.approval import approval_required
from app.riskdocs.lifecycle.errors import Reason
from app.riskdocs.models import Document, User
from app.riskdocs.modules.documents.service import is_empty_payload, list_module_instances


@dataclass
class IssueCheck:
    document: Document | None
    reasons: list[Reason] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.reasons

    @property
    def codes(self) -> list[str]:
        return [r.code for r in self.reasons]

    def to_dict(self) -> dict:
        return {
            "document_id": self.document.id if self.document else None,
            "can_issue": self.ok,
            "reasons": [r.to_dict() for r in self.reasons],
        }


def check_issue(s: Session, document_id: str, actor: User | None, *, refresh: bool = False) -> IssueCheck:
    """
    `refresh=True` reloads the document, its modules and the organization settings
    from the database instead of trusting the identity map.
    """
    d = s.get(Document, document_id, populate_existing=refresh)
    if d is None or d.deleted_at is not None:
        return IssueCheck(None, [Reason("DOC_NOT_FOUND", "Document not found.")])

    reasons: list[Reason] = []

    if d.issue_status != ISSUE_DRAFT:
        reasons.append(Reason("NOT_DRAFT", f"Only draft documents can be issued (current status: {d.issue_status})."))

    if not rbac.can_issue(actor, d):
        reasons.append(Reason("NO_PERMISSION", "You do not have permission to issue this document."))

    modules = list_module_instances(s, d.id, refresh=refresh)
    if not modules:
        reasons.append(Reason("NO_MODULES", "Document has no modules. Complete at least one module before issuing."))
    for m in modules:
        if is_empty_payload(m.payload):
            reasons.append(Reason("EMPTY_MODULES", f"Module {m.module_key} has no content."))

    # A rejection blocks issue whatever the organization setting says.
    if d.approval_status == APPROVAL_REJECTED:
        why = (d.approval_notes or "").strip() or "no reason recorded"
        reasons.append(Reason("APPROVAL_REJECTED", f"Approval was rejected: {why}"))
    elif approval_required(s, d.organization_id, refresh=refresh) and d.approval_status != APPROVAL_APPROVED:
        reasons.append(
            Reason("APPROVAL_REQUIRED", f"Approval is required before issue (current status: {d.approval_status}).")
        )

    if d.locked_output_path or d.locked_output_sha256:
        reasons.append(Reason("ALREADY_HAS_OUTPUT", "Document already has a finalized output."))

    return IssueCheck(d, reasons)


def issue_readiness(s: Session, document_id: str, actor: User | None) -> IssueCheck:
    """Same checklist as issue(), without mutating anything."""
    return check_issue(s, document_id, actor)
