from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.constants import ISSUE_ISSUED
from app.riskdocs.lifecycle.errors import NotFound
from app.riskdocs.models import Document, DocumentChangeSummary, ModuleInstance

_MODULE_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def get_document(s: Session, document_id: str) -> Document:
    d = s.get(Document, document_id)
    if not d or d.deleted_at is not None:
        raise NotFound(f"Document {document_id} not found")
    return d


def normalize_module_key(key: str) -> str:
    k = (key or "").strip()
    if not _MODULE_KEY_RE.fullmatch(k):
        raise ValueError(f"Invalid module key: {key!r}")
    return k


def list_module_instances(s: Session, document_id: str, *, refresh: bool = False) -> list[ModuleInstance]:
    stmt = (
        select(ModuleInstance)
        .where(ModuleInstance.document_id == document_id)
        .order_by(ModuleInstance.module_key.asc())
        .execution_options(populate_existing=refresh)
    )
    return list(s.scalars(stmt).all())


def is_empty_payload(payload: Any) -> bool:
    """
    Completeness predicate used by issue validation.

    A payload counts as empty when it is missing or carries no keys/items
    (None, {}, [], "").
    """
    if payload is None:
        return True
    if isinstance(payload, str):
        return not payload.strip()
    if isinstance(payload, (dict, list, tuple)):
        return len(payload) == 0
    return False


def upsert_module_instance(
    document: Document,
    *,
    module_key: str,
    payload: Any,
    outcome: str | None = None,
) -> ModuleInstance:
    """
    Create or replace one module payload. Callers are responsible for the edit lock.
    """
    key = normalize_module_key(module_key)
    m = next((x for x in document.modules if x.module_key == key), None)
    now = datetime.utcnow()
    if m is None:
        m = ModuleInstance(module_key=key, created_at=now)
        document.modules.append(m)
    m.payload = payload
    if outcome is not None:
        m.outcome = outcome
    m.updated_at = now
    return m


def copy_module_instances(s: Session, source: Document, target: Document) -> list[ModuleInstance]:
    copies = []
    for m in list_module_instances(s, source.id):
        c = ModuleInstance(
            module_key=m.module_key,
            payload_json=m.payload_json,
            outcome=m.outcome,
        )
        target.modules.append(c)
        copies.append(c)
    return copies


def record_output_artifact(s: Session, document_id: str, *, path: str, sha256: str) -> Document:
    """
    Attach the finalized rendered output to an issued document.

    Only issued documents carry an output; a draft with one would block its own issue.
    """
    d = get_document(s, document_id)
    if d.issue_status != ISSUE_ISSUED:
        raise ValueError("Output artifacts can only be attached to issued documents.")
    if d.locked_output_path:
        raise ValueError("Document already has a locked output.")
    digest = (sha256 or "").strip().lower()
    if not _SHA256_RE.fullmatch(digest):
        raise ValueError("sha256 must be a 64-character hex digest.")
    d.locked_output_path = (path or "").strip() or None
    if not d.locked_output_path:
        raise ValueError("path is required.")
    d.locked_output_sha256 = digest
    d.locked_output_generated_at = datetime.utcnow()
    return d


def get_change_summary(s: Session, document_id: str) -> DocumentChangeSummary | None:
    return s.scalars(
        select(DocumentChangeSummary).where(DocumentChangeSummary.document_id == document_id)
    ).one_or_none()


def _iso(v: datetime | None) -> str | None:
    return v.isoformat() if v else None


def serialize_document(d: Document, *, internal: bool = True) -> dict[str, Any]:
    """
    JSON view of a document.

    The external view (internal=False) is what rendering and client-facing consumers
    see; approval data never leaves the organization.
    """
    out: dict[str, Any] = {
        "id": d.id,
        "lineage_id": d.lineage_id,
        "version_number": d.version_number,
        "organization_id": d.organization_id,
        "title": d.title,
        "document_type": d.document_type,
        "scope_description": d.scope_description,
        "limitations_assumptions": d.limitations_assumptions,
        "standards": d.standards,
        "issue_status": d.issue_status,
        "issued_at": _iso(d.issued_at),
        "issued_by_user_id": d.issued_by_user_id,
        "change_note": d.change_note,
        "superseded_by_id": d.superseded_by_id,
        "superseded_at": _iso(d.superseded_at),
        "modules": [
            {"module_key": m.module_key, "payload": m.payload, "outcome": m.outcome}
            for m in d.modules
        ],
    }
    if internal:
        out.update(
            {
                "approval_status": d.approval_status,
                "approval_requested_at": _iso(d.approval_requested_at),
                "approval_decided_at": _iso(d.approval_decided_at),
                "approval_decided_by_user_id": d.approval_decided_by_user_id,
                "approval_notes": d.approval_notes,
                "locked_output_path": d.locked_output_path,
                "created_at": _iso(d.created_at),
                "updated_at": _iso(d.updated_at),
            }
        )
    return out
