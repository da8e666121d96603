from __future__ import annotations

from typing import Any

from flask import Blueprint, g, jsonify, request

from app.riskdocs import rbac
from app.riskdocs.audit import list_events
from app.riskdocs.db import db_session
from app.riskdocs.lifecycle import machine
from app.riskdocs.lifecycle.chain import version_history
from app.riskdocs.lifecycle.change_summary import format_summary_text
from app.riskdocs.lifecycle.errors import NotFound, PermissionDenied
from app.riskdocs.lifecycle.validator import issue_readiness
from app.riskdocs.models import Document, User
from app.riskdocs.modules.documents.service import (
    get_change_summary,
    get_document,
    record_output_artifact,
    serialize_document,
)
from app.riskdocs.rbac import require_login

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # require_login should prevent this.
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object.")
    data.pop("csrf_token", None)
    return data


def _visible_document(s, document_id: str) -> Document:
    d = get_document(s, document_id)
    # Other organizations' documents do not exist as far as this user is concerned.
    if not rbac.same_organization(_current_user(), d.organization_id):
        raise NotFound(f"Document {document_id} not found")
    return d


def _visible_lineage(s, lineage_id: str) -> list[Document]:
    docs = version_history(s, lineage_id)
    if not docs or not rbac.same_organization(_current_user(), docs[0].organization_id):
        raise NotFound(f"Lineage {lineage_id} not found")
    return docs


@bp.post("/documents")
@require_login
def create_document():
    s = db_session()
    data = _json_body()
    d = machine.create_document(
        s,
        actor=_current_user(),
        title=data.get("title") or "",
        document_type=data.get("document_type") or "",
        scope_description=data.get("scope_description"),
        limitations_assumptions=data.get("limitations_assumptions"),
        standards=data.get("standards"),
        modules=data.get("modules"),
    )
    return jsonify(serialize_document(d)), 201


@bp.get("/documents/<document_id>")
@require_login
def get_document_internal(document_id: str):
    s = db_session()
    d = _visible_document(s, document_id)
    out = serialize_document(d)
    summary = get_change_summary(s, d.id)
    if summary is not None:
        out["change_summary"] = {
            "previous_document_id": summary.previous_document_id,
            "new_actions_count": summary.new_actions_count,
            "closed_actions_count": summary.closed_actions_count,
            "reopened_actions_count": summary.reopened_actions_count,
            "outstanding_actions_count": summary.outstanding_actions_count,
            "has_material_changes": summary.has_material_changes,
            "text": format_summary_text(summary),
        }
    return jsonify(out)


@bp.get("/documents/<document_id>/public")
@require_login
def get_document_public(document_id: str):
    s = db_session()
    d = _visible_document(s, document_id)
    return jsonify(serialize_document(d, internal=False))


@bp.patch("/documents/<document_id>")
@require_login
def edit_document(document_id: str):
    s = db_session()
    _visible_document(s, document_id)
    d = machine.edit(s, document_id, actor=_current_user(), patch=_json_body())
    return jsonify(serialize_document(d))


@bp.delete("/documents/<document_id>")
@require_login
def discard_document(document_id: str):
    s = db_session()
    d = s.get(Document, document_id)
    if d is None or not rbac.same_organization(_current_user(), d.organization_id):
        raise NotFound(f"Document {document_id} not found")
    d = machine.discard_draft(s, document_id, actor=_current_user())
    return jsonify({"ok": True, "id": d.id, "deleted_at": d.deleted_at.isoformat()})


@bp.get("/documents/<document_id>/issue-readiness")
@require_login
def get_issue_readiness(document_id: str):
    s = db_session()
    _visible_document(s, document_id)
    return jsonify(issue_readiness(s, document_id, _current_user()).to_dict())


@bp.post("/documents/<document_id>/issue")
@require_login
def issue_document(document_id: str):
    s = db_session()
    _visible_document(s, document_id)
    data = _json_body()
    d = machine.issue(s, document_id, actor=_current_user(), change_note=data.get("change_note"))
    return jsonify(serialize_document(d))


@bp.post("/documents/<document_id>/output")
@require_login
def attach_output(document_id: str):
    s = db_session()
    d = _visible_document(s, document_id)
    if not rbac.can_issue(_current_user(), d):
        raise PermissionDenied("You do not have permission to attach output to this document.")
    data = _json_body()
    d = record_output_artifact(s, document_id, path=data.get("path") or "", sha256=data.get("sha256") or "")
    s.commit()
    return jsonify(serialize_document(d))


@bp.post("/documents/<document_id>/approval/<op>")
@require_login
def approval(document_id: str, op: str):
    s = db_session()
    _visible_document(s, document_id)
    u = _current_user()
    data = _json_body()
    if op == "request":
        d = machine.request_approval(s, document_id, actor=u, note=data.get("note"))
    elif op == "approve":
        d = machine.approve(s, document_id, actor=u, note=data.get("note"))
    elif op == "reject":
        d = machine.reject(s, document_id, actor=u, reason=data.get("reason") or "")
    elif op == "reset":
        d = machine.reset_approval(s, document_id, actor=u)
    else:
        raise NotFound(f"Unknown approval operation {op!r}")
    return jsonify(serialize_document(d))


@bp.post("/lineages/<lineage_id>/revisions")
@require_login
def create_revision(lineage_id: str):
    s = db_session()
    _visible_lineage(s, lineage_id)
    data = _json_body()
    d = machine.create_revision(s, lineage_id, actor=_current_user(), note=data.get("note"))
    return jsonify(serialize_document(d)), 201


@bp.get("/lineages/<lineage_id>")
@require_login
def lineage_versions(lineage_id: str):
    s = db_session()
    docs = _visible_lineage(s, lineage_id)
    return jsonify({"lineage_id": lineage_id, "versions": [serialize_document(d) for d in docs]})


@bp.get("/lineages/<lineage_id>/health")
@require_login
def lineage_health(lineage_id: str):
    s = db_session()
    _visible_lineage(s, lineage_id)
    return jsonify(machine.get_lifecycle_health(s, lineage_id).to_dict())


@bp.get("/lineages/<lineage_id>/audit")
@require_login
def lineage_audit(lineage_id: str):
    s = db_session()
    _visible_lineage(s, lineage_id)
    events = list_events(s, lineage_id=lineage_id)
    return jsonify(
        {
            "lineage_id": lineage_id,
            "events": [
                {
                    "id": e.id,
                    "occurred_at": e.occurred_at.isoformat(),
                    "document_id": e.document_id,
                    "revision_number": e.revision_number,
                    "actor_user_id": e.actor_user_id,
                    "actor_user_email": e.actor_user_email,
                    "event_type": e.event_type,
                    "details": e.details,
                }
                for e in events
            ],
        }
    )
