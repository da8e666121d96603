from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.riskdocs import rbac
from app.riskdocs.db import db_session
from app.riskdocs.lifecycle import machine
from app.riskdocs.lifecycle.errors import NotFound
from app.riskdocs.models import Action, User
from app.riskdocs.modules.actions.service import create_action, get_action, list_actions, serialize_action
from app.riskdocs.modules.documents.service import get_document
from app.riskdocs.rbac import require_login

bp = Blueprint("actions", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object.")
    return data


def _visible_action(s, action_id: str) -> Action:
    a = get_action(s, action_id)
    if not rbac.same_organization(_current_user(), a.organization_id):
        raise NotFound(f"Action {action_id} not found")
    return a


def _result(res: machine.ActionResult):
    return jsonify({"action": serialize_action(res.action), "changed": res.changed})


@bp.get("/documents/<document_id>/actions")
@require_login
def document_actions(document_id: str):
    s = db_session()
    d = get_document(s, document_id)
    if not rbac.same_organization(_current_user(), d.organization_id):
        raise NotFound(f"Document {document_id} not found")
    status = (request.args.get("status") or "").strip() or None
    return jsonify({"document_id": d.id, "actions": [serialize_action(a) for a in list_actions(s, d.id, status=status)]})


@bp.post("/documents/<document_id>/actions")
@require_login
def add_action(document_id: str):
    s = db_session()
    d = get_document(s, document_id)
    if not rbac.same_organization(_current_user(), d.organization_id):
        raise NotFound(f"Document {document_id} not found")
    data = _json_body()
    owner = data.get("owner_user_id")
    a = create_action(
        s,
        document_id,
        actor=_current_user(),
        recommended_action=data.get("recommended_action") or "",
        module_key=data.get("module_key"),
        reference_number=data.get("reference_number"),
        priority_band=data.get("priority_band"),
        timescale=data.get("timescale"),
        target_date=data.get("target_date"),
        owner_user_id=int(owner) if owner not in (None, "") else None,
        notes=data.get("notes"),
    )
    s.commit()
    return jsonify(serialize_action(a)), 201


@bp.post("/actions/<action_id>/close")
@require_login
def close(action_id: str):
    s = db_session()
    _visible_action(s, action_id)
    res = machine.close_action(s, action_id, actor=_current_user(), note=_json_body().get("note"))
    return _result(res)


@bp.post("/actions/<action_id>/reopen")
@require_login
def reopen(action_id: str):
    s = db_session()
    _visible_action(s, action_id)
    res = machine.reopen_action(s, action_id, actor=_current_user(), note=_json_body().get("note"))
    return _result(res)


@bp.post("/actions/<action_id>/status")
@require_login
def set_status(action_id: str):
    s = db_session()
    _visible_action(s, action_id)
    res = machine.set_action_status(s, action_id, actor=_current_user(), status=_json_body().get("status") or "")
    return _result(res)
