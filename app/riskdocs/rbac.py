from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.riskdocs.constants import ELEVATED_ROLES, ISSUE_DRAFT, ROLE_VIEWER
from app.riskdocs.models import Action, Document, User


def _active(user: User | None) -> bool:
    return bool(user and user.is_active)


def same_organization(user: User | None, organization_id: int | None) -> bool:
    if not _active(user) or organization_id is None:
        return False
    return user.organization_id is not None and user.organization_id == organization_id


def has_edit_role(user: User | None) -> bool:
    if not _active(user):
        return False
    return user.role != ROLE_VIEWER and bool(user.can_edit)


def is_elevated(user: User | None) -> bool:
    """Org admins (and platform admins) may override the closed-action rule and decide approvals."""
    return _active(user) and user.role in ELEVATED_ROLES


def can_issue(user: User | None, document: Document) -> bool:
    return same_organization(user, document.organization_id) and has_edit_role(user)


def can_create_revision(user: User | None, document: Document) -> bool:
    return can_issue(user, document)


def can_close_action(user: User | None, action: Action) -> bool:
    if not same_organization(user, action.organization_id):
        return False
    return has_edit_role(user) or (action.owner_user_id is not None and action.owner_user_id == user.id)


def can_edit_document(document: Document) -> bool:
    # State-based, not actor-based.
    return document.issue_status == ISSUE_DRAFT and document.deleted_at is None


def can_author(user: User | None, document: Document) -> bool:
    return same_organization(user, document.organization_id) and has_edit_role(user)


def can_request_approval(user: User | None, document: Document) -> bool:
    return can_author(user, document)


def can_manage_approval(user: User | None, document: Document) -> bool:
    return same_organization(user, document.organization_id) and is_elevated(user)


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not _active(user):
            return jsonify({"error": "UNAUTHENTICATED", "message": "Login required."}), 401
        return fn(*args, **kwargs)

    return wrapped
