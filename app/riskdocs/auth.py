from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.riskdocs.db import db_session
from app.riskdocs.models import User
from app.riskdocs.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
logger = logging.getLogger(__name__)

_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _credentials() -> tuple[str, str]:
    data = request.get_json(silent=True) if request.is_json else None
    if isinstance(data, dict):
        return (str(data.get("email") or "").strip().lower(), str(data.get("password") or ""))
    return ((request.form.get("email") or "").strip().lower(), request.form.get("password") or "")


@bp.post("/login")
def login_post():
    email, password = _credentials()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "RATE_LIMITED", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        logger.warning("login failed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        return jsonify({"error": "INVALID_CREDENTIALS", "message": "Invalid credentials."}), 401

    session["user_id"] = user.id
    _login_attempts[ip].clear()
    logger.info("login ok (user_id=%s)", user.id)
    return jsonify(
        {
            "user": {
                "id": user.id,
                "email": user.email,
                "role": user.role,
                "organization_id": user.organization_id,
            },
            "csrf_token": ensure_csrf_token(),
        }
    )


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        logger.info("logout (user_id=%s)", user.id)
    session.pop("user_id", None)
    return jsonify({"ok": True})
