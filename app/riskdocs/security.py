import secrets

from flask import Request, session


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate the CSRF token sent in the X-CSRF-Token header or the JSON body."""
    token = req.headers.get("X-CSRF-Token")
    if not token and req.is_json:
        data = req.get_json(silent=True) or {}
        if isinstance(data, dict):
            token = data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))
