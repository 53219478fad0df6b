import secrets
from typing import Any

from flask import Request, current_app, session
from itsdangerous import BadSignature, URLSafeTimedSerializer

FILE_LINK_SALT = "docportal.file-link"


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form field or X-CSRF-Token header."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(token, expected))


def _file_link_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=FILE_LINK_SALT)


def make_file_link_token(*, company_id: int, version_id: int) -> str:
    """Signed, timestamped token for one stored version (external viewers have no session)."""
    return _file_link_serializer().dumps({"c": company_id, "v": version_id})


def read_file_link_token(token: str, *, max_age: int) -> dict[str, Any]:
    """Raises itsdangerous.SignatureExpired or BadSignature."""
    claims = _file_link_serializer().loads(token, max_age=max_age)
    if not isinstance(claims, dict):
        raise BadSignature("Malformed file link token")
    return claims
