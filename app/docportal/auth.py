from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.docportal.audit import record_event
from app.docportal.db import db_session
from app.docportal.models import User

bp = Blueprint("auth", __name__)

UNAUTHENTICATED_PREFIXES = ("/static/", "/health", "/healthz")


class LoginThrottle:
    """In-process sliding window of login attempts per client address."""

    def __init__(self, limit: int = 5, window: timedelta = timedelta(minutes=5)) -> None:
        self.limit = limit
        self.window = window
        self._attempts: dict[str, list[datetime]] = defaultdict(list)

    def blocked(self, key: str) -> bool:
        cutoff = datetime.utcnow() - self.window
        recent = [t for t in self._attempts[key] if t > cutoff]
        self._attempts[key] = recent
        return len(recent) >= self.limit

    def hit(self, key: str) -> None:
        self._attempts[key].append(datetime.utcnow())

    def reset(self, key: str) -> None:
        self._attempts.pop(key, None)

    def clear(self) -> None:
        self._attempts.clear()


login_throttle = LoginThrottle()


def _safe_next(target: str) -> str | None:
    # Local paths only; "//host" would be protocol-relative.
    if target.startswith("/") and not target.startswith("//"):
        return target
    return None


def load_current_user() -> None:
    """
    Resolve g.current_user from the signed session cookie and tag the request
    with a request_id used by log lines and audit events.
    """
    g.request_id = getattr(g, "request_id", None) or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(UNAUTHENTICATED_PREFIXES):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    user = db_session().get(User, int(user_id))
    if user is None or not user.is_active:
        # Deactivated accounts lose their session on the next request.
        session.pop("user_id", None)
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    if g.current_user is not None:
        return redirect(url_for("routes.index"))
    return render_template("auth/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    client = request.remote_addr or "unknown"

    if login_throttle.blocked(client):
        current_app.logger.warning("Login throttled (client=%s request_id=%s)", client, g.request_id)
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))
    login_throttle.hit(client)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=nxt or None))

    # Fresh cookie on login so a pre-login session cannot be reused.
    session.clear()
    session["user_id"] = user.id
    login_throttle.reset(client)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return redirect(_safe_next(nxt) or url_for("routes.index"))


@bp.get("/logout")
def logout():
    user = g.current_user
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return redirect(url_for("auth.login_get"))
