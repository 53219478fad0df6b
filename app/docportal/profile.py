from flask import Blueprint, flash, g, redirect, render_template, request, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.docportal.audit import record_event
from app.docportal.db import db_session
from app.docportal.rbac import require_login

bp = Blueprint("profile", __name__)


@bp.get("/")
@require_login
def profile_get():
    return render_template("profile.html", user=g.current_user)


@bp.post("/")
@require_login
def profile_update():
    s = db_session()
    user = g.current_user
    full_name = (request.form.get("full_name") or "").strip()
    if not full_name:
        flash("Name cannot be empty.", "danger")
        return redirect(url_for("profile.profile_get"))

    if full_name != user.full_name:
        old = user.full_name
        user.full_name = full_name
        record_event(
            s,
            actor=user,
            action="profile.update",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"full_name": {"old": old, "new": full_name}},
        )
        s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("profile.profile_get"))


@bp.post("/password")
@require_login
def profile_change_password():
    s = db_session()
    user = g.current_user
    current = request.form.get("current_password") or ""
    new = request.form.get("new_password") or ""
    confirm = request.form.get("confirm_password") or ""

    errors = []
    if not current or not new or not confirm:
        errors.append("Fill in all password fields.")
    elif len(new) < 8:
        errors.append("The new password must be at least 8 characters.")
    elif new != confirm:
        errors.append("The new password and its confirmation do not match.")
    elif not check_password_hash(user.password_hash, current):
        errors.append("The current password is incorrect.")

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("profile.profile_get"))

    user.password_hash = generate_password_hash(new)
    record_event(s, actor=user, action="profile.password_change", entity_type="User", entity_id=str(user.id))
    s.commit()
    flash("Password changed.", "success")
    return redirect(url_for("profile.profile_get"))
