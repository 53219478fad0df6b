from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for
from sqlalchemy import or_
from werkzeug.security import generate_password_hash

from app.docportal.audit import record_event
from app.docportal.constants import COMPANY_ROLES, SYSTEM_ROLES
from app.docportal.db import db_session
from app.docportal.models import AuditEvent, Company, User, UserCompany
from app.docportal.rbac import require_site_admin
from app.docportal.utils import is_valid_email, slugify

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_user_or_404(user_id: int) -> User:
    user = db_session().get(User, user_id)
    if not user:
        abort(404)
    return user


def _get_membership_or_404(membership_id: int) -> UserCompany:
    m = db_session().get(UserCompany, membership_id)
    if not m:
        abort(404)
    return m


def _validate_password(password: str, password_confirm: str | None = None) -> list[str]:
    errors = []
    if not password:
        errors.append("Password is required.")
    elif len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    elif password_confirm is not None and password != password_confirm:
        errors.append("Passwords do not match.")
    return errors


def _clear_other_defaults(user: User, keep: UserCompany) -> None:
    for other in user.memberships:
        if other is not keep and other.is_default:
            other.is_default = False


@bp.get("/")
@require_site_admin
def index():
    from sqlalchemy import text

    s = db_session()
    status = {
        "env": (current_app.config.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": current_app.config.get("STORAGE_BACKEND") or "local",
    }
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        status["db_error"] = str(e)

    counts = {
        "users": s.query(User).count(),
        "companies": s.query(Company).count(),
        "memberships": s.query(UserCompany).count(),
    }
    return render_template("admin/index.html", system_status=status, counts=counts)


@bp.get("/audit")
@require_site_admin
def audit_list():
    """
    Audit trail (last 200 events) with filters:
    - action (contains)
    - actor_email (contains)
    - company
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    company_id = request.args.get("company_id", type=int)
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if company_id:
        q = q.filter(AuditEvent.company_id == company_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    companies = s.query(Company).order_by(Company.name.asc()).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        companies=companies,
        action=action,
        actor_email=actor_email,
        company_id=company_id,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


# ============================================================================
# USERS
# ============================================================================

@bp.get("/users")
@require_site_admin
def users_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    q = s.query(User)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.full_name.ilike(like), User.email.ilike(like)))
    users = q.order_by(User.full_name.asc(), User.email.asc()).all()

    selected = None
    selected_id = request.args.get("id", type=int)
    if selected_id:
        selected = _get_user_or_404(selected_id)

    companies = s.query(Company).filter(Company.is_active.is_(True)).order_by(Company.name.asc()).all()
    return render_template(
        "admin/users/list.html",
        users=users,
        search=search,
        selected=selected,
        companies=companies,
        system_roles=SYSTEM_ROLES,
        company_roles=COMPANY_ROLES,
    )


@bp.post("/users/new")
@require_site_admin
def users_create():
    s = db_session()
    u = _current_user()

    email = (request.form.get("email") or "").strip().lower()
    full_name = (request.form.get("full_name") or "").strip()
    password = request.form.get("password") or ""
    system_role = (request.form.get("system_role") or SYSTEM_ROLES[0]).strip().upper()

    errors = []
    if not email or not full_name:
        errors.append("Email and full name are required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    if system_role not in SYSTEM_ROLES:
        errors.append("Invalid system role.")
    errors.extend(_validate_password(password))

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.users_list"))

    new_user = User(
        email=email,
        full_name=full_name,
        password_hash=generate_password_hash(password),
        system_role=system_role,
        is_active=True,
    )
    s.add(new_user)
    s.flush()
    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "system_role": system_role},
    )
    s.commit()
    flash(f"Account created for {email}.", "success")
    return redirect(url_for("admin.users_list", id=new_user.id))


@bp.post("/users/<int:user_id>/update")
@require_site_admin
def users_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = _get_user_or_404(user_id)

    email = (request.form.get("email") or "").strip().lower()
    full_name = (request.form.get("full_name") or "").strip()
    system_role = (request.form.get("system_role") or "").strip().upper()
    is_active = request.form.get("is_active") == "1"

    errors = []
    if not email or not full_name:
        errors.append("Email and full name are required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email, User.id != user.id).one_or_none():
        errors.append("An account with this email already exists.")
    if system_role not in SYSTEM_ROLES:
        errors.append("Invalid system role.")
    if user.id == u.id and (not is_active or system_role != user.system_role):
        errors.append("You cannot deactivate or demote your own account.")

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.users_list", id=user.id))

    before = {"email": user.email, "full_name": user.full_name, "system_role": user.system_role, "is_active": user.is_active}
    user.email = email
    user.full_name = full_name
    user.system_role = system_role
    user.is_active = is_active
    after = {"email": user.email, "full_name": user.full_name, "system_role": user.system_role, "is_active": user.is_active}

    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after},
    )
    s.commit()
    flash(f"Account updated for {user.email}.", "success")
    return redirect(url_for("admin.users_list", id=user.id))


@bp.post("/users/<int:user_id>/reset-password")
@require_site_admin
def users_reset_password(user_id: int):
    s = db_session()
    u = _current_user()
    user = _get_user_or_404(user_id)

    errors = _validate_password(request.form.get("password") or "", request.form.get("password_confirm") or "")
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.users_list", id=user.id))

    user.password_hash = generate_password_hash(request.form["password"])
    record_event(
        s,
        actor=u,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email},
    )
    s.commit()
    flash(f"Password reset for {user.email}.", "success")
    return redirect(url_for("admin.users_list", id=user.id))


# ============================================================================
# MEMBERSHIPS
# ============================================================================

@bp.post("/users/<int:user_id>/memberships")
@require_site_admin
def memberships_add(user_id: int):
    s = db_session()
    u = _current_user()
    user = _get_user_or_404(user_id)

    company_id = request.form.get("company_id", type=int)
    role = (request.form.get("role") or "").strip().upper()
    is_default = request.form.get("is_default") == "1"

    company = s.get(Company, company_id) if company_id else None
    if not company or role not in COMPANY_ROLES:
        flash("Select a company and a role.", "danger")
        return redirect(url_for("admin.users_list", id=user.id))
    if any(m.company_id == company.id for m in user.memberships):
        flash(f"{user.email} is already a member of {company.name}.", "danger")
        return redirect(url_for("admin.users_list", id=user.id))

    m = UserCompany(company_id=company.id, role=role, is_default=is_default)
    user.memberships.append(m)
    if is_default:
        _clear_other_defaults(user, m)
    s.flush()
    record_event(
        s,
        actor=u,
        action="membership.create",
        entity_type="UserCompany",
        entity_id=str(m.id),
        company_id=company.id,
        metadata={"user": user.email, "role": role, "is_default": is_default},
    )
    s.commit()
    flash(f"{user.email} added to {company.name}.", "success")
    return redirect(url_for("admin.users_list", id=user.id))


@bp.post("/memberships/<int:membership_id>/role")
@require_site_admin
def memberships_change_role(membership_id: int):
    s = db_session()
    m = _get_membership_or_404(membership_id)
    role = (request.form.get("role") or "").strip().upper()
    if role not in COMPANY_ROLES:
        flash("Invalid role.", "danger")
        return redirect(url_for("admin.users_list", id=m.user_id))

    old = m.role
    m.role = role
    record_event(
        s,
        actor=_current_user(),
        action="membership.role_change",
        entity_type="UserCompany",
        entity_id=str(m.id),
        company_id=m.company_id,
        metadata={"user": m.user.email, "old": old, "new": role},
    )
    s.commit()
    flash("Role updated.", "success")
    return redirect(url_for("admin.users_list", id=m.user_id))


@bp.post("/memberships/<int:membership_id>/default")
@require_site_admin
def memberships_set_default(membership_id: int):
    s = db_session()
    m = _get_membership_or_404(membership_id)
    m.is_default = True
    _clear_other_defaults(m.user, m)
    record_event(
        s,
        actor=_current_user(),
        action="membership.set_default",
        entity_type="UserCompany",
        entity_id=str(m.id),
        company_id=m.company_id,
        metadata={"user": m.user.email},
    )
    s.commit()
    flash(f"{m.company.name} is now the default company.", "success")
    return redirect(url_for("admin.users_list", id=m.user_id))


@bp.post("/memberships/<int:membership_id>/delete")
@require_site_admin
def memberships_remove(membership_id: int):
    s = db_session()
    m = _get_membership_or_404(membership_id)
    user_id = m.user_id
    record_event(
        s,
        actor=_current_user(),
        action="membership.delete",
        entity_type="UserCompany",
        entity_id=str(m.id),
        company_id=m.company_id,
        metadata={"user": m.user.email, "role": m.role},
    )
    s.delete(m)
    s.commit()
    flash("Membership removed.", "success")
    return redirect(url_for("admin.users_list", id=user_id))


# ============================================================================
# COMPANIES
# ============================================================================

@bp.get("/companies")
@require_site_admin
def companies_list():
    s = db_session()
    companies = s.query(Company).order_by(Company.name.asc()).all()
    return render_template("admin/companies/list.html", companies=companies)


@bp.post("/companies/new")
@require_site_admin
def companies_create():
    s = db_session()
    name = (request.form.get("name") or "").strip()
    slug = slugify(request.form.get("slug") or name)

    errors = []
    if not name:
        errors.append("Company name is required.")
    elif not slug:
        errors.append("Could not derive a URL slug from the name; provide one.")
    elif s.query(Company).filter(Company.slug == slug).one_or_none():
        errors.append(f"The slug '{slug}' is already in use.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.companies_list"))

    company = Company(name=name, slug=slug, is_active=True)
    s.add(company)
    s.flush()
    record_event(
        s,
        actor=_current_user(),
        action="company.create",
        entity_type="Company",
        entity_id=str(company.id),
        company_id=company.id,
        metadata={"name": name, "slug": slug},
    )
    s.commit()
    flash(f"Company '{name}' created.", "success")
    return redirect(url_for("admin.companies_list"))


@bp.post("/companies/<int:company_id>/toggle")
@require_site_admin
def companies_toggle(company_id: int):
    s = db_session()
    company = s.get(Company, company_id)
    if not company:
        abort(404)
    company.is_active = not company.is_active
    record_event(
        s,
        actor=_current_user(),
        action="company.activate" if company.is_active else "company.deactivate",
        entity_type="Company",
        entity_id=str(company.id),
        company_id=company.id,
    )
    s.commit()
    flash(f"Company '{company.name}' {'activated' if company.is_active else 'deactivated'}.", "success")
    return redirect(url_for("admin.companies_list"))
