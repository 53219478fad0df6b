from flask import Blueprint, abort, g, redirect, render_template, url_for

from app.docportal.constants import CAP_ARCHIVE, CAP_DOC_TYPES, CAP_LIBRARY
from app.docportal.rbac import require_company, require_login, user_can

bp = Blueprint("routes", __name__)

# First match wins; site admins without a membership have no library access.
COMPANY_LANDING_PAGES = (
    (CAP_LIBRARY, "documents.library"),
    (CAP_DOC_TYPES, "doc_types.types_list"),
    (CAP_ARCHIVE, "documents.archived"),
)


@bp.get("/")
@require_login
def index():
    """
    Company picker. A single membership goes straight to that company's library.
    """
    user = g.current_user
    memberships = sorted(user.memberships, key=lambda m: (not m.is_default, m.company.name.lower()))
    memberships = [m for m in memberships if m.company.is_active]
    if len(memberships) == 1:
        return redirect(url_for("documents.library", slug=memberships[0].company.slug))
    return render_template("public/index.html", memberships=memberships)


@bp.get("/company/<slug>")
@require_company()
def company_home(slug: str):
    for capability, endpoint in COMPANY_LANDING_PAGES:
        if user_can(g.current_user, g.membership, capability):
            return redirect(url_for(endpoint, slug=slug))
    g.missing_permission = CAP_LIBRARY
    abort(403)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer health checks. No DB access.
    """
    return "ok", 200
